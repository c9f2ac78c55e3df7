from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import allure
import pytest

from jobflow.errors import (
    ConfigurationError,
    JobCancelledError,
    SerializationError,
    ValidationError,
)
from jobflow.jobs.models import JobCreate, JobView, ModelSettings
from jobflow.jobs.payloads import decode_payload
from jobflow.jobs.processor import CancellationToken, ProcessorContext
from jobflow.jobs.processors import (
    ExtendedPathFinderProcessor,
    FileRelevanceAssessmentProcessor,
    ImplementationPlanProcessor,
    RegexFileFilterProcessor,
    RegexGenerationProcessor,
    TextImprovementProcessor,
)
from jobflow.jobs.repository import JobRepository
from jobflow.providers.filesystem import LocalFilesystem

pytestmark = [
    allure.epic("Processors"),
    allure.feature("Built-in Task Types"),
]

TASK = "Fix the login session expiry"


def _running_job(repository: JobRepository, task_type: str, raw: dict[str, Any]) -> JobView:
    created = repository.create_job(
        JobCreate(task_type=task_type, payload=decode_payload(task_type, raw)),
    )
    job = repository.claim_job(created.job_id, worker_id="test-worker")
    assert job is not None
    return job


def _context(
    repository: JobRepository,
    job: JobView,
    chat: object | None,
    *,
    token: CancellationToken | None = None,
) -> ProcessorContext:
    return ProcessorContext(
        job=job,
        repository=repository,
        filesystem=LocalFilesystem(),
        model_settings=ModelSettings(model="test-model", temperature=0.2, max_tokens=512),
        token=token or CancellationToken(job.job_id),
        chat=chat,  # type: ignore[arg-type]
    )


def test_regex_generation_keeps_compilable_groups(repository, chat, project_dir: Path) -> None:
    job = _running_job(
        repository,
        "regex_generation",
        {"task_description": TASK, "project_directory": str(project_dir)},
    )
    reply = {
        "pattern_groups": [
            {"title": "Auth code", "path_pattern": "/auth/", "content_pattern": None},
            {"title": "Broken", "path_pattern": "(unclosed"},
            "not a group",
        ],
    }
    chat.replies.append(f"Here you go:\n```json\n{json.dumps(reply)}\n```")
    processor = RegexGenerationProcessor()

    result = processor.process(processor.validate_payload(job), _context(repository, job, chat))

    assert result.output["pattern_groups"] == [
        {
            "title": "Auth code",
            "path_pattern": "auth",
            "content_pattern": None,
            "negative_path_pattern": None,
        },
    ]
    assert result.output["dropped_groups"] == 2
    assert result.usage is not None
    assert result.usage.total_tokens == 15
    request = chat.requests[0]
    assert request.model == "test-model"
    assert request.temperature == 0.2
    assert "src/" in request.messages[1].content
    assert "node_modules" not in request.messages[1].content
    progress = repository.require_job(job.job_id).metadata["progress"]
    assert progress["message"] == "Generating search patterns"


def test_regex_generation_without_usable_groups_fails(repository, chat, project_dir) -> None:
    job = _running_job(
        repository,
        "regex_generation",
        {"task_description": TASK, "project_directory": str(project_dir)},
    )
    chat.replies.append('{"pattern_groups": [{"title": "empty"}]}')
    processor = RegexGenerationProcessor()

    with pytest.raises(SerializationError):
        processor.process(processor.validate_payload(job), _context(repository, job, chat))


def test_regex_file_filter_matches_paths_and_contents_locally(
    repository,
    chat,
    project_dir: Path,
) -> None:
    job = _running_job(
        repository,
        "regex_file_filter",
        {
            "task_description": TASK,
            "project_directory": str(project_dir),
            "pattern_groups": [
                {"title": "auth", "path_pattern": "AUTH", "negative_path_pattern": "^tests/"},
                {"title": "login users", "content_pattern": "^from app.auth import login"},
            ],
        },
    )
    processor = RegexFileFilterProcessor()

    result = processor.process(processor.validate_payload(job), _context(repository, job, chat))

    assert result.output["matched_files"] == [
        "src/app/auth.py",
        "src/app/session.py",
        "tests/test_auth.py",
    ]
    assert result.output["groups"][0] == {"title": "auth", "files": ["src/app/auth.py"]}
    assert result.output["skipped_files"] == ["assets/logo.bin"]
    assert result.output["scanned_files"] == 6
    assert chat.requests == []


def test_regex_file_filter_stops_when_cancelled(repository, chat, project_dir: Path) -> None:
    job = _running_job(
        repository,
        "regex_file_filter",
        {
            "task_description": TASK,
            "project_directory": str(project_dir),
            "pattern_groups": [{"title": "all", "path_pattern": "."}],
        },
    )
    token = CancellationToken(job.job_id)
    token.cancel()
    processor = RegexFileFilterProcessor()

    with pytest.raises(JobCancelledError):
        processor.process(
            processor.validate_payload(job),
            _context(repository, job, chat, token=token),
        )


def test_extended_path_finder_verifies_suggestions(repository, chat, project_dir: Path) -> None:
    job = _running_job(
        repository,
        "extended_path_finder",
        {
            "task_description": TASK,
            "project_directory": str(project_dir),
            "initial_paths": ["src/app/auth.py", "src/app/gone.py"],
        },
    )
    chat.replies.append(
        json.dumps(
            {
                "paths": [
                    "src/app/session.py",
                    f"{project_dir}/tests/test_auth.py",
                    "src/app/missing.py",
                    "src/app/auth.py",
                ],
            },
        ),
    )
    processor = ExtendedPathFinderProcessor()

    result = processor.process(processor.validate_payload(job), _context(repository, job, chat))

    assert result.output == {
        "initial_paths": ["src/app/auth.py"],
        "verified_paths": ["src/app/session.py", "tests/test_auth.py"],
        "unverified_paths": ["src/app/missing.py"],
        "all_paths": ["src/app/auth.py", "src/app/session.py", "tests/test_auth.py"],
    }
    assert "check_password" in chat.requests[0].messages[1].content


def test_relevance_assessment_chunks_candidates(repository, chat, project_dir: Path) -> None:
    job = _running_job(
        repository,
        "file_relevance_assessment",
        {
            "task_description": TASK,
            "project_directory": str(project_dir),
            "candidate_files": [
                "src/app/auth.py",
                "src/app/session.py",
                "src/app/billing.py",
                "src/app/missing.py",
                "assets/logo.bin",
            ],
            "chunk_token_limit": 60,
        },
    )
    chat.replies.extend(
        [
            '{"relevant_files": ["src/app/auth.py"]}',
            '{"relevant_files": ["src/app/session.py", "src/app/billing.py"]}',
            '{"relevant_files": []}',
        ],
    )
    processor = FileRelevanceAssessmentProcessor()

    result = processor.process(processor.validate_payload(job), _context(repository, job, chat))

    assert result.output == {
        "relevant_files": ["src/app/auth.py", "src/app/session.py"],
        "chunks": 3,
        "assessed_files": 3,
    }
    assert len(chat.requests) == 3
    assert result.usage is not None
    assert result.usage.total_tokens == 45
    assert result.usage.cost == pytest.approx(0.03)


def test_relevance_assessment_without_candidates_skips_the_model(
    repository,
    chat,
    project_dir: Path,
) -> None:
    job = _running_job(
        repository,
        "file_relevance_assessment",
        {"task_description": TASK, "project_directory": str(project_dir)},
    )
    processor = FileRelevanceAssessmentProcessor()

    result = processor.process(processor.validate_payload(job), _context(repository, job, chat))

    assert result.output == {"relevant_files": [], "chunks": 0, "assessed_files": 0}
    assert chat.requests == []


def test_implementation_plan_streams_into_the_job(repository, chat, project_dir: Path) -> None:
    job = _running_job(
        repository,
        "implementation_plan",
        {
            "task_description": TASK,
            "project_directory": str(project_dir),
            "relevant_files": ["src/app/session.py"],
        },
    )
    chat.stream_chunks = ["1. Raise ", "SESSION_TTL", " in session.py\n"]
    processor = ImplementationPlanProcessor()

    result = processor.process(processor.validate_payload(job), _context(repository, job, chat))

    assert result.output == {"plan": "1. Raise SESSION_TTL in session.py", "files_used": 1}
    stored = repository.require_job(job.job_id)
    assert stored.response_text == "1. Raise SESSION_TTL in session.py\n"
    assert "SESSION_TTL = 30" in chat.requests[0].messages[1].content


def test_implementation_plan_rejects_empty_stream(repository, chat, project_dir: Path) -> None:
    job = _running_job(
        repository,
        "implementation_plan",
        {"task_description": TASK, "project_directory": str(project_dir)},
    )
    chat.stream_chunks = ["", "  "]
    processor = ImplementationPlanProcessor()

    with pytest.raises(SerializationError):
        processor.process(processor.validate_payload(job), _context(repository, job, chat))


def test_text_improvement_strips_fences(repository, chat) -> None:
    job = _running_job(
        repository,
        "text_improvement",
        {"text_to_improve": "helo wrld", "language": "English"},
    )
    chat.replies.append("```\nHello world\n```")
    processor = TextImprovementProcessor()

    result = processor.process(processor.validate_payload(job), _context(repository, job, chat))

    assert result.output == {"improved_text": "Hello world", "changed": True}
    assert "English" in chat.requests[0].messages[0].content
    assert chat.requests[0].messages[1].content == "helo wrld"


def test_llm_processor_without_chat_provider_is_a_configuration_error(repository) -> None:
    job = _running_job(repository, "text_improvement", {"text_to_improve": "helo"})
    processor = TextImprovementProcessor()

    with pytest.raises(ConfigurationError):
        processor.process(processor.validate_payload(job), _context(repository, job, None))


def test_cancelled_token_stops_before_the_model_call(repository, chat) -> None:
    job = _running_job(repository, "text_improvement", {"text_to_improve": "helo"})
    token = CancellationToken(job.job_id)
    token.cancel()
    chat.replies.append("Hello")
    processor = TextImprovementProcessor()

    with pytest.raises(JobCancelledError):
        processor.process(
            processor.validate_payload(job),
            _context(repository, job, chat, token=token),
        )
    assert chat.requests == []


def test_validate_payload_rejects_foreign_payload(repository) -> None:
    job = _running_job(repository, "text_improvement", {"text_to_improve": "helo"})

    with pytest.raises(ValidationError, match="RegexGenerationPayload"):
        RegexGenerationProcessor().validate_payload(job)


def test_path_outside_project_is_skipped(repository, chat, project_dir: Path) -> None:
    (project_dir.parent / "secret.txt").write_text("TOKEN=abc\n", encoding="utf-8")
    job = _running_job(
        repository,
        "implementation_plan",
        {
            "task_description": TASK,
            "project_directory": str(project_dir),
            "relevant_files": ["../secret.txt", "src/app/session.py"],
        },
    )
    chat.stream_chunks = ["1. Raise SESSION_TTL"]
    processor = ImplementationPlanProcessor()

    result = processor.process(processor.validate_payload(job), _context(repository, job, chat))

    assert result.output["files_used"] == 1
    assert "TOKEN=abc" not in chat.requests[0].messages[1].content


def test_extended_path_finder_leaves_outside_suggestions_unverified(
    repository,
    chat,
    project_dir: Path,
) -> None:
    (project_dir.parent / "outside.txt").write_text("not part of the project\n", encoding="utf-8")
    job = _running_job(
        repository,
        "extended_path_finder",
        {
            "task_description": TASK,
            "project_directory": str(project_dir),
            "initial_paths": ["src/app/auth.py"],
        },
    )
    chat.replies.append(json.dumps({"paths": ["../outside.txt", "src/app/session.py"]}))
    processor = ExtendedPathFinderProcessor()

    result = processor.process(processor.validate_payload(job), _context(repository, job, chat))

    assert result.output["verified_paths"] == ["src/app/session.py"]
    assert result.output["unverified_paths"] == ["../outside.txt"]


def test_filesystem_reads_stay_inside_the_project(project_dir: Path) -> None:
    (project_dir.parent / "outside.txt").write_text("outside\n", encoding="utf-8")
    filesystem = LocalFilesystem()

    assert not filesystem.exists(project_dir, "../outside.txt")
    assert filesystem.exists(project_dir, "src/app/auth.py")
    with pytest.raises(ValidationError, match="escapes"):
        filesystem.read_text(project_dir, "../outside.txt")
