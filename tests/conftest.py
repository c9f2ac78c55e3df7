"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from jobflow.jobs.notifier import InMemoryNotifier
from jobflow.jobs.processors import build_default_registry
from jobflow.jobs.repository import JobRepository
from jobflow.jobs.retry import RetryPolicy
from jobflow.jobs.scheduler import JobScheduler
from jobflow.providers.chat import ChatCompletion, ChatRequest, ChatUsage

Reply = str | BaseException | Callable[[ChatRequest], str]


class FakeChatProvider:
    """Scripted chat provider: pops one reply per ``complete`` call."""

    def __init__(self, replies: list[Reply] | None = None) -> None:
        self.replies: list[Reply] = list(replies or [])
        self.stream_chunks: list[str] = []
        self.stream_scripts: list[list[str | BaseException]] = []
        self.requests: list[ChatRequest] = []

    def complete(self, request: ChatRequest) -> ChatCompletion:
        self.requests.append(request)
        if not self.replies:
            raise AssertionError("unexpected chat completion call")
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        text = reply(request) if callable(reply) else reply
        return ChatCompletion(
            text=text,
            model=request.model,
            usage=ChatUsage(prompt_tokens=10, completion_tokens=5, total_tokens=15, cost=0.01),
        )

    def stream(self, request: ChatRequest) -> Iterator[str]:
        """Yield ``stream_scripts[0]`` (one script per call) or ``stream_chunks``."""

        self.requests.append(request)
        script = self.stream_scripts.pop(0) if self.stream_scripts else self.stream_chunks
        for item in script:
            if isinstance(item, BaseException):
                raise item
            yield item


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[JobRepository]:
    repo = JobRepository(tmp_path / "jobs.db")
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def chat() -> FakeChatProvider:
    return FakeChatProvider()


@pytest.fixture()
def notifier() -> InMemoryNotifier:
    return InMemoryNotifier()


@pytest.fixture()
def scheduler(
    repository: JobRepository,
    chat: FakeChatProvider,
    notifier: InMemoryNotifier,
) -> Iterator[JobScheduler]:
    job_scheduler = JobScheduler(
        repository=repository,
        registry=build_default_registry(),
        retry_policy=RetryPolicy(base_delay_seconds=0.0, max_delay_seconds=0.0, max_retries=2),
        worker_id="test-worker",
        notifier=notifier,
        chat=chat,
        concurrency_limit=2,
    )
    yield job_scheduler
    job_scheduler.shutdown()


@pytest.fixture()
def project_dir(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    files = {
        "src/app/auth.py": "def login(user):\n    return check_password(user)\n",
        "src/app/session.py": "from app.auth import login\n\nSESSION_TTL = 30\n",
        "src/app/billing.py": "def charge(amount):\n    return amount\n",
        "tests/test_auth.py": "from app.auth import login\n\ndef test_login():\n    pass\n",
        "README.md": "# Demo project\n",
        "node_modules/lib/index.js": "module.exports = {}\n",
    }
    for relative, content in files.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    (root / "assets").mkdir()
    (root / "assets" / "logo.bin").write_bytes(b"\x89PNG\x00\x00binary")
    return root
