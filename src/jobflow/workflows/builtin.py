"""Workflow definitions shipped with the package."""

from __future__ import annotations

from typing import Any

_FILE_FINDER_STAGES: list[dict[str, Any]] = [
    {
        "stage_name": "regex_generation",
        "task_type": "regex_generation",
        "dependencies": [],
        "temperature": 0.2,
    },
    {
        "stage_name": "local_filtering",
        "task_type": "regex_file_filter",
        "dependencies": ["regex_generation"],
    },
    {
        "stage_name": "extended_path_finding",
        "task_type": "extended_path_finder",
        "dependencies": ["local_filtering"],
        "temperature": 0.3,
    },
    {
        "stage_name": "relevance_assessment",
        "task_type": "file_relevance_assessment",
        "dependencies": ["extended_path_finding"],
        "temperature": 0.1,
    },
]

EMBEDDED_WORKFLOWS: tuple[dict[str, Any], ...] = (
    {
        "name": "file_finder",
        "description": "Find the files relevant to a task description.",
        "stages": _FILE_FINDER_STAGES,
    },
    {
        "name": "file_finder_with_plan",
        "description": "Find relevant files, then draft an implementation plan from them.",
        "stages": [
            *_FILE_FINDER_STAGES,
            {
                "stage_name": "implementation_plan",
                "task_type": "implementation_plan",
                "dependencies": ["relevance_assessment"],
                "temperature": 0.5,
                "max_tokens": 8192,
            },
        ],
    },
)
