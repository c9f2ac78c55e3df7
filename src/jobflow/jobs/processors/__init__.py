"""Built-in processors, one per task type."""

from __future__ import annotations

from jobflow.jobs.processors.extended_path_finder import ExtendedPathFinderProcessor
from jobflow.jobs.processors.file_relevance_assessment import FileRelevanceAssessmentProcessor
from jobflow.jobs.processors.implementation_plan import ImplementationPlanProcessor
from jobflow.jobs.processors.regex_file_filter import RegexFileFilterProcessor
from jobflow.jobs.processors.regex_generation import RegexGenerationProcessor
from jobflow.jobs.processors.text_improvement import TextImprovementProcessor
from jobflow.jobs.registry import JobRegistry

__all__ = [
    "ExtendedPathFinderProcessor",
    "FileRelevanceAssessmentProcessor",
    "ImplementationPlanProcessor",
    "RegexFileFilterProcessor",
    "RegexGenerationProcessor",
    "TextImprovementProcessor",
    "build_default_registry",
]


def build_default_registry() -> JobRegistry:
    """Registry holding every built-in processor."""

    return JobRegistry(
        [
            RegexGenerationProcessor(),
            RegexFileFilterProcessor(),
            ExtendedPathFinderProcessor(),
            FileRelevanceAssessmentProcessor(),
            ImplementationPlanProcessor(),
            TextImprovementProcessor(),
        ],
    )
