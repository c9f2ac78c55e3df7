"""Model selection for jobs: explicit value > per-task model map > defaults."""

from __future__ import annotations

from jobflow.config import ModelDefaults
from jobflow.jobs.models import ModelSettings


def resolve_model_settings(
    defaults: ModelDefaults,
    task_type: str,
    *,
    model: str | None = None,
    temperature: float | None = None,
    max_tokens: int | None = None,
) -> ModelSettings:
    """Resolve the model settings frozen onto a job at creation time."""

    resolved_model = defaults.task_type_models.get(task_type, defaults.default_model)
    resolved_temperature: float = defaults.temperature
    resolved_max_tokens: int = defaults.max_tokens

    if model:
        resolved_model = model
    if temperature is not None:
        resolved_temperature = temperature
    if max_tokens is not None:
        resolved_max_tokens = max_tokens

    return ModelSettings(
        model=resolved_model,
        temperature=resolved_temperature,
        max_tokens=resolved_max_tokens,
    )
