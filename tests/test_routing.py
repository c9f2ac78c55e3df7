from __future__ import annotations

import allure

from jobflow.config import ModelDefaults
from jobflow.jobs.routing import resolve_model_settings

pytestmark = [
    allure.epic("Job Engine"),
    allure.feature("Model Routing"),
]


def _defaults() -> ModelDefaults:
    return ModelDefaults(
        default_model="base-model",
        task_type_models={"implementation_plan": "plan-model"},
        temperature=0.3,
        max_tokens=2048,
    )


def test_defaults_apply_without_hints() -> None:
    settings = resolve_model_settings(_defaults(), "file_finder")

    assert settings.model == "base-model"
    assert settings.temperature == 0.3
    assert settings.max_tokens == 2048


def test_task_type_map_beats_default_model() -> None:
    settings = resolve_model_settings(_defaults(), "implementation_plan")

    assert settings.model == "plan-model"


def test_explicit_values_win() -> None:
    settings = resolve_model_settings(
        _defaults(),
        "implementation_plan",
        model="explicit-model",
        temperature=0.0,
        max_tokens=128,
    )

    assert settings.model == "explicit-model"
    assert settings.temperature == 0.0
    assert settings.max_tokens == 128
