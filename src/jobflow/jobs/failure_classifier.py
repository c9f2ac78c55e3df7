"""Deterministic error classification for the retry policy."""

from __future__ import annotations

import json
from dataclasses import dataclass

from jobflow.errors import JobflowError, ProviderError
from jobflow.jobs.models import FailureClass

FAILURE_CLASSIFIER_VERSION = 1

_CONTENT_POLICY_PATTERNS: tuple[str, ...] = (
    "content policy",
    "content_policy",
    "safety system",
    "flagged",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "model is not available",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "overloaded",
    "try again later",
)
_PERMANENT_STATUS_CODES = frozenset({400, 401, 403, 404, 422})
_AUTH_STATUS_CODES = frozenset({401, 403})
_RATE_LIMIT_STATUS_CODE = 429
_SERVER_ERROR_MIN = 500


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    retryable: bool
    reason_code: str
    matched_rule: str
    matched_pattern: str | None = None

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for job events and metadata."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "retryable": self.retryable,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_error(error: BaseException) -> FailureClassification:
    """Map an exception raised during processing to a failure class."""

    if isinstance(error, ProviderError):
        return _classify_provider_error(error)
    if isinstance(error, JobflowError):
        return FailureClassification(
            failure_class=error.failure_class,
            retryable=error.retryable,
            reason_code=type(error).__name__,
            matched_rule="typed_error",
        )
    if isinstance(error, json.JSONDecodeError):
        return FailureClassification(
            failure_class=FailureClass.SERIALIZATION,
            retryable=False,
            reason_code="json_decode_error",
            matched_rule="json_decode",
        )
    if isinstance(error, TimeoutError):
        return FailureClassification(
            failure_class=FailureClass.TIMEOUT,
            retryable=True,
            reason_code="timeout",
            matched_rule="builtin_timeout",
        )
    if isinstance(error, ConnectionError | OSError):
        return FailureClassification(
            failure_class=FailureClass.TRANSIENT_INFRA,
            retryable=True,
            reason_code=type(error).__name__,
            matched_rule="builtin_io",
        )
    return FailureClassification(
        failure_class=FailureClass.UNKNOWN,
        retryable=True,
        reason_code=type(error).__name__,
        matched_rule="fallback_retryable",
    )


def _classify_provider_error(error: ProviderError) -> FailureClassification:  # noqa: PLR0911
    haystack = str(error).lower()
    status_code = error.status_code

    pattern = _first_match(haystack, _CONTENT_POLICY_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.CONTENT_POLICY,
            retryable=False,
            reason_code="provider_content_policy",
            matched_rule="content_policy",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _ACCESS_OR_AUTH_PATTERNS)
    if pattern is not None or status_code in _AUTH_STATUS_CODES:
        return FailureClassification(
            failure_class=FailureClass.ACCESS_OR_AUTH,
            retryable=False,
            reason_code="provider_access_or_auth",
            matched_rule="access_or_auth",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _MODEL_NOT_AVAILABLE_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.MODEL_NOT_AVAILABLE,
            retryable=False,
            reason_code="provider_model_not_available",
            matched_rule="model_not_available",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _RATE_LIMIT_PATTERNS)
    if pattern is not None or status_code == _RATE_LIMIT_STATUS_CODE:
        return FailureClassification(
            failure_class=FailureClass.RATE_LIMITED,
            retryable=True,
            reason_code="provider_rate_limited",
            matched_rule="rate_limit",
            matched_pattern=pattern,
        )

    if error.permanent or status_code in _PERMANENT_STATUS_CODES:
        return FailureClassification(
            failure_class=FailureClass.PROVIDER_PERMANENT,
            retryable=False,
            reason_code="provider_permanent",
            matched_rule="permanent_status" if status_code else "permanent_flag",
        )

    return FailureClassification(
        failure_class=FailureClass.PROVIDER_TRANSIENT,
        retryable=True,
        reason_code="provider_transient",
        matched_rule=(
            "server_error"
            if status_code is not None and status_code >= _SERVER_ERROR_MIN
            else "fallback_transient"
        ),
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
