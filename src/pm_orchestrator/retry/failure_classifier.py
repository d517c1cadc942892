"""Deterministic failure classification for executor errors."""

from __future__ import annotations

import functools
import re
from dataclasses import dataclass
from enum import Enum

FAILURE_CLASSIFIER_VERSION = 1


class FailureType(str, Enum):
    """Normalized failure classes used by retry policy."""

    TRANSIENT_ERROR = "TRANSIENT_ERROR"
    RATE_LIMIT = "RATE_LIMIT"
    TIMEOUT = "TIMEOUT"
    MODEL_LIMIT = "MODEL_LIMIT"
    CONTEXT_LENGTH_EXCEEDED = "CONTEXT_LENGTH_EXCEEDED"
    MODEL_UNAVAILABLE = "MODEL_UNAVAILABLE"
    NETWORK_ERROR = "NETWORK_ERROR"
    AUTH_ERROR = "AUTH_ERROR"
    UNKNOWN = "UNKNOWN"


NEVER_RETRYABLE: frozenset[FailureType] = frozenset(
    {FailureType.AUTH_ERROR, FailureType.CONTEXT_LENGTH_EXCEEDED},
)
ESCALATION_FAILURES: frozenset[FailureType] = frozenset(
    {FailureType.CONTEXT_LENGTH_EXCEEDED, FailureType.MODEL_LIMIT},
)

_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "invalid_api_key",
    "incorrect api key",
    "authentication failed",
    "authentication error",
    "authentication required",
    "not authenticated",
    "access denied",
)
_CONTEXT_LENGTH_PATTERNS: tuple[str, ...] = (
    "context_length_exceeded",
    "context length",
    "maximum context",
    "context window",
    "prompt is too long",
    "input is too long",
    "too many tokens",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "rate_limit",
    "ratelimit",
    "too many requests",
    "429",
    "throttled",
    "throttling",
    "requests per minute",
)
_MODEL_LIMIT_PATTERNS: tuple[str, ...] = (
    "max_tokens",
    "max tokens",
    "maximum output",
    "output limit",
    "token limit",
    "quota",
    "usage limit",
    "insufficient credits",
)
_MODEL_UNAVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "model_not_found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "model is not available",
    "model unavailable",
    "model has been deprecated",
)
_TIMEOUT_PATTERNS: tuple[str, ...] = (
    "timed out",
    "timeout",
    "deadline exceeded",
    "504",
)
_NETWORK_PATTERNS: tuple[str, ...] = (
    "connection reset",
    "connection refused",
    "connection aborted",
    "network error",
    "network is unreachable",
    "could not resolve host",
    "name resolution",
    "econnreset",
    "econnrefused",
    "socket hang up",
    "dns",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "service unavailable",
    "overloaded",
    "internal server error",
    "bad gateway",
    "502",
    "503",
    "try again",
    "please retry",
)

_RULES: tuple[tuple[str, FailureType, tuple[str, ...]], ...] = (
    ("auth", FailureType.AUTH_ERROR, _AUTH_PATTERNS),
    ("context_length", FailureType.CONTEXT_LENGTH_EXCEEDED, _CONTEXT_LENGTH_PATTERNS),
    ("rate_limit", FailureType.RATE_LIMIT, _RATE_LIMIT_PATTERNS),
    ("model_limit", FailureType.MODEL_LIMIT, _MODEL_LIMIT_PATTERNS),
    ("model_unavailable", FailureType.MODEL_UNAVAILABLE, _MODEL_UNAVAILABLE_PATTERNS),
    ("timeout", FailureType.TIMEOUT, _TIMEOUT_PATTERNS),
    ("network", FailureType.NETWORK_ERROR, _NETWORK_PATTERNS),
    ("transient", FailureType.TRANSIENT_ERROR, _TRANSIENT_PATTERNS),
)

_STATUS_CODE_RULES: dict[int, FailureType] = {
    401: FailureType.AUTH_ERROR,
    403: FailureType.AUTH_ERROR,
    404: FailureType.MODEL_UNAVAILABLE,
    408: FailureType.TIMEOUT,
    413: FailureType.CONTEXT_LENGTH_EXCEEDED,
    429: FailureType.RATE_LIMIT,
    500: FailureType.TRANSIENT_ERROR,
    502: FailureType.TRANSIENT_ERROR,
    503: FailureType.TRANSIENT_ERROR,
    504: FailureType.TIMEOUT,
}


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_type: FailureType
    reason_code: str
    matched_rule: str
    matched_pattern: str | None
    message: str

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for task events."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "failure_type": self.failure_type.value,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_failure(error: BaseException | str, *, kind: str | None = None) -> FailureClassification:
    """Map an executor error (exception or message) to a ``FailureType``.

    The error kind is taken from ``kind``, an exception's ``kind`` attribute, or
    its class name. An integer ``status_code`` attribute is consulted before
    message patterns.
    """

    message = str(error)
    resolved_kind = kind
    status_code: int | None = None
    if isinstance(error, BaseException):
        resolved_kind = resolved_kind or getattr(error, "kind", None) or type(error).__name__
        raw_status = getattr(error, "status_code", None)
        if isinstance(raw_status, int):
            status_code = raw_status
        if isinstance(error, TimeoutError):
            return FailureClassification(
                failure_type=FailureType.TIMEOUT,
                reason_code="timeout_exception",
                matched_rule="exception_type",
                matched_pattern=type(error).__name__,
                message=message,
            )
        if isinstance(error, ConnectionError):
            return FailureClassification(
                failure_type=FailureType.NETWORK_ERROR,
                reason_code="connection_exception",
                matched_rule="exception_type",
                matched_pattern=type(error).__name__,
                message=message,
            )

    if status_code is not None and status_code in _STATUS_CODE_RULES:
        failure_type = _STATUS_CODE_RULES[status_code]
        return FailureClassification(
            failure_type=failure_type,
            reason_code=f"http_{status_code}",
            matched_rule="status_code",
            matched_pattern=str(status_code),
            message=message,
        )

    text = f"{resolved_kind or ''} {message}".lower()
    for rule_name, failure_type, patterns in _RULES:
        pattern = _first_match(text, patterns)
        if pattern is not None:
            return FailureClassification(
                failure_type=failure_type,
                reason_code=f"{rule_name}_pattern",
                matched_rule=rule_name,
                matched_pattern=pattern,
                message=message,
            )

    return FailureClassification(
        failure_type=FailureType.UNKNOWN,
        reason_code="unclassified",
        matched_rule="fallback_unknown",
        matched_pattern=None,
        message=message,
    )


def _first_match(text: str, patterns: tuple[str, ...]) -> str | None:
    """Return the first pattern found in ``text`` as a whole token run."""

    for pattern in patterns:
        if _pattern_regex(pattern).search(text):
            return pattern
    return None


@functools.cache
def _pattern_regex(pattern: str) -> re.Pattern[str]:
    # "429" must not match inside "req_4290abc", nor "dns" inside "dnsmasq".
    return re.compile(rf"(?<![a-z0-9]){re.escape(pattern)}(?![a-z0-9])")
