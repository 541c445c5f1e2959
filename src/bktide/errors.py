"""Classify remote failures into a small retry taxonomy.

Failures reach us from httpx, from the Buildkite API and from whatever
wraps them, so classification works on message text rather than on
exception types.
"""

from __future__ import annotations

from dataclasses import dataclass

RATE_LIMITED = "rate_limited"
NOT_FOUND = "not_found"
PERMISSION_DENIED = "permission_denied"
NETWORK_ERROR = "network_error"
UNKNOWN = "unknown"

_RATE_LIMIT_KEYWORDS = ["rate limit", "429"]
_NOT_FOUND_KEYWORDS = ["not found", "404"]
_PERMISSION_KEYWORDS = ["permission", "401", "403"]
_NETWORK_KEYWORDS = [
    "network",
    "econnrefused",
    "enotfound",
    "connection refused",
    "name or service not known",
    "nodename nor servname",
]


@dataclass(frozen=True)
class ErrorCategory:
    """A classified failure."""

    category: str
    message: str
    retryable: bool

    def to_dict(self) -> dict:
        return {"error": self.category, "message": self.message, "retryable": self.retryable}


def _message_of(error: object) -> str:
    if isinstance(error, str):
        return error
    return str(error)


def _contains_any(haystack: str, needles: list[str]) -> bool:
    return any(n in haystack for n in needles)


def classify(error: object) -> ErrorCategory:
    """Classify a failure. Never raises; unmatched messages are ``unknown``.

    Specific categories are checked before the generic network one, since an
    auth failure proxied through a network wrapper mentions both.
    """
    message = _message_of(error)
    lowered = message.lower()

    if _contains_any(lowered, _RATE_LIMIT_KEYWORDS):
        return ErrorCategory(RATE_LIMITED, message, True)
    if _contains_any(lowered, _NOT_FOUND_KEYWORDS):
        return ErrorCategory(NOT_FOUND, message, False)
    if _contains_any(lowered, _PERMISSION_KEYWORDS):
        return ErrorCategory(PERMISSION_DENIED, message, False)
    if _contains_any(lowered, _NETWORK_KEYWORDS):
        return ErrorCategory(NETWORK_ERROR, message, True)
    # Optimistic default: an unrecognised failure may well be transient.
    return ErrorCategory(UNKNOWN, message, True)
