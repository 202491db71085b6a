"""Error taxonomy for the generation pipeline.

Every failure that crosses a component boundary is expressed as a
``PipelineError`` subclass whose category decides the retry policy:

- **transient**: timeouts, 5xx, dropped connections. Retry with backoff.
- **rate_limit**: 429 / quota. Retry with a longer floor, honour ``retry_after``.
- **permanent**: validation, not-found, auth. Never retried.
- **external_service**: discovery / generative service misbehaving
  (malformed JSON, unexpected shape). Retry, then degrade.
- **internal**: anything unexpected. Logged in full, surfaced generically.

``client_safe_error`` is the only way error text leaves the process.
"""
from __future__ import annotations

import json
import logging
from typing import Any

import httpx

log = logging.getLogger(__name__)


class PipelineError(Exception):
    """Base class for all categorized pipeline failures."""

    category = "internal"
    code = "INTERNAL_ERROR"
    retryable = False
    default_delay = 0.0
    status_code = 500
    public_message = "An error occurred processing your request. Please try again."

    def __init__(self, message: str = "", *, retry_after: float | None = None):
        super().__init__(message or self.public_message)
        self.retry_after = retry_after


class TransientError(PipelineError):
    category = "transient"
    code = "TRANSIENT_ERROR"
    retryable = True
    default_delay = 1.0
    status_code = 503
    public_message = "A temporary error occurred. Please try again."


class RateLimitError(PipelineError):
    category = "rate_limit"
    code = "RATE_LIMIT"
    retryable = True
    default_delay = 5.0
    status_code = 429
    public_message = "Too many requests. Please try again later."


class PermanentError(PipelineError):
    category = "permanent"
    code = "VALIDATION_ERROR"
    status_code = 422
    public_message = "The request contains invalid data. Please check your input."


class InvalidInputError(PermanentError):
    pass


class NotFoundError(PermanentError):
    code = "NOT_FOUND"
    status_code = 404
    public_message = "The requested resource was not found."


class AuthorizationError(PermanentError):
    code = "PERMISSION_DENIED"
    status_code = 403
    public_message = "You do not have permission to perform this action."


class NoCandidatesError(PermanentError):
    code = "NO_CANDIDATES"
    status_code = 422
    public_message = "No partner organizations could be found for this course."


class ExternalServiceError(PipelineError):
    category = "external_service"
    code = "EXTERNAL_API_ERROR"
    retryable = True
    default_delay = 2.0
    status_code = 502
    public_message = "An error occurred connecting to external services. Please try again."


class LLMCallError(ExternalServiceError):
    """Generative service call failed or returned unparseable output."""


class DiscoveryError(ExternalServiceError):
    """Discovery/enrichment provider failed."""


class InternalError(PipelineError):
    pass


class GenerationExhausted(PipelineError):
    """Proposal generation for one candidate ran out of attempts."""

    category = "external_service"
    code = "GENERATION_EXHAUSTED"
    status_code = 502
    public_message = "Project generation failed for this partner after several attempts."

    def __init__(self, candidate_name: str, attempts: int, cause: BaseException | None = None):
        detail = f": {cause}" if cause else ""
        super().__init__(f"Generation for {candidate_name!r} failed after {attempts} attempts{detail}")
        self.candidate_name = candidate_name
        self.attempts = attempts
        self.cause = cause


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    # Some providers send milliseconds.
    return seconds / 1000 if seconds > 1000 else seconds


def error_for_status(status: int, message: str, retry_after: str | None = None) -> PipelineError:
    """Map an HTTP status code onto the taxonomy."""
    if status == 429:
        return RateLimitError(message, retry_after=_parse_retry_after(retry_after))
    if status in (401, 403):
        return AuthorizationError(message)
    if status == 404:
        return NotFoundError(message)
    if status == 408 or status >= 500:
        return TransientError(message)
    if status == 402:
        return ExternalServiceError(message)
    return PermanentError(message)


def classify_exception(exc: BaseException) -> PipelineError:
    """Wrap an arbitrary exception in the matching ``PipelineError``."""
    if isinstance(exc, PipelineError):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        resp = exc.response
        return error_for_status(resp.status_code, str(exc), resp.headers.get("retry-after"))
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, TimeoutError, ConnectionError)):
        return TransientError(str(exc) or type(exc).__name__)
    if isinstance(exc, json.JSONDecodeError):
        return ExternalServiceError(f"Malformed JSON: {exc}")

    # SDK errors (anthropic / openai) expose status_code and a response.
    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        headers = getattr(getattr(exc, "response", None), "headers", None) or {}
        return error_for_status(status, str(exc), headers.get("retry-after"))
    name = type(exc).__name__
    if "Timeout" in name or "Connection" in name:
        return TransientError(str(exc) or name)
    return InternalError(f"{name}: {exc}")


def backoff_delay(error: PipelineError, attempt: int, base: float, cap: float) -> float:
    """Exponential delay for *attempt* (1-based), floored by the error category.

    ``retry_after`` from the provider wins when present.
    """
    if error.retry_after is not None:
        return max(0.0, min(error.retry_after, max(cap, error.default_delay)))
    delay = min(base * 2 ** (attempt - 1), cap)
    if base > 0:
        delay = max(delay, error.default_delay)
    return delay


def client_safe_error(exc: BaseException) -> dict[str, Any]:
    """Log full detail server-side; return only a generic message and code."""
    err = classify_exception(exc)
    if isinstance(err, InternalError) or not isinstance(exc, PipelineError):
        log.error("Internal error (%s): %s", type(exc).__name__, exc, exc_info=exc)
    else:
        log.warning("%s: %s", err.code, exc)
    payload: dict[str, Any] = {"error": err.public_message, "code": err.code}
    if isinstance(err, RateLimitError) and err.retry_after is not None:
        payload["retry_after"] = err.retry_after
    return payload
