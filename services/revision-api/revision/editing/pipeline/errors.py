"""
Error taxonomy for the editing pipeline.

Every fault raised by the remote model (SDK exceptions, timeouts, socket
errors) is rewritten into a PipelineError tagged with an ErrorKind. Retry
guidance is derived from the kind, never stored on the instance.
"""
import asyncio
import logging
import re
from datetime import timedelta
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_MESSAGE_LENGTH = 200


class ErrorKind(str, Enum):
    NETWORK = "network"
    AUTHENTICATION = "authentication"
    PERMISSION = "permission"
    QUOTA = "quota"
    MODEL_NOT_FOUND = "model_not_found"
    VALIDATION = "validation"
    CANCELLED = "cancelled"
    GENERAL = "general"


RETRYABLE_KINDS = frozenset({ErrorKind.NETWORK, ErrorKind.QUOTA})


class PipelineError(Exception):
    def __init__(self, kind: ErrorKind, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.code = code or kind.value

    @property
    def retryable(self) -> bool:
        return is_retryable(self)

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "code": self.code, "message": self.message}

    def __repr__(self) -> str:
        return f"PipelineError(kind={self.kind.value!r}, code={self.code!r}, message={self.message!r})"


def validation_error(message: str) -> PipelineError:
    return PipelineError(ErrorKind.VALIDATION, message, code="invalid_input")


# ============================================================================
# CLASSIFICATION RULES: evaluated in order, first match wins
# ============================================================================

# (kind, code, needles, message template; {detail} is the sanitized error)
_RULES: List[Tuple[ErrorKind, str, Tuple[str, ...], str]] = [
    (ErrorKind.PERMISSION, "403", ("403", "forbidden"),
     "AI service access denied. Check project billing and API permissions."),
    (ErrorKind.MODEL_NOT_FOUND, "404", ("404", "not found"),
     "AI model not found. The model might not be available for this account or region."),
    (ErrorKind.AUTHENTICATION, "401", ("401", "unauthorized", "authentication"),
     "AI service authentication failed. Check the configured API key."),
    (ErrorKind.QUOTA, "quota_exceeded", ("quota", "rate limit", "too many requests", "429"),
     "AI service quota exceeded. Check billing and usage limits."),
    (ErrorKind.NETWORK, "network", ("timeout", "connection", "network", "socket"),
     "Network error occurred: {detail}"),
    (ErrorKind.MODEL_NOT_FOUND, "model_error", ("model", "invalid request", "bad request"),
     "Model error: {detail}"),
    (ErrorKind.VALIDATION, "validation", ("validation", "invalid", "malformed"),
     "Validation error: {detail}"),
]

_PREFIX_RE = re.compile(r"\b(exception|error|failure):\s*", re.IGNORECASE)
_STACK_LINE_RE = re.compile(r"^\s*(#\d+|Traceback \(most recent call last\)|File \")")


def _haystack(error: BaseException) -> str:
    parts = [type(error).__name__]
    status = getattr(error, "status_code", None)
    if status is not None:
        parts.append(str(status))
    parts.append(str(error))
    return " ".join(parts).lower()


def sanitize_message(text: str) -> str:
    """
    Strips error-prefix tokens and stack-trace lines, then keeps the first
    sentence, capped at 200 characters.
    """
    lines = [ln for ln in text.splitlines() if not _STACK_LINE_RE.match(ln)]
    cleaned = _PREFIX_RE.sub("", " ".join(lines)).strip()

    first = cleaned.split(".")[0].strip()
    candidate = first if first else cleaned
    if len(candidate) > MAX_MESSAGE_LENGTH:
        return candidate[:MAX_MESSAGE_LENGTH] + "..."
    return candidate


def classify(error: BaseException) -> PipelineError:
    if isinstance(error, PipelineError):
        return error
    if isinstance(error, asyncio.CancelledError):
        return PipelineError(ErrorKind.CANCELLED, "Processing was cancelled", code="cancelled")

    haystack = _haystack(error)
    detail = sanitize_message(str(error)) or type(error).__name__

    for kind, code, needles, template in _RULES:
        if any(n in haystack for n in needles):
            return PipelineError(kind, template.format(detail=detail), code=code)

    return PipelineError(ErrorKind.GENERAL, f"Unexpected error occurred: {detail}", code="unexpected")


def is_retryable(error: PipelineError) -> bool:
    return error.kind in RETRYABLE_KINDS


def retry_delay(error: PipelineError, attempt: int, base: timedelta = timedelta(seconds=1)) -> timedelta:
    """2, 4, 8, 16... base units for attempts 0, 1, 2, 3, plus 10 % jitter."""
    if not is_retryable(error):
        return timedelta(0)
    delay = base * (2 << attempt)
    return delay + delay * 0.1


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    max_retries: int = 2,
    base_delay: timedelta = timedelta(seconds=1),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Caller-side retry policy. Runs `operation` until it succeeds, fails with
    a non-retryable error, or `max_retries` retries are used up. The last
    failure is raised as a PipelineError.
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as e:
            err = classify(e)
            if attempt >= max_retries or not is_retryable(err):
                raise err from e
            wait = retry_delay(err, attempt, base_delay)
            logger.warning("Retryable %s failure (attempt %d/%d), waiting %.1fs: %s",
                           err.kind.value, attempt + 1, max_retries, wait.total_seconds(), err.message)
            await sleep(wait.total_seconds())
            attempt += 1
