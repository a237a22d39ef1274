"""
Code Companion - Error Classification and Retry

Maps arbitrary failures onto a fixed taxonomy (ErrorCode), decides whether they
are worth retrying, and drives exponential backoff and primary/fallback calls.

Classification is an ordered rule table; the first matching rule wins.
Surfaced errors are CompanionError instances whose str() is the user-facing
message. Raw provider text is only ever logged.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, FrozenSet, NoReturn, Optional, Tuple, Type, TypeVar

import httpx
from loguru import logger

from .schemas import ErrorCode, ErrorDetails, RetryConfig

T = TypeVar("T")


# =============================================================================
# CATALOG
# =============================================================================


ERROR_CATALOG: Dict[ErrorCode, ErrorDetails] = {
    ErrorCode.NETWORK_ERROR: ErrorDetails(
        code=ErrorCode.NETWORK_ERROR,
        message="Network connection failed",
        user_message="Unable to connect to AI service. Please check your internet connection.",
        suggestion="Try again in a moment or check your network settings.",
        is_retryable=True,
    ),
    ErrorCode.API_KEY_INVALID: ErrorDetails(
        code=ErrorCode.API_KEY_INVALID,
        message="API key is invalid or expired",
        user_message="Your API key appears to be invalid or expired.",
        suggestion="Check the API key in your secret store and make sure it is correct.",
        is_retryable=False,
    ),
    ErrorCode.RATE_LIMIT_EXCEEDED: ErrorDetails(
        code=ErrorCode.RATE_LIMIT_EXCEEDED,
        message="Rate limit exceeded",
        user_message="Too many requests. Rate limit exceeded.",
        suggestion="Please wait a moment before trying again.",
        is_retryable=True,
    ),
    ErrorCode.MODEL_NOT_AVAILABLE: ErrorDetails(
        code=ErrorCode.MODEL_NOT_AVAILABLE,
        message="Selected model is not available",
        user_message="The selected AI model is temporarily unavailable.",
        suggestion="Try switching to a different model or wait a moment.",
        is_retryable=True,
    ),
    ErrorCode.CONTEXT_TOO_LARGE: ErrorDetails(
        code=ErrorCode.CONTEXT_TOO_LARGE,
        message="Context size exceeds model limits",
        user_message="Your request is too large for the selected model.",
        suggestion="Try breaking your request into smaller parts or use a model with a larger context.",
        is_retryable=False,
    ),
    ErrorCode.COST_LIMIT_EXCEEDED: ErrorDetails(
        code=ErrorCode.COST_LIMIT_EXCEEDED,
        message="Daily cost limit exceeded",
        user_message="You've reached your daily spending limit.",
        suggestion="Increase your daily limit in settings or wait until tomorrow.",
        is_retryable=False,
    ),
    ErrorCode.UNKNOWN_ERROR: ErrorDetails(
        code=ErrorCode.UNKNOWN_ERROR,
        message="An unexpected error occurred",
        user_message="Something went wrong. Please try again.",
        suggestion="If the problem persists, please report this issue.",
        is_retryable=True,
    ),
}


@dataclass(frozen=True)
class ClassificationRule:
    code: ErrorCode
    status_codes: FrozenSet[int] = frozenset()
    keywords: Tuple[str, ...] = ()
    exception_types: Tuple[Type[BaseException], ...] = ()

    def matches(self, error: BaseException, text: str, status: Optional[int]) -> bool:
        if self.exception_types and isinstance(error, self.exception_types):
            return True
        if status is not None and status in self.status_codes:
            return True
        return any(k in text for k in self.keywords)


# Order matters: first match wins. Keywords match the message text only.
CLASSIFICATION_RULES: Tuple[ClassificationRule, ...] = (
    ClassificationRule(
        code=ErrorCode.NETWORK_ERROR,
        keywords=("network", "connection", "timeout", "timed out", "enotfound"),
        exception_types=(httpx.TransportError, ConnectionError, asyncio.TimeoutError),
    ),
    ClassificationRule(
        code=ErrorCode.API_KEY_INVALID,
        status_codes=frozenset({401, 403}),
        keywords=("unauthorized", "forbidden", "api key", "authentication"),
    ),
    ClassificationRule(
        code=ErrorCode.RATE_LIMIT_EXCEEDED,
        status_codes=frozenset({429}),
        keywords=("rate limit", "too many requests"),
    ),
    ClassificationRule(
        code=ErrorCode.MODEL_NOT_AVAILABLE,
        status_codes=frozenset({404, 503}),
        keywords=("model not found", "unavailable"),
    ),
    ClassificationRule(
        code=ErrorCode.CONTEXT_TOO_LARGE,
        status_codes=frozenset({413}),
        keywords=("context", "token limit", "too large"),
    ),
    ClassificationRule(
        code=ErrorCode.COST_LIMIT_EXCEEDED,
        keywords=("cost limit", "spending limit"),
    ),
)


# =============================================================================
# EXCEPTIONS
# =============================================================================


class CompanionError(Exception):
    """A classified, user-presentable failure."""

    def __init__(
        self,
        details: ErrorDetails,
        context: str = "",
        original: Optional[BaseException] = None,
        user_message: Optional[str] = None,
    ):
        self.details = details
        self.context = context
        self.original = original
        self.user_message = user_message or details.user_message
        super().__init__(self.user_message)

    @property
    def code(self) -> ErrorCode:
        return self.details.code

    @property
    def suggestion(self) -> str:
        return self.details.suggestion

    @property
    def is_retryable(self) -> bool:
        return self.details.is_retryable

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_message": self.user_message,
            "suggestion": self.suggestion,
            "code": self.code.value,
            "context": self.context,
        }

    def format_for_user(self) -> str:
        return f"{self.user_message}\n\nSuggestion: {self.suggestion}"


class CostLimitExceededError(CompanionError):
    def __init__(self, daily_usage: float, daily_limit: float, context: str = "cost_ledger"):
        super().__init__(
            ERROR_CATALOG[ErrorCode.COST_LIMIT_EXCEEDED],
            context=context,
            user_message=(
                f"Daily cost limit of ${daily_limit:.2f} reached "
                f"(used ${daily_usage:.4f}). Usage will reset at midnight."
            ),
        )
        self.daily_usage = daily_usage
        self.daily_limit = daily_limit


class ProviderResponseError(CompanionError):
    """Provider answered, but the payload did not match the expected shape."""

    def __init__(self, provider: str, reason: str):
        super().__init__(ERROR_CATALOG[ErrorCode.UNKNOWN_ERROR], context=provider)
        self.provider = provider
        self.reason = reason


class RequestCancelled(Exception):
    """Raised when a caller-supplied CancellationToken fires."""

    def __init__(self, context: str = ""):
        super().__init__(f"Request cancelled: {context}" if context else "Request cancelled")
        self.context = context


class CancellationToken:
    """Caller-owned cancellation signal for a single chat turn."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


# =============================================================================
# CLASSIFICATION
# =============================================================================


def _status_code(error: BaseException) -> Optional[int]:
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def classify_error(error: BaseException) -> ErrorDetails:
    """Map an exception to exactly one catalog entry."""

    if isinstance(error, CompanionError):
        return error.details

    text = str(error).lower()
    status = _status_code(error)

    for rule in CLASSIFICATION_RULES:
        if rule.matches(error, text, status):
            return ERROR_CATALOG[rule.code]

    return ERROR_CATALOG[ErrorCode.UNKNOWN_ERROR]


def wrap_error(error: BaseException, context: str) -> CompanionError:
    if isinstance(error, CompanionError):
        if not error.context:
            error.context = context
        return error
    return CompanionError(classify_error(error), context=context, original=error)


def _raise_wrapped(error: BaseException, context: str) -> NoReturn:
    wrapped = wrap_error(error, context)
    if wrapped is error:
        raise wrapped
    raise wrapped from error


def _short(error: BaseException, limit: int = 200) -> str:
    return f"{type(error).__name__}: {str(error)[:limit]}"


# =============================================================================
# RETRY / FALLBACK
# =============================================================================


def compute_backoff_ms(attempt: int, config: RetryConfig) -> float:
    return min(config.base_delay_ms * (config.backoff_multiplier ** attempt), config.max_delay_ms)


async def run_cancellable(awaitable: Awaitable[T], cancel_token: Optional[CancellationToken], context: str = "") -> T:
    """Await ``awaitable`` unless the token fires first."""

    if cancel_token is None:
        return await awaitable

    task = asyncio.ensure_future(awaitable)
    if cancel_token.cancelled:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise RequestCancelled(context)

    waiter = asyncio.ensure_future(cancel_token.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        waiter.cancel()

    if task in done:
        return task.result()

    task.cancel()
    await asyncio.gather(task, return_exceptions=True)
    raise RequestCancelled(context)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    context: str,
    config: Optional[RetryConfig] = None,
    *,
    cancel_token: Optional[CancellationToken] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Run ``operation`` with exponential backoff.

    Attempts are numbered 0..max_retries. A non-retryable failure is raised
    immediately; a retryable one sleeps min(base * multiplier**attempt, max)
    milliseconds before the next attempt. Failures surface as CompanionError.
    """

    cfg = config or RetryConfig()
    attempt = 0

    while True:
        try:
            return await run_cancellable(operation(), cancel_token, context)
        except RequestCancelled:
            logger.info(f"[{context}] Cancelled on attempt {attempt + 1}")
            raise
        except Exception as e:
            details = classify_error(e)
            logger.warning(
                f"[{context}] Attempt {attempt + 1}/{cfg.max_retries + 1} failed "
                f"({details.code.value}): {_short(e)}"
            )

            if not details.is_retryable:
                _raise_wrapped(e, context)

            if attempt == cfg.max_retries:
                logger.error(f"[{context}] Exhausted {cfg.max_retries + 1} attempts")
                _raise_wrapped(e, context)

            delay_ms = compute_backoff_ms(attempt, cfg)
            logger.info(f"[{context}] Retrying in {delay_ms:.0f}ms (attempt {attempt + 1}/{cfg.max_retries})")
            await run_cancellable(sleep(delay_ms / 1000.0), cancel_token, context)
            attempt += 1


async def with_fallback(
    primary: Callable[[], Awaitable[T]],
    fallback: Callable[[], Awaitable[T]],
    context: str,
) -> T:
    """Try ``primary``, then ``fallback``; if both fail the primary's error wins."""

    try:
        return await primary()
    except RequestCancelled:
        raise
    except Exception as primary_error:
        logger.warning(f"[{context}] Primary operation failed, trying fallback: {_short(primary_error)}")
        try:
            return await fallback()
        except RequestCancelled:
            raise
        except Exception as fallback_error:
            logger.error(f"[{context}] Fallback also failed: {_short(fallback_error)}")
            _raise_wrapped(primary_error, context)


async def check_model_health(
    model_id: str,
    health_fn: Callable[[], Awaitable[bool]],
    *,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> bool:
    try:
        return await with_retry(
            health_fn,
            f"Model Health Check: {model_id}",
            RetryConfig(max_retries=1, base_delay_ms=500),
            sleep=sleep,
        )
    except CompanionError as e:
        logger.warning(f"Model {model_id} health check failed: {e.code.value}")
        return False
