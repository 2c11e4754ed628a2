"""
llm_rate_limiter.py - Request spacing and retry policy for the analyzer service

TokenBucket keeps analyzer calls under the configured requests-per-minute.
retry_with_backoff() retries a call on the error classes it is told to,
with linear or exponential backoff, and re-raises the last error when it
gives up.
"""

import logging
import random
import threading
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger("llm_rate_limiter")


class RetryErrorType(Enum):
    """Classification of analyzer errors for retry decisions"""
    TRANSIENT_NETWORK = "transient_network"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    SERVER_ERROR = "server_error"
    AUTHENTICATION = "authentication"
    PERMANENT = "permanent"
    UNKNOWN = "unknown"


class TokenBucket:
    """Refills continuously at capacity/60 tokens per second."""

    def __init__(self, tokens_per_minute: int, name: str):
        self.capacity = max(1, tokens_per_minute)
        self.tokens = float(self.capacity)
        self.last_refill = time.time()
        self.lock = threading.Lock()
        self.name = name
        self.total_requests = 0
        self.denied_requests = 0
        logger.info("TokenBucket %s initialized with %d tokens/minute", name, self.capacity)

    def _refill(self, now: float):
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * (self.capacity / 60.0))
        self.last_refill = now

    def consume(self, tokens: int = 1) -> bool:
        with self.lock:
            self._refill(time.time())
            self.total_requests += 1
            if self.tokens >= tokens:
                self.tokens -= tokens
                return True
            self.denied_requests += 1
            logger.debug("TokenBucket %s exhausted: requested=%d available=%.2f", self.name, tokens, self.tokens)
            return False

    def seconds_until_available(self, tokens: int = 1) -> float:
        with self.lock:
            self._refill(time.time())
            missing = tokens - self.tokens
            return 0.0 if missing <= 0 else missing / (self.capacity / 60.0)

    def wait_for_token(self, tokens: int = 1, timeout: Optional[float] = None) -> bool:
        """Block until a token is available; False if the timeout elapses first."""
        deadline = None if timeout is None else time.time() + timeout
        while not self.consume(tokens):
            delay = self.seconds_until_available(tokens)
            if deadline is not None and time.time() + delay > deadline:
                return False
            time.sleep(max(delay, 0.01))
        return True

    def get_metrics(self) -> Dict[str, Any]:
        with self.lock:
            return {
                "service": self.name,
                "capacity": self.capacity,
                "remaining_tokens": round(self.tokens, 2),
                "total_requests": self.total_requests,
                "denied_requests": self.denied_requests,
            }


_MESSAGE_CLASSES = [
    (RetryErrorType.RATE_LIMIT, ("rate limit", "429", "quota", "too many requests", "throttl")),
    (RetryErrorType.TIMEOUT, ("timeout", "timed out")),
    (RetryErrorType.TRANSIENT_NETWORK, ("connection", "network", "dns", "socket", "ssl")),
    (RetryErrorType.SERVER_ERROR, ("500", "502", "503", "504", "internal server error", "bad gateway",
                                   "service unavailable")),
    (RetryErrorType.AUTHENTICATION, ("401", "403", "unauthorized", "forbidden", "api key")),
    (RetryErrorType.PERMANENT, ("400", "404", "422", "bad request", "not found")),
]


def classify_error_for_retry(exception: Exception) -> RetryErrorType:
    """HTTP status first, then the exception class name, then its message."""
    if getattr(exception, "status_code", None) == 429:
        return RetryErrorType.RATE_LIMIT

    name = type(exception).__name__.lower()
    if "ratelimit" in name:
        return RetryErrorType.RATE_LIMIT
    if "timeout" in name:
        return RetryErrorType.TIMEOUT
    if "connection" in name:
        return RetryErrorType.TRANSIENT_NETWORK

    message = str(exception).lower()
    for error_type, keywords in _MESSAGE_CLASSES:
        if any(k in message for k in keywords):
            return error_type
    return RetryErrorType.UNKNOWN


def calculate_backoff_delay(attempt: int, base_delay: float = 1.0, max_delay: float = 60.0,
                            jitter: bool = True, exponential: bool = True) -> float:
    if exponential:
        delay = base_delay * (2 ** attempt)
    else:
        delay = base_delay * (attempt + 1)
    delay = min(delay, max_delay)
    if jitter:
        delay += random.uniform(-delay * 0.1, delay * 0.1)
    return max(0.0, delay)


def retry_with_backoff(
    func: Callable,
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    jitter: bool = True,
    exponential: bool = True,
    retry_on: Optional[List[RetryErrorType]] = None,
    context: Optional[str] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Any:
    """
    Call func() up to max_retries + 1 times.

    Args:
        retry_on: error types worth retrying (default: throttling only)
        context: label for log lines
        sleep: injectable for tests

    Returns:
        func()'s result; the last exception is re-raised when retries run out
        or the error is not retryable.
    """
    retry_on = retry_on or [RetryErrorType.RATE_LIMIT]
    label = context or getattr(func, "__name__", "call")

    for attempt in range(max_retries + 1):
        try:
            result = func()
        except Exception as e:
            error_type = classify_error_for_retry(e)
            if error_type not in retry_on:
                logger.warning("[%s] non-retryable %s error: %s", label, error_type.value, e)
                raise
            if attempt >= max_retries:
                logger.error("[%s] giving up after %d attempts: %s", label, attempt + 1, e)
                raise
            delay = calculate_backoff_delay(attempt, base_delay, max_delay, jitter, exponential)
            logger.warning("[%s] attempt %d/%d failed (%s), retrying in %.2fs",
                           label, attempt + 1, max_retries + 1, error_type.value, delay)
            sleep(delay)
            continue
        if attempt > 0:
            logger.info("[%s] succeeded on attempt %d", label, attempt + 1)
        return result
