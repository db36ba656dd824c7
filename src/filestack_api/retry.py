"""
Retry decisions for part uploads.

``RetryPolicy.decide`` is a pure function of the error class and the number
of attempts already made. The classify helpers turn HTTP statuses and httpx
exceptions into ``ErrorClass`` values.
"""

import random
from dataclasses import dataclass, field

import httpx

from filestack_api.errors import ErrorClass

DEFAULT_MAX_ATTEMPTS = 4
DEFAULT_BASE_DELAY = 0.5  # seconds
DEFAULT_MAX_DELAY = 30.0  # seconds

_HTTP_TOO_MANY_REQUESTS = 429


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    delay: float = 0.0

    @staticmethod
    def abort() -> "RetryDecision":
        return RetryDecision(retry=False)


@dataclass
class RetryPolicy:
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay: float = DEFAULT_BASE_DELAY
    max_delay: float = DEFAULT_MAX_DELAY
    rng: random.Random = field(default_factory=random.Random, repr=False)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("Retry delays must be non-negative")

    def decide(self, error_class: ErrorClass, attempt_count: int) -> RetryDecision:
        """
        Decide whether to try again.

        :param error_class: classification of the failure
        :param attempt_count: attempts already made, including the failed one
        :return: retry with a delay, or abort
        """
        if not error_class.retryable:
            return RetryDecision.abort()
        if attempt_count >= self.max_attempts:
            return RetryDecision.abort()
        return RetryDecision(retry=True, delay=self.backoff(attempt_count))

    def backoff(self, attempt_count: int) -> float:
        # Exponential backoff with jitter
        exp = min(self.max_delay, self.base_delay * (2 ** max(0, attempt_count - 1)))
        return min(self.max_delay, exp * (0.5 + self.rng.random()))


def classify_status(status_code: int, body: str = "") -> ErrorClass:
    """Classify a non-2xx response."""
    if status_code == _HTTP_TOO_MANY_REQUESTS:
        return ErrorClass.THROTTLED
    if status_code >= 500:
        # S3 answers 503 SlowDown when it wants clients to back off
        if "SlowDown" in body:
            return ErrorClass.THROTTLED
        return ErrorClass.SERVER_ERROR
    if status_code in (401, 403):
        return ErrorClass.AUTHORIZATION
    if "BadDigest" in body or "InvalidDigest" in body:
        return ErrorClass.CHECKSUM_MISMATCH
    if status_code == 408:
        return ErrorClass.TIMEOUT
    return ErrorClass.BAD_REQUEST


def classify_exception(exc: BaseException) -> ErrorClass:
    """Classify a transport-level failure raised by httpx."""
    if isinstance(exc, httpx.TimeoutException):
        return ErrorClass.TIMEOUT
    if isinstance(exc, httpx.HTTPStatusError):
        return classify_status(exc.response.status_code, exc.response.text)
    if isinstance(exc, (httpx.NetworkError, httpx.RemoteProtocolError)):
        return ErrorClass.CONNECTION_RESET
    if isinstance(exc, TimeoutError):
        return ErrorClass.TIMEOUT
    if isinstance(exc, ConnectionError):
        return ErrorClass.CONNECTION_RESET
    return ErrorClass.BAD_REQUEST
