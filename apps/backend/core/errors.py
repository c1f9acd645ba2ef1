"""
Error taxonomy for scraping, liveness and configuration failures.
"""
from typing import Optional


class ErrorKind:
    """String constants for scraping error kinds"""
    NETWORK = "network"
    PARSE = "parse"
    RATE_LIMIT = "rate_limit"
    AUTHENTICATION = "authentication"
    BLOCKED = "blocked"
    TIMEOUT = "timeout"


ALL_KINDS = (
    ErrorKind.NETWORK,
    ErrorKind.PARSE,
    ErrorKind.RATE_LIMIT,
    ErrorKind.AUTHENTICATION,
    ErrorKind.BLOCKED,
    ErrorKind.TIMEOUT,
)

RETRYABLE_KINDS = {ErrorKind.NETWORK, ErrorKind.RATE_LIMIT, ErrorKind.TIMEOUT}


class ScrapingError(Exception):
    """
    A classified failure raised by the HTTP layer or an extraction strategy.

    Network, rate-limit and timeout errors are retryable unless the caller
    says otherwise (a 404 is a network-level answer that retrying won't fix).
    """

    def __init__(
        self,
        kind: str,
        message: str,
        url: Optional[str] = None,
        status_code: Optional[int] = None,
        retryable: Optional[bool] = None,
        retry_after: Optional[float] = None,
    ):
        if kind not in ALL_KINDS:
            raise ValueError(f"Unknown scraping error kind: {kind}")
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.url = url
        self.status_code = status_code
        self.retryable = kind in RETRYABLE_KINDS if retryable is None else retryable
        self.retry_after = retry_after

    def to_dict(self):
        return {
            "kind": self.kind,
            "message": self.message,
            "url": self.url,
            "status_code": self.status_code,
            "retryable": self.retryable,
        }

    def __repr__(self):
        return f"ScrapingError(kind={self.kind!r}, message={self.message!r}, status={self.status_code})"


class OperationCancelled(Exception):
    """Raised when a run's cancellation token has been triggered"""


class ConfigError(ValueError):
    """Invalid configuration value"""


def is_retryable(exc: BaseException) -> bool:
    """Predicate used by the retry policy"""
    return isinstance(exc, ScrapingError) and exc.retryable
