"""
Error taxonomy for the learning core.

Oracle and budget failures are normally returned as structured outcomes
rather than raised; the exception classes below are what the lower layers
raise internally, and ``classify_error`` maps them onto an ``ErrorKind`` so
outcomes can carry a uniform reason.
"""

import asyncio
from enum import Enum
from typing import Optional

import aiohttp


class ErrorKind(str, Enum):
    BUDGET = "budget"
    TRANSPORT = "transport"
    TRANSPORT_FATAL = "transport_fatal"
    PARSE = "parse"
    DATA_QUALITY = "data_quality"
    EXHAUSTION = "exhaustion"
    UNAVAILABLE = "unavailable"
    INVALID_REQUEST = "invalid_request"
    INTERNAL = "internal"


class TeacherError(Exception):
    """Base class for learning core errors"""
    pass


class OracleUnavailableError(TeacherError):
    """No credentials configured for the oracle"""
    pass


class OracleError(TeacherError):
    """Oracle request failed"""

    def __init__(self, message: str, status: Optional[int] = None, retryable: bool = False):
        super().__init__(message)
        self.status = status
        self.retryable = retryable


class OracleRateLimitError(OracleError):
    def __init__(self, message: str, status: int = 429):
        super().__init__(message, status=status, retryable=True)


class OracleServerError(OracleError):
    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message, status=status, retryable=True)


class OracleRequestError(OracleError):
    """Auth failure, malformed request - never retried"""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message, status=status, retryable=False)


class RetryExhaustedError(TeacherError):
    """All retry attempts have been exhausted"""

    def __init__(self, message: str, last_error: Optional[Exception] = None):
        super().__init__(message)
        self.last_error = last_error


class InvalidCommandError(TeacherError, ValueError):
    """Browser command outside the allow-list or missing a locator"""
    pass


class InvalidStatusError(TeacherError, ValueError):
    pass


class InvalidTransitionError(TeacherError, ValueError):
    pass


def is_retryable_status(status: Optional[int]) -> bool:
    """Rate limited (429) and server-side (5xx) failures are retried."""
    if status is None:
        return False
    return status == 429 or status >= 500


def oracle_error_for_status(status: int, message: str) -> OracleError:
    if status == 429:
        return OracleRateLimitError(message, status=status)
    if status >= 500:
        return OracleServerError(message, status=status)
    return OracleRequestError(message, status=status)


def classify_error(error: BaseException) -> ErrorKind:
    """Map an exception onto the error taxonomy."""
    if isinstance(error, OracleUnavailableError):
        return ErrorKind.UNAVAILABLE
    if isinstance(error, RetryExhaustedError):
        return ErrorKind.TRANSPORT
    if isinstance(error, OracleError):
        return ErrorKind.TRANSPORT if error.retryable else ErrorKind.TRANSPORT_FATAL
    if isinstance(error, (aiohttp.ClientConnectionError, asyncio.TimeoutError, ConnectionError)):
        return ErrorKind.TRANSPORT
    if isinstance(error, (InvalidCommandError, InvalidStatusError, InvalidTransitionError)):
        return ErrorKind.INVALID_REQUEST
    return ErrorKind.INTERNAL
