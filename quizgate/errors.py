# quizgate/errors.py
import re
from typing import Optional

_RATE_LIMIT_RE = re.compile(r'rate.?limit|\b429\b', re.IGNORECASE)
_UNAVAILABLE_RE = re.compile(r'\b503\b|UNAVAILABLE|overloaded', re.IGNORECASE)


class QuizGateError(Exception):
    """Base class for errors raised inside quizgate."""


class CapacityError(QuizGateError):
    """The concurrent session limit has been reached."""

    def __init__(self, limit: int):
        super().__init__(f'Concurrent session limit reached ({limit})')
        self.limit = limit


class ProviderError(QuizGateError):
    """A provider answered with a non-success HTTP status."""

    def __init__(self, message: str, status: Optional[int] = None, body: str = ''):
        super().__init__(message)
        self.status = status
        self.body = body

    @property
    def is_rate_limit(self) -> bool:
        return self.status == 429 or is_rate_limit_message(str(self))

    @property
    def is_unavailable(self) -> bool:
        return self.status == 503 or is_unavailable_message(str(self))


class MalformedResponseError(QuizGateError):
    """A provider response could not be turned into answers."""


class ImageOptimizationError(QuizGateError):
    pass


def is_rate_limit_message(message: str) -> bool:
    return bool(message) and bool(_RATE_LIMIT_RE.search(message))


def is_unavailable_message(message: str) -> bool:
    return bool(message) and bool(_UNAVAILABLE_RE.search(message))
