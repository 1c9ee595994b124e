"""Explicit success/failure values for advisor calls.

The roadmap engine branches on these instead of catching exceptions, so the
fallback path is an ordinary ``if``.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

T = TypeVar("T")

ERR_TIMEOUT = "timeout"
ERR_UNAVAILABLE = "unavailable"
ERR_NON_RETRYABLE = "non_retryable"
ERR_CIRCUIT_OPEN = "circuit_open"
ERR_INVALID_RESPONSE = "invalid_response"


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    kind: str
    message: str = ""

    @property
    def ok(self) -> bool:
        return False


Result = Union[Ok[T], Err]
