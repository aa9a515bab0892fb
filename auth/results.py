"""
auth/results.py -- Result values for expected token outcomes.

"Not found", "expired" and "revoked" are normal outcomes of a token lookup,
not exceptional ones. Stores and the issuer return a Result so the
orchestrator can branch on the outcome explicitly; only the orchestrator turns
a failed Result into an AuthError for its caller.

Usage:
    result = store.verify(token)
    if not result.ok:
        ...  # result.status is NOT_FOUND / EXPIRED / REVOKED
    record = result.value
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

T = TypeVar("T")


class TokenStatus(str, Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    REVOKED = "revoked"
    INVALID_SIGNATURE = "invalid_signature"
    MALFORMED = "malformed"


@dataclass(frozen=True)
class Result(Generic[T]):
    status: TokenStatus
    value: T | None = None

    @property
    def ok(self) -> bool:
        return self.status is TokenStatus.OK

    @classmethod
    def success(cls, value: T) -> Result[T]:
        return cls(TokenStatus.OK, value)

    @classmethod
    def failure(cls, status: TokenStatus) -> Result[T]:
        return cls(status)
