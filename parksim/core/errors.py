"""
Error taxonomy and operation outcomes.

Public service operations never raise for expected failures; they return an
Outcome. Exceptions are used at the seams: collaborators raise
CollaboratorError, and services convert it into a refund plus a failed
Outcome.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator


class ErrorKind(Enum):
    """Why an operation was rejected."""

    VALIDATION = "validation"
    AUTHORIZATION = "authorization"
    RESOURCE_EXHAUSTED = "resource_exhausted"
    COLLABORATOR = "collaborator"
    INSUFFICIENT_FUNDS = "insufficient_funds"


class ParkingError(Exception):
    """Base class for parksim errors."""

    kind: ErrorKind = ErrorKind.VALIDATION


class ValidationError(ParkingError):
    kind = ErrorKind.VALIDATION


class AuthorizationError(ParkingError):
    kind = ErrorKind.AUTHORIZATION


class ResourceExhaustedError(ParkingError):
    kind = ErrorKind.RESOURCE_EXHAUSTED


class CollaboratorError(ParkingError):
    """A persistence, economy or other external call failed."""

    kind = ErrorKind.COLLABORATOR


@dataclass(frozen=True)
class Outcome:
    """
    Result of a public operation.

    Unpacks like the (success, message) pair callers usually want:

        ok, message = valet.park_vehicle(player, "pillbox", "ABC123")
    """

    success: bool
    message: str
    data: dict[str, Any] = field(default_factory=dict)
    kind: ErrorKind | None = None

    @classmethod
    def ok(cls, message: str, **data: Any) -> Outcome:
        return cls(True, message, data)

    @classmethod
    def fail(cls, message: str, kind: ErrorKind = ErrorKind.VALIDATION, **data: Any) -> Outcome:
        return cls(False, message, data, kind)

    @classmethod
    def from_error(cls, error: ParkingError, **data: Any) -> Outcome:
        return cls(False, str(error), data, error.kind)

    def __iter__(self) -> Iterator[Any]:
        yield self.success
        yield self.message

    def __bool__(self) -> bool:
        return self.success
