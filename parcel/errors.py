from __future__ import annotations

from typing import Sequence


class ParcelError(Exception):
    """Base class for every failure the core reports to its callers."""

    code = "error"
    public = True

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.code
        super().__init__(self.message)


class Unauthenticated(ParcelError):
    code = "unauthenticated"


class Forbidden(ParcelError):
    code = "forbidden"


class NotFound(ParcelError):
    code = "not_found"


class Conflict(ParcelError):
    code = "conflict"


class ValidationError(ParcelError):
    code = "validation"

    def __init__(self, message: str | None = None, violations: Sequence[str] = ()) -> None:
        self.violations = tuple(violations)
        if message is None and self.violations:
            message = ", ".join(self.violations)
        super().__init__(message)


class LockedOut(ParcelError):
    code = "locked_out"


class Malformed(ParcelError):
    code = "malformed"


class StorageFailure(ParcelError):
    code = "storage_failure"
    public = False


class ExternalFailure(ParcelError):
    code = "external_failure"
    public = False


__all__ = [
    "Conflict",
    "ExternalFailure",
    "Forbidden",
    "LockedOut",
    "Malformed",
    "NotFound",
    "ParcelError",
    "StorageFailure",
    "Unauthenticated",
    "ValidationError",
]
