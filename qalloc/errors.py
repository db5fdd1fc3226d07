"""Error taxonomy shared by the task engines and their collaborators."""

from __future__ import annotations

from typing import Any


class QallocError(Exception):
    """Base exception for QAlloc errors."""


class ValidationError(QallocError, ValueError):
    """Bad input, rejected before any side effect."""


class DependencyNotFoundError(QallocError):
    """A referenced description, profile, pool, endpoint or subnet is missing."""

    def __init__(self, kind: str, ref: str | None, message: str | None = None):
        self.kind = kind
        self.ref = ref
        super().__init__(message or f"{kind} '{ref}' not found")


class RemoteCallError(QallocError):
    """A store or collaborator call failed. The cause is chained."""


class ConflictError(QallocError):
    """A record with the same key already exists."""

    def __init__(self, kind: str, key: str):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} '{key}' already exists")


def error_info(exc: BaseException) -> dict[str, Any]:
    """Describe ``exc`` and its root cause for persistence and callbacks."""
    info: dict[str, Any] = {"message": str(exc), "type": type(exc).__name__}
    cause = exc.__cause__
    if cause is not None:
        info["cause"] = {"message": str(cause), "type": type(cause).__name__}
    return info
