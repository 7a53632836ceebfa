# ABOUTME: Exception taxonomy for the reconciliation pipeline
# ABOUTME: One error type per failure class, each rendering a single-line reason

"""Reconciler error types.

Every error renders as one human-readable line; that line is what ends up
as the ``reason`` of a failed or skipped object in a ``SyncResult``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from gitops_reconciler.models import ObjectKey


class ReconcilerError(Exception):
    """Base class for all reconciler errors."""


class ConfigError(ReconcilerError):
    """Raised when a policy document or scope configuration is invalid."""


class SourceUnavailable(ReconcilerError):
    """The version-control endpoint could not be reached or answered badly."""

    def __init__(self, endpoint: str, reason: str, retryable: bool = True) -> None:
        self.endpoint = endpoint
        self.reason = reason
        self.retryable = retryable
        super().__init__(str(self))

    def __str__(self) -> str:
        return f"Source unavailable ({self.endpoint}): {self.reason}"


class CompileError(ReconcilerError):
    """A revision could not be compiled into a desired set."""

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(str(self))

    def __str__(self) -> str:
        return f"Compile error in {self.path}: {self.reason}"


class ObservationError(ReconcilerError):
    """A single live object could not be read."""

    def __init__(self, key: ObjectKey, reason: str) -> None:
        self.key = key
        self.reason = reason
        super().__init__(str(self))

    def __str__(self) -> str:
        return f"Could not observe {self.key}: {self.reason}"


class ApplyError(ReconcilerError):
    """A create, update or delete of a single object failed."""

    def __init__(self, key: ObjectKey, action: str, reason: str) -> None:
        self.key = key
        self.action = action
        self.reason = reason
        super().__init__(str(self))

    def __str__(self) -> str:
        return f"{self.action} {self.key} failed: {self.reason}"


class HealthCheckTimeout(ReconcilerError):
    """An applied object did not reach its declared health condition in time."""

    def __init__(self, key: ObjectKey, condition: str, waited: float) -> None:
        self.key = key
        self.condition = condition
        self.waited = waited
        super().__init__(str(self))

    def __str__(self) -> str:
        return f"{self.key} not healthy after {self.waited:.1f}s: waiting for {self.condition}"


class TargetApiError(ReconcilerError):
    """
    Structured error returned by the target-environment API.

    Mirrors the shape of the API's error body so callers can branch on the
    status code (404 on reads means "does not exist", not a failure).
    """

    def __init__(self, code: int, message: str, details: str | None = None) -> None:
        self.code = code
        self.message = message
        self.details = details
        super().__init__(str(self))

    def __str__(self) -> str:
        base = f"Target API error ({self.code}): {self.message}"
        if self.details:
            base += f" - {self.details}"
        return base

    @property
    def not_found(self) -> bool:
        return self.code == 404
