"""
Error taxonomy for the task monitor.

Transport failures and rejected mutations are surfaced to callers. Malformed
task payloads are never an error here: the reconciliation layer absorbs them by
defaulting (inferred steps, ``None`` fields, zero progress).
"""

from __future__ import annotations


class TaskMonitorError(Exception):
    """Base class for errors raised by the task monitor."""


class TransportError(TaskMonitorError):
    """The backend could not be reached or answered with an HTTP error."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_client_error(self) -> bool:
        """4xx responses are not transient and are never retried."""
        return self.status_code is not None and 400 <= self.status_code < 500


class MutationError(TaskMonitorError):
    """A cancel/retry/delete/run request was rejected; local state was rolled back."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
