"""Error taxonomy for the reconciliation engine.

Components raise these; only the orchestrator maps them to an exit status.
Transient failures never appear here: the executor absorbs them.
"""

from __future__ import annotations

from typing import Optional


class BaseEnvError(Exception):
    """Root of all base-env errors."""


class StructuralConflictError(BaseEnvError):
    """Dependency set is unsatisfiable under the current constraints."""

    def __init__(self, message: str, report: str = ""):
        super().__init__(message)
        self.report = report


class OperationFailedError(BaseEnvError):
    """A mutating operation exhausted its attempts without verifying."""

    def __init__(
        self,
        operation: str,
        expected_state: str,
        actual_state: str,
        reason: str = "",
    ):
        self.operation = operation
        self.expected_state = expected_state
        self.actual_state = actual_state
        self.reason = reason
        super().__init__(
            f"{operation} failed: expected {expected_state!r}, "
            f"got {actual_state or 'nothing'!r}"
            + (f" ({reason})" if reason else "")
        )


class RollbackError(BaseEnvError):
    """Restoring the environment from a snapshot was impossible or failed."""


class LockHeldError(BaseEnvError):
    """Another live invocation holds the environment lock."""

    def __init__(self, holder_pid: int, stage: Optional[str] = None):
        self.holder_pid = holder_pid
        self.stage = stage
        message = f"environment is locked by running process {holder_pid}"
        if stage:
            message += f" (stage: {stage})"
        super().__init__(message)


class LockAcquireError(BaseEnvError):
    """The lock could not be acquired within the stale-purge budget."""


class UnsupportedEnvironmentError(BaseEnvError):
    """No compatibility rule matched and no default runtime is available."""
