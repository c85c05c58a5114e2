"""Exception hierarchy for boxpool.

All exceptions inherit from BoxPoolError.

Hierarchy:
    BoxPoolError (base)
    ├── TransientError (retryable marker base)
    │   ├── RetryTimeoutError        ← bounded retry exhausted
    │   ├── NotYetVisibleError       ← index has not caught up with a write
    │   ├── TransportError           ← remote execution failed with no output
    │   ├── GuestNotReadyError       ← readiness probe not passing yet
    │   ├── NoFreeResourcesError     ← pool has no Free instance/volume right now
    │   └── MigrationError           ← migration failed/cancelled
    │       └── MigrationTimeoutError
    ├── PermanentError (non-retryable marker base)
    │   ├── InvalidStateTransitionError
    │   └── SnapshotSourceMissingError
    ├── QmpError (guest control protocol)
    │   ├── NoResponsesError         ← zero frames parsed
    │   ├── NoSuccessError           ← no error frame, but no return frame either
    │   └── ProtocolError            ← guest reported {class, desc}
    ├── GuestStartError              ← guest process/readiness failure
    ├── AllocationError              ← a named allocation step failed
    └── ReleaseError                 ← one or both status resets failed
"""

from __future__ import annotations

from typing import Any


class BoxPoolError(Exception):
    """Base exception for all boxpool errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging/debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


# =============================================================================
# Transient vs Permanent Error Base Classes
# =============================================================================


class TransientError(BoxPoolError):
    """Base for transient errors that may succeed on retry.

    Inventory propagation lag, SSH connection timeouts and empty pools all
    clear up on their own; the pool control loop simply tries again next tick.
    """


class PermanentError(BoxPoolError):
    """Base for permanent errors that won't succeed on retry."""


# =============================================================================
# Retry / Transport
# =============================================================================


class RetryTimeoutError(TransientError):
    """Bounded retry ran out of time.

    Attributes:
        operation: Name of the operation being retried
        last_error: Last error raised by the operation (None if it never ran)
    """

    def __init__(self, operation: str, timeout: float, last_error: BaseException | None = None):
        msg = f"timeout waiting for {operation} after {timeout}s"
        if last_error is not None:
            msg = f"{msg}: {last_error}"
        super().__init__(msg, {"operation": operation, "timeout": timeout})
        self.operation = operation
        self.last_error = last_error


class NotYetVisibleError(TransientError):
    """Inventory index does not reflect a write yet."""


class TransportError(TransientError):
    """Remote command failed without producing any output.

    Distinct from a protocol error: the guest never got to answer.

    Attributes:
        exit_code: Exit status of the remote-execution process
        stderr: Captured standard error, if any
    """

    def __init__(self, message: str, exit_code: int | None = None, stderr: str = "", context: dict[str, Any] | None = None):
        ctx = context or {}
        ctx.update({"exit_code": exit_code, "stderr": stderr})
        super().__init__(message, ctx)
        self.exit_code = exit_code
        self.stderr = stderr


# =============================================================================
# Guest control protocol
# =============================================================================


class QmpError(BoxPoolError):
    """Base for guest control-protocol failures."""


class NoResponsesError(QmpError):
    """Transport output contained no parseable JSON frame."""


class NoSuccessError(QmpError):
    """No error frame was seen, but no non-handshake return frame either."""


class ProtocolError(QmpError):
    """Guest reported an error frame.

    Attributes:
        error_class: QMP error class (e.g. "GenericError", "CommandNotFound")
        desc: Human-readable description reported by the guest
    """

    def __init__(self, error_class: str, desc: str, context: dict[str, Any] | None = None):
        super().__init__(f"QMP error: {error_class} - {desc}", context)
        self.error_class = error_class
        self.desc = desc


# =============================================================================
# Migration
# =============================================================================


class MigrationError(TransientError):
    """Migration (state-to-file) failed or was cancelled.

    Attributes:
        status: Last observed migration status
    """

    def __init__(self, message: str, status: str | None = None, context: dict[str, Any] | None = None):
        ctx = context or {}
        ctx["status"] = status
        super().__init__(message, ctx)
        self.status = status


class MigrationTimeoutError(MigrationError):
    """Migration did not reach a terminal state before the deadline."""


# =============================================================================
# Guest lifecycle
# =============================================================================


class GuestNotReadyError(TransientError):
    """A guest readiness probe (device node, SSH) has not passed yet."""


class GuestStartError(BoxPoolError):
    """Guest failed to start or never became reachable.

    Attributes:
        host: Instance address the guest was started on
        process_log: Captured guest process log (empty if unavailable)
    """

    def __init__(self, message: str, host: str, process_log: str = "", context: dict[str, Any] | None = None):
        ctx = context or {}
        ctx["host"] = host
        if process_log:
            message = f"{message}\n--- guest process log ---\n{process_log}"
        super().__init__(message, ctx)
        self.host = host
        self.process_log = process_log


class InvalidStateTransitionError(PermanentError):
    """Requested guest state change is not allowed from the current state."""


class SnapshotSourceMissingError(PermanentError):
    """Volume scale-up was requested without a golden snapshot reference."""


# =============================================================================
# Allocation
# =============================================================================


class NoFreeResourcesError(TransientError):
    """No Free instance or volume is currently visible in the inventory."""


class AllocationError(BoxPoolError):
    """A step of the allocation sequence failed; earlier steps were rolled back.

    Attributes:
        step: Name of the failing step (e.g. "attach_volume")
        cause: Underlying exception
    """

    def __init__(self, step: str, cause: BaseException, context: dict[str, Any] | None = None):
        ctx = context or {}
        ctx["step"] = step
        super().__init__(f"allocation failed at {step}: {cause}", ctx)
        self.step = step
        self.cause = cause


class ReleaseError(BoxPoolError):
    """One or more status resets failed during release.

    Attributes:
        errors: Every error collected while releasing
    """

    def __init__(self, errors: list[BaseException], context: dict[str, Any] | None = None):
        joined = "; ".join(str(e) for e in errors)
        super().__init__(f"release failed: {joined}", context)
        self.errors = errors
