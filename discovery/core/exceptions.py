"""
Platform-wide exception hierarchy.

Services raise these types; the blueprint layer registers one handler per type
and turns them into the standard JSON error body (see ``discovery.utils.errors``).
None of them is fatal to the process: every error is a per-call outcome.

Usage:
    from discovery.core.exceptions import NotFoundError, LockConflictError

    raise NotFoundError(resource="DiscoverySession", resource_id=42)
    raise LockConflictError(session_id=42, holder_id="alice", expires_at=lease_end)
"""

from datetime import datetime


class NotFoundError(Exception):
    """Raised when a requested resource does not exist within the given scope.

    Args:
        resource: Human-readable model/entity name (e.g. "ChecklistItem").
        resource_id: The PK that was looked up. Included in logs and message.
        session_id: Optional scope that was enforced.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        session_id: int | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.session_id = session_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if session_id is not None:
            msg += f" (session={session_id})"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Distinct from HTTP 400 (malformed input, caught in blueprint): the data was
    well-formed but violated a business rule (e.g. obtaining an item without a
    concrete value). Maps to HTTP 422.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would violate a uniqueness rule. Maps to HTTP 409."""

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(f"{resource} with {field}={value!r} already exists")


# ── Session access lock ─────────────────────────────────────────────────────


class LockConflictError(Exception):
    """Another collaborator holds a valid lease on the session.

    Carries the current holder so a UI can show "session in use by X" instead of
    a generic failure. Never retried automatically. Maps to HTTP 423.
    """

    def __init__(
        self,
        session_id: int,
        holder_id: str,
        expires_at: datetime | None = None,
    ) -> None:
        self.session_id = session_id
        self.holder_id = holder_id
        self.expires_at = expires_at
        super().__init__(f"Session {session_id} is locked by {holder_id!r}")


class NotHolderError(Exception):
    """The caller is no longer (or never was) the lease holder.

    Raised by heartbeat for a reclaimed lease and by token checks on guarded
    operations. The caller must stop treating itself as the holder.
    """

    def __init__(self, session_id: int, holder_id: str | None, reason: str = "",
                 *, token_missing: bool = False) -> None:
        self.session_id = session_id
        self.holder_id = holder_id
        self.reason = reason
        self.token_missing = token_missing
        msg = f"{holder_id!r} does not hold the lock on session {session_id}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


# ── Evidence interpreter boundary ───────────────────────────────────────────


class InterpreterError(Exception):
    """Base class for evidence-interpreter failures.

    The state machine logs these and treats them as "propose nothing"; the
    evidence itself stays recorded so the next reanalysis can reconsider it.
    """


class InterpreterUnavailableError(InterpreterError):
    """The interpreter could not be reached (provider error, timeout, retries exhausted)."""


class MalformedInterpreterOutputError(InterpreterError):
    """The interpreter answered, but its output could not be parsed into a proposal."""

    def __init__(self, message: str, raw_excerpt: str = "") -> None:
        self.raw_excerpt = raw_excerpt
        super().__init__(message)


class InvalidTransitionTarget(Exception):
    """A proposed transition references an item not in the expected prior state.

    Raised and caught inside proposal validation only: the entry is dropped and
    the rest of the batch proceeds.
    """

    def __init__(self, item_id, action: str, reason: str) -> None:
        self.item_id = item_id
        self.action = action
        self.reason = reason
        super().__init__(f"Cannot {action} item {item_id}: {reason}")
