"""Error kinds raised by the state engine."""

from typing import Optional


class EngineError(Exception):
    """Base exception for state engine errors."""


class LockHeld(EngineError):
    """The state lock is held by another holder."""

    def __init__(self, record, stale: bool = False):
        self.record = record
        self.stale = stale
        if not record.id:
            msg = f"State '{record.key}' is locked; the backend did not report the holder"
        else:
            msg = (f"State '{record.key}' is locked by {record.who} "
                   f"(operation={record.operation}, id={record.id})")
        if stale and record.id:
            msg += f". Lock looks stale; clear it with: force-unlock {record.id}"
        super().__init__(msg)


class InvalidToken(EngineError):
    """A lock token does not match the active lock."""

    def __init__(self, key: str, token: Optional[str], held: Optional[str] = None):
        self.key = key
        self.token = token
        self.held = held
        if held is None:
            msg = f"State '{key}' is not locked (token {token})"
        else:
            msg = f"Lock token {token} does not match active lock {held} on '{key}'"
        super().__init__(msg)


class LockNotStale(EngineError):
    """force_unlock was refused because the lock is younger than the threshold."""

    def __init__(self, record, age: float, threshold: float):
        self.record = record
        self.age = age
        self.threshold = threshold
        super().__init__(
            f"Lock {record.id} on '{record.key}' is {age:.0f}s old, "
            f"below the stale threshold of {threshold:.0f}s. Use --force to override."
        )


class LockStateUnknown(EngineError):
    """force_unlock cannot check a lock the backend does not report."""

    def __init__(self, key: str, lock_id: str):
        self.key = key
        self.lock_id = lock_id
        super().__init__(
            f"The backend for '{key}' does not report its lock, so lock {lock_id} "
            f"cannot be checked for staleness. Use --force to send the unlock anyway."
        )


class CycleDetected(EngineError):
    """The dependency graph contains a cycle."""

    def __init__(self, members: list[str]):
        self.members = members
        super().__init__(f"Dependency cycle detected: {' -> '.join(members)}")


class StateCorrupt(EngineError):
    """The state document failed structural validation."""


class StateConflict(EngineError):
    """A state write was rejected (wrong lock token or serial)."""


class BackendError(EngineError):
    """A state backend could not be reached or answered unexpectedly."""


class StalePlan(EngineError):
    """The stored state changed between plan and apply."""


class ResourceApplyFailed(EngineError):
    """A provider failed to apply a change to a single resource.

    Attributes:
        key: Resource key
        partial: Attributes the provider reported before failing (if any)
    """

    def __init__(self, key: str, message: str, partial: Optional[dict] = None):
        self.key = key
        self.partial = partial
        super().__init__(f"{key}: {message}")
