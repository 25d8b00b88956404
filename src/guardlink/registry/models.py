"""Device state models and lock-state enums."""

import enum
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from guardlink.commands.models import CommandAction, utcnow


class LockState(enum.StrEnum):
    unlocked = "unlocked"
    locked = "locked"
    pending_lock = "pending_lock"
    pending_unlock = "pending_unlock"

    @property
    def is_pending(self) -> bool:
        return self in (LockState.pending_lock, LockState.pending_unlock)


class Connectivity(enum.StrEnum):
    online = "online"
    offline = "offline"


class Transition(enum.StrEnum):
    """Outcome of validating an action against a device's current state."""

    apply = "apply"
    noop = "noop"


# Concrete lock state each action drives the device towards. Locate has none.
ACTION_TARGETS: dict[CommandAction, LockState | None] = {
    CommandAction.lock: LockState.locked,
    CommandAction.unlock: LockState.unlocked,
    CommandAction.locate: None,
    CommandAction.emergency_lockdown: LockState.locked,
    CommandAction.emergency_release: LockState.unlocked,
}

PENDING_STATES: dict[LockState, LockState] = {
    LockState.locked: LockState.pending_lock,
    LockState.unlocked: LockState.pending_unlock,
}


@dataclass(frozen=True)
class Device:
    """Point-in-time view of one device. Mutated only inside the registry."""

    device_id: str
    owner_member_id: str
    name: str | None
    lock_state: LockState
    connectivity: Connectivity
    last_seen_at: datetime | None
    pending_command_id: int | None
    emergency_active: bool


class DeviceRecord(SQLModel, table=True):
    """Durable device registration. Lock state is rebuilt from the command log."""

    device_id: str = Field(primary_key=True)
    owner_member_id: str = Field(index=True)
    name: str | None = None
    registered_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
