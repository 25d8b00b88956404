"""Command and emergency event models."""

import enum
from datetime import UTC, datetime

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(UTC)


class CommandAction(enum.StrEnum):
    lock = "lock"
    unlock = "unlock"
    locate = "locate"
    emergency_lockdown = "emergency_lockdown"
    emergency_release = "emergency_release"

    @property
    def is_family_wide(self) -> bool:
        return self in (CommandAction.emergency_lockdown, CommandAction.emergency_release)


class CommandStatus(enum.StrEnum):
    issued = "issued"
    acknowledged = "acknowledged"
    superseded = "superseded"
    expired = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not CommandStatus.issued


class Command(SQLModel, table=True):
    """One requested state transition for one device. Rows are never deleted."""

    id: int | None = Field(default=None, primary_key=True)
    device_id: str = Field(index=True)
    action: CommandAction
    issued_by: str
    issued_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    status: CommandStatus = Field(default=CommandStatus.issued, index=True)
    resolved_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    reported_state: str | None = None  # lock state the device reported on ack
    emergency_event_id: int | None = Field(default=None, foreign_key="emergencyevent.id")


class EmergencyStatus(enum.StrEnum):
    active = "active"
    resolved = "resolved"


class EmergencyEvent(SQLModel, table=True):
    """Family-wide lockdown record kept for the activity feed."""

    id: int | None = Field(default=None, primary_key=True)
    owner_member_id: str = Field(index=True)
    issued_by: str
    description: str
    status: EmergencyStatus = EmergencyStatus.active
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    resolved_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    resolved_by: str | None = None
