"""Events delivered to observers.

Every event is a pydantic model tagged by ``type``. ``device_id`` and
``owner_member_id`` are carried for routing; the channel uses them to decide
which observers receive what.
"""

import enum
from datetime import UTC, datetime
from typing import Annotated, Literal

from pydantic import BaseModel, Field, TypeAdapter

from guardlink.commands.models import CommandAction
from guardlink.registry.models import Device, LockState


class EventType(enum.StrEnum):
    welcome = "welcome"
    snapshot = "snapshot"
    command_issued = "command_issued"
    command_acknowledged = "command_acknowledged"
    command_expired = "command_expired"
    emergency_lockdown_activated = "emergency_lockdown_activated"
    emergency_released = "emergency_released"
    device_status = "device_status"


class BaseEvent(BaseModel):
    type: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    device_id: str | None = None
    owner_member_id: str | None = None


class Welcome(BaseEvent):
    type: Literal["welcome"] = "welcome"
    session_id: str
    message: str = "Connected to guardlink"


class Snapshot(BaseEvent):
    type: Literal["snapshot"] = "snapshot"
    devices: list[Device]


class CommandIssued(BaseEvent):
    type: Literal["command_issued"] = "command_issued"
    device_id: str
    command_id: int
    action: CommandAction
    replay: bool = False  # re-sent to an agent that reconnected


class CommandAcknowledged(BaseEvent):
    type: Literal["command_acknowledged"] = "command_acknowledged"
    device_id: str
    command_id: int
    result_state: LockState


class CommandExpired(BaseEvent):
    type: Literal["command_expired"] = "command_expired"
    device_id: str
    command_id: int


class EmergencyLockdownActivated(BaseEvent):
    type: Literal["emergency_lockdown_activated"] = "emergency_lockdown_activated"
    event_id: int
    device_ids: list[str] = []


class EmergencyReleased(BaseEvent):
    type: Literal["emergency_released"] = "emergency_released"
    event_id: int
    device_ids: list[str] = []


class DeviceStatus(BaseEvent):
    """Heartbeat reconciliation or offline transition."""

    type: Literal["device_status"] = "device_status"
    device_id: str
    device: Device


Event = Annotated[
    Welcome
    | Snapshot
    | CommandIssued
    | CommandAcknowledged
    | CommandExpired
    | EmergencyLockdownActivated
    | EmergencyReleased
    | DeviceStatus,
    Field(discriminator="type"),
]

event_adapter: TypeAdapter[Event] = TypeAdapter(Event)


def device_status(device: Device) -> DeviceStatus:
    return DeviceStatus(
        device_id=device.device_id,
        owner_member_id=device.owner_member_id,
        device=device,
    )
