"""WebSocket endpoint for dashboards and device agents."""

import json
import logging
from typing import Annotated, Literal

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from guardlink.commands.dispatcher import CommandDispatcher
from guardlink.errors import (
    CommandDeviceMismatch,
    CommandNotFound,
    DeviceNotFound,
    GuardlinkError,
)
from guardlink.presence.channel import ObserverRole
from guardlink.registry.models import LockState

logger = logging.getLogger(__name__)

router = APIRouter()


class HeartbeatFrame(BaseModel):
    type: Literal["heartbeat"]
    reported_lock_state: LockState | None = None


class AckFrame(BaseModel):
    type: Literal["ack"]
    command_id: int
    reported_state: LockState | None = None


_agent_frame = TypeAdapter(Annotated[HeartbeatFrame | AckFrame, Field(discriminator="type")])


@router.websocket("/ws")
async def observer_socket(
    websocket: WebSocket,
    role: ObserverRole = ObserverRole.dashboard,
    device_id: str | None = None,
    owner_member_id: str | None = None,
) -> None:
    dispatcher: CommandDispatcher = websocket.app.state.dispatcher
    await websocket.accept()

    try:
        session_id = await dispatcher.channel.connect(
            websocket, role, device_id=device_id, owner_member_id=owner_member_id
        )
    except (DeviceNotFound, ValueError) as e:
        logger.warning("Rejected %s observer: %s", role, e)
        await websocket.close(code=1008, reason=str(e))
        return

    agent_device = device_id if role is ObserverRole.device_agent else None
    try:
        if agent_device is not None:
            # Connecting counts as a sign of life
            await dispatcher.record_heartbeat(agent_device)
        while True:
            raw = await websocket.receive_text()
            if agent_device is not None:
                await _handle_agent_frame(dispatcher, agent_device, raw)
            else:
                logger.debug("Ignoring inbound frame from dashboard %s", session_id)
    except WebSocketDisconnect:
        pass
    finally:
        await dispatcher.channel.disconnect(session_id)


async def _handle_agent_frame(dispatcher: CommandDispatcher, device_id: str, raw: str) -> None:
    """Apply a heartbeat or ack sent by a device agent over its socket."""
    try:
        frame = _agent_frame.validate_python(json.loads(raw))
    except (json.JSONDecodeError, ValidationError) as e:
        logger.warning("Malformed frame from %s: %s", device_id, e)
        return

    try:
        if isinstance(frame, HeartbeatFrame):
            await dispatcher.record_heartbeat(device_id, frame.reported_lock_state)
        else:
            await dispatcher.acknowledge(
                frame.command_id, frame.reported_state, expected_device_id=device_id
            )
    except CommandNotFound:
        logger.warning("Dropping ack from %s for unknown command", device_id)
    except CommandDeviceMismatch as e:
        logger.warning("Dropping ack from %s: %s", device_id, e)
    except GuardlinkError as e:
        logger.error("Frame from %s failed: %s", device_id, e)
