"""REST API endpoints."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from guardlink.commands.dispatcher import CommandDispatcher, EmergencyResult, IssueResult
from guardlink.commands.models import Command, CommandAction, EmergencyEvent
from guardlink.config import settings
from guardlink.errors import (
    CommandDeclined,
    CommandDeviceMismatch,
    CommandNotFound,
    DeviceNotFound,
    GuardlinkError,
    InterpreterError,
    InvalidTransition,
    StorageUnavailable,
)
from guardlink.registry.models import Device, LockState

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

T = TypeVar("T")


def get_dispatcher(request: Request) -> CommandDispatcher:
    return request.app.state.dispatcher


# Request models
class RegisterDeviceRequest(BaseModel):
    device_id: str
    owner_member_id: str
    name: str | None = None


class IssueCommandRequest(BaseModel):
    device_id: str
    action: CommandAction
    issued_by: str


class InterpretCommandRequest(BaseModel):
    text: str
    issued_by: str
    owner_member_id: str | None = None


class AckRequest(BaseModel):
    command_id: int
    reported_state: LockState | None = None
    device_id: str | None = None  # when set, the command must belong to this device


class HeartbeatRequest(BaseModel):
    device_id: str
    reported_lock_state: LockState | None = None


class EmergencyRequest(BaseModel):
    owner_member_id: str
    issued_by: str


def _http_error(e: GuardlinkError) -> HTTPException:
    if isinstance(e, DeviceNotFound | CommandNotFound):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, CommandDeviceMismatch):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, InvalidTransition):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, CommandDeclined):
        return HTTPException(status_code=422, detail=str(e))
    if isinstance(e, InterpreterError):
        return HTTPException(status_code=502, detail=str(e))
    if isinstance(e, StorageUnavailable):
        return HTTPException(status_code=503, detail="Command store unavailable")
    return HTTPException(status_code=500, detail=str(e))


async def _with_storage_retry(call: Callable[[], Awaitable[T]]) -> T:
    """Retry a dispatcher call a bounded number of times while storage is down."""
    attempts = max(1, settings.storage_retry_attempts)
    attempt = 1
    while True:
        try:
            return await call()
        except StorageUnavailable:
            if attempt >= attempts:
                raise
            logger.warning("Storage unavailable (attempt %d/%d), retrying", attempt, attempts)
            await asyncio.sleep(0.05 * attempt)
            attempt += 1


def _issue_body(result: IssueResult) -> dict[str, Any]:
    return {
        "device_id": result.device_id,
        "action": result.action,
        "command_id": result.command_id,
        "noop": result.noop,
    }


def _emergency_body(result: EmergencyResult) -> dict[str, Any]:
    return {
        "event_id": result.event_id,
        "owner_member_id": result.owner_member_id,
        "action": result.action,
        "commands": result.commands,
        "errors": {device_id: str(e) for device_id, e in result.errors.items()},
    }


# --- Devices ---


@router.post("/devices", status_code=201)
async def register_device(
    request: RegisterDeviceRequest,
    dispatcher: CommandDispatcher = Depends(get_dispatcher),
) -> Device:
    try:
        return dispatcher.registry.register(
            request.device_id, request.owner_member_id, name=request.name
        )
    except StorageUnavailable as e:
        raise _http_error(e)


@router.get("/devices")
def list_devices(
    owner_member_id: str | None = None,
    dispatcher: CommandDispatcher = Depends(get_dispatcher),
) -> list[Device]:
    return dispatcher.registry.snapshot(owner_member_id)


@router.get("/devices/{device_id}")
def device_detail(
    device_id: str,
    dispatcher: CommandDispatcher = Depends(get_dispatcher),
) -> Device:
    try:
        return dispatcher.registry.get(device_id)
    except DeviceNotFound as e:
        raise _http_error(e)


@router.get("/devices/{device_id}/commands")
def command_history(
    device_id: str,
    limit: int = 50,
    dispatcher: CommandDispatcher = Depends(get_dispatcher),
) -> list[Command]:
    try:
        dispatcher.registry.get(device_id)
        return dispatcher.log.history(device_id, limit=limit)
    except GuardlinkError as e:
        raise _http_error(e)


# --- Commands ---


@router.post("/commands")
async def issue_command(
    request: IssueCommandRequest,
    dispatcher: CommandDispatcher = Depends(get_dispatcher),
) -> dict[str, Any]:
    try:
        result = await _with_storage_retry(
            lambda: dispatcher.issue(request.device_id, request.action, request.issued_by)
        )
    except GuardlinkError as e:
        raise _http_error(e)
    return _issue_body(result)


@router.post("/commands/interpret")
async def interpret_command(
    request: InterpretCommandRequest,
    dispatcher: CommandDispatcher = Depends(get_dispatcher),
) -> dict[str, Any]:
    try:
        result = await dispatcher.issue_from_text(
            request.text, request.issued_by, owner_member_id=request.owner_member_id
        )
    except GuardlinkError as e:
        raise _http_error(e)

    interpretation = result.interpretation
    body: dict[str, Any] = {
        "interpretation": {
            "action": interpretation.action,
            "target": interpretation.target,
            "confidence": interpretation.confidence,
            "explanation": interpretation.explanation,
        }
    }
    if result.command is not None:
        body["command"] = _issue_body(result.command)
    if result.emergency is not None:
        body["emergency"] = _emergency_body(result.emergency)
    return body


@router.post("/ack")
async def acknowledge_command(
    request: AckRequest,
    dispatcher: CommandDispatcher = Depends(get_dispatcher),
) -> dict[str, int | str]:
    # Devices must not retry forever, so unknown ids are not an error here
    try:
        acknowledged = await _with_storage_retry(
            lambda: dispatcher.acknowledge(
                request.command_id,
                request.reported_state,
                expected_device_id=request.device_id,
            )
        )
    except CommandNotFound:
        logger.warning("Dropping ack for unknown command %d", request.command_id)
        return {"command_id": request.command_id, "status": "unknown"}
    except GuardlinkError as e:
        raise _http_error(e)
    status = "acknowledged" if acknowledged else "duplicate"
    return {"command_id": request.command_id, "status": status}


@router.post("/heartbeat")
async def heartbeat(
    request: HeartbeatRequest,
    dispatcher: CommandDispatcher = Depends(get_dispatcher),
) -> Device:
    try:
        return await dispatcher.record_heartbeat(request.device_id, request.reported_lock_state)
    except DeviceNotFound as e:
        raise _http_error(e)


# --- Emergency ---


@router.post("/emergency/lockdown")
async def emergency_lockdown(
    request: EmergencyRequest,
    dispatcher: CommandDispatcher = Depends(get_dispatcher),
) -> dict[str, Any]:
    try:
        result = await _with_storage_retry(
            lambda: dispatcher.emergency_lockdown(request.owner_member_id, request.issued_by)
        )
    except GuardlinkError as e:
        raise _http_error(e)
    return _emergency_body(result)


@router.post("/emergency/release")
async def emergency_release(
    request: EmergencyRequest,
    dispatcher: CommandDispatcher = Depends(get_dispatcher),
) -> dict[str, Any]:
    try:
        result = await _with_storage_retry(
            lambda: dispatcher.emergency_release(request.owner_member_id, request.issued_by)
        )
    except GuardlinkError as e:
        raise _http_error(e)
    return _emergency_body(result)


@router.get("/emergency-events")
def list_emergency_events(
    owner_member_id: str | None = None,
    limit: int = 50,
    dispatcher: CommandDispatcher = Depends(get_dispatcher),
) -> list[EmergencyEvent]:
    try:
        return dispatcher.log.list_emergency_events(owner_member_id, limit=limit)
    except StorageUnavailable as e:
        raise _http_error(e)


# --- Observers ---


@router.get("/observers")
def list_observers(
    dispatcher: CommandDispatcher = Depends(get_dispatcher),
) -> list[dict[str, str | None]]:
    return [
        {
            "session_id": o.session_id,
            "role": o.role,
            "device_id": o.device_id,
            "owner_member_id": o.owner_member_id,
        }
        for o in dispatcher.channel.observers()
    ]
