"""Authoritative in-memory view of device state.

The registry is a cache: devices are the ground truth for lock state, and
after a restart the view is rebuilt from registrations plus the command log.
Every read returns a frozen ``Device``; state only changes through the
methods below, which the dispatcher and the heartbeat/offline sweep call.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from guardlink.commands.models import Command, CommandAction, CommandStatus
from guardlink.errors import DeviceNotFound, InvalidTransition, StorageUnavailable
from guardlink.registry.models import (
    ACTION_TARGETS,
    PENDING_STATES,
    Connectivity,
    Device,
    DeviceRecord,
    LockState,
    Transition,
)
from guardlink.registry.store import upsert_device_record

if TYPE_CHECKING:
    from guardlink.commands.log import CommandLog

logger = logging.getLogger(__name__)

# How far back rebuild() looks for a device's last settled command.
_REBUILD_DEPTH = 200


@dataclass
class _DeviceState:
    device_id: str
    owner_member_id: str
    name: str | None = None
    settled_state: LockState = LockState.unlocked
    connectivity: Connectivity = Connectivity.offline
    last_seen_at: datetime | None = None
    pending_command_id: int | None = None
    pending_action: CommandAction | None = None
    emergency_active: bool = False

    @property
    def lock_state(self) -> LockState:
        if self.pending_action is None:
            return self.settled_state
        target = ACTION_TARGETS[self.pending_action]
        if target is None:
            # Pending locate: pending_command_id is set but lock state stays
            # settled. The only case where the two disagree.
            return self.settled_state
        return PENDING_STATES[target]

    def view(self) -> Device:
        return Device(
            device_id=self.device_id,
            owner_member_id=self.owner_member_id,
            name=self.name,
            lock_state=self.lock_state,
            connectivity=self.connectivity,
            last_seen_at=self.last_seen_at,
            pending_command_id=self.pending_command_id,
            emergency_active=self.emergency_active,
        )


@dataclass(frozen=True)
class HeartbeatResult:
    device: Device
    changed: bool


class DeviceRegistry:
    def __init__(self, offline_threshold: int = 90, engine: Engine | None = None) -> None:
        self.offline_threshold = offline_threshold
        self._engine = engine
        self._devices: dict[str, _DeviceState] = {}
        self._pending_index: dict[int, str] = {}

    def register(self, device_id: str, owner_member_id: str, name: str | None = None) -> Device:
        """Idempotent upsert. New devices start unlocked and offline."""
        if self._engine is not None:
            try:
                with Session(self._engine) as session:
                    upsert_device_record(session, device_id, owner_member_id, name)
            except SQLAlchemyError as e:
                raise StorageUnavailable(str(e)) from e

        state = self._devices.get(device_id)
        if state is None:
            state = _DeviceState(device_id=device_id, owner_member_id=owner_member_id, name=name)
            self._devices[device_id] = state
        elif state.name is None and name:
            state.name = name
        return state.view()

    def get(self, device_id: str) -> Device:
        return self._require(device_id).view()

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._devices

    def find(self, target: str, owner_member_id: str | None = None) -> Device | None:
        """Match a device by id or display name (case-insensitive).

        Exact matches win; otherwise the first device whose name starts with
        ``target`` ("emma" finds "Emma's phone").
        """
        wanted = target.strip().casefold()
        if not wanted:
            return None
        candidates = [
            s
            for s in sorted(self._devices.values(), key=lambda s: s.device_id)
            if owner_member_id is None or s.owner_member_id == owner_member_id
        ]
        for state in candidates:
            if state.device_id.casefold() == wanted:
                return state.view()
            if state.name and state.name.casefold() == wanted:
                return state.view()
        for state in candidates:
            if state.name and state.name.casefold().startswith(wanted):
                return state.view()
        return None

    def heartbeat(
        self,
        device_id: str,
        reported_lock_state: LockState | None = None,
        now: datetime | None = None,
    ) -> HeartbeatResult:
        """Record a liveness report. The device wins lock-state conflicts
        unless a command is still pending."""
        state = self._require(device_id)
        changed = state.connectivity is not Connectivity.online
        state.last_seen_at = now or datetime.now(UTC)
        state.connectivity = Connectivity.online

        if (
            reported_lock_state is not None
            and not reported_lock_state.is_pending
            and state.pending_command_id is None
            and reported_lock_state is not state.settled_state
        ):
            logger.info(
                "Device %s reports %s, registry had %s; adopting device state",
                device_id,
                reported_lock_state,
                state.settled_state,
            )
            state.settled_state = reported_lock_state
            changed = True

        return HeartbeatResult(device=state.view(), changed=changed)

    def plan(self, device_id: str, action: CommandAction) -> Transition:
        """Validate ``action`` against current state without changing anything."""
        return self._plan(self._require(device_id), action)

    def apply(self, command: Command) -> Transition:
        """Make ``command`` the device's pending command."""
        if command.id is None:
            raise ValueError("Command must be appended before it is applied")
        action = CommandAction(command.action)
        state = self._require(command.device_id)
        transition = self._plan(state, action)
        if transition is Transition.noop:
            return transition

        if state.pending_command_id is not None:
            self._pending_index.pop(state.pending_command_id, None)
        state.pending_command_id = command.id
        state.pending_action = action
        self._pending_index[command.id] = state.device_id

        if action is CommandAction.emergency_lockdown:
            state.emergency_active = True
        elif action is CommandAction.emergency_release:
            state.emergency_active = False
        return transition

    def resolve(self, command_id: int, outcome: LockState | None) -> Device | None:
        """Clear the pending slot if ``command_id`` still holds it.

        A concrete ``outcome`` becomes the device's lock state; ``None``
        (no answer from the device) keeps the state it had before the command.
        Returns None when the command was no longer pending.
        """
        device_id = self._pending_index.pop(command_id, None)
        if device_id is None:
            return None
        state = self._devices[device_id]
        state.pending_command_id = None
        state.pending_action = None
        if outcome is not None and not outcome.is_pending:
            state.settled_state = outcome
        return state.view()

    def pending_command(self, device_id: str) -> tuple[int, CommandAction] | None:
        state = self._require(device_id)
        if state.pending_command_id is None or state.pending_action is None:
            return None
        return state.pending_command_id, state.pending_action

    def snapshot(self, owner_member_id: str | None = None) -> list[Device]:
        states = sorted(self._devices.values(), key=lambda s: s.device_id)
        return [
            s.view()
            for s in states
            if owner_member_id is None or s.owner_member_id == owner_member_id
        ]

    def sweep_offline(self, now: datetime | None = None) -> list[Device]:
        """Mark devices whose last heartbeat is too old as offline."""
        cutoff = (now or datetime.now(UTC)) - timedelta(seconds=self.offline_threshold)
        changed: list[Device] = []
        for state in self._devices.values():
            if state.connectivity is not Connectivity.online:
                continue
            if state.last_seen_at is None or state.last_seen_at < cutoff:
                state.connectivity = Connectivity.offline
                logger.info(
                    "Device %s went offline (last seen %s)", state.device_id, state.last_seen_at
                )
                changed.append(state.view())
        return changed

    def rebuild(self, records: Iterable[DeviceRecord], log: "CommandLog") -> None:
        """Repopulate from registrations and command history after a restart.

        Lock state comes from the newest acknowledged lock command, the
        pending slot from the newest issued command, and the emergency flag
        from the newest emergency command. Heartbeats correct anything else.
        """
        self._devices.clear()
        self._pending_index.clear()

        for record in records:
            state = _DeviceState(
                device_id=record.device_id,
                owner_member_id=record.owner_member_id,
                name=record.name,
            )
            settled: LockState | None = None
            emergency_seen = False

            for command in log.history(record.device_id, limit=_REBUILD_DEPTH):
                action = CommandAction(command.action)
                if command.status == CommandStatus.issued and state.pending_command_id is None:
                    state.pending_command_id = command.id
                    state.pending_action = action
                if action.is_family_wide and not emergency_seen:
                    emergency_seen = True
                    state.emergency_active = action is CommandAction.emergency_lockdown
                if command.status == CommandStatus.acknowledged and settled is None:
                    settled = _settled_from(command, action)

            state.settled_state = settled or LockState.unlocked
            if state.pending_command_id is not None:
                self._pending_index[state.pending_command_id] = state.device_id
            self._devices[state.device_id] = state

        logger.info(
            "Registry rebuilt: %d device(s), %d pending command(s)",
            len(self._devices),
            len(self._pending_index),
        )

    def _require(self, device_id: str) -> _DeviceState:
        state = self._devices.get(device_id)
        if state is None:
            raise DeviceNotFound(device_id)
        return state

    @staticmethod
    def _plan(state: _DeviceState, action: CommandAction) -> Transition:
        pending = state.pending_action

        if action is CommandAction.emergency_lockdown:
            settled_locked = state.settled_state is LockState.locked
            if state.emergency_active and pending is None and settled_locked:
                return Transition.noop
            return Transition.apply

        if action is CommandAction.emergency_release:
            if not state.emergency_active:
                return Transition.noop
            return Transition.apply

        if action is CommandAction.locate:
            if pending is not None and pending is not CommandAction.locate:
                raise InvalidTransition(state.device_id, action, f"{pending} is still pending")
            return Transition.apply

        # lock / unlock
        if state.emergency_active:
            raise InvalidTransition(
                state.device_id, action, "emergency lockdown in force; release it first"
            )
        if pending is None and state.settled_state is ACTION_TARGETS[action]:
            return Transition.noop
        return Transition.apply


def _settled_from(command: Command, action: CommandAction) -> LockState | None:
    if command.reported_state:
        reported = LockState(command.reported_state)
        if not reported.is_pending:
            return reported
    return ACTION_TARGETS[action]
