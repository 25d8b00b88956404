"""Command dispatcher: the only way device lock state changes.

Every mutation for a device runs under that device's lock, which keeps at
most one issued command per device and makes the order of published events
match the order commands were issued. Different devices never wait on each
other.
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from guardlink.alerts.webhooks import deliver, wants_alert
from guardlink.commands.log import CommandLog
from guardlink.commands.models import Command, CommandAction, CommandStatus
from guardlink.errors import (
    AlreadyResolved,
    CommandDeclined,
    CommandDeviceMismatch,
    GuardlinkError,
    InvalidTransition,
    StorageUnavailable,
)
from guardlink.interpreter.base import CommandInterpreter, Interpretation
from guardlink.presence.channel import PresenceChannel
from guardlink.presence.events import (
    BaseEvent,
    CommandAcknowledged,
    CommandExpired,
    CommandIssued,
    EmergencyLockdownActivated,
    EmergencyReleased,
    device_status,
)
from guardlink.registry.models import ACTION_TARGETS, Device, LockState, Transition
from guardlink.registry.registry import DeviceRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IssueResult:
    device_id: str
    action: CommandAction
    command_id: int | None  # None when the device was already in the target state
    noop: bool = False


@dataclass
class EmergencyResult:
    owner_member_id: str
    action: CommandAction
    event_id: int | None
    commands: dict[str, int | None] = field(default_factory=dict)
    errors: dict[str, GuardlinkError] = field(default_factory=dict)


@dataclass(frozen=True)
class TextCommandResult:
    interpretation: Interpretation
    command: IssueResult | None = None
    emergency: EmergencyResult | None = None


class CommandDispatcher:
    def __init__(
        self,
        log: CommandLog,
        registry: DeviceRegistry,
        channel: PresenceChannel,
        ack_timeout: int = 30,
        interpreter: CommandInterpreter | None = None,
        min_confidence: float = 0.7,
        webhook_urls: list[str] | None = None,
    ) -> None:
        self.log = log
        self.registry = registry
        self.channel = channel
        self.ack_timeout = ack_timeout
        self.interpreter = interpreter
        self.min_confidence = min_confidence
        self.webhook_urls = webhook_urls or []
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._background: set[asyncio.Task[object]] = set()

    async def issue(
        self, device_id: str, action: CommandAction, issued_by: str
    ) -> IssueResult:
        """Issue ``action`` to one device, superseding any pending command.

        Emergency actions apply to the device's whole family; the result for
        ``device_id`` is returned.

        Raises DeviceNotFound, InvalidTransition or StorageUnavailable.
        """
        action = CommandAction(action)
        # Unknown ids fail here, before a per-device lock is created
        owner = self.registry.get(device_id).owner_member_id
        if action.is_family_wide:
            if action is CommandAction.emergency_lockdown:
                result = await self.emergency_lockdown(owner, issued_by)
            else:
                result = await self.emergency_release(owner, issued_by)
            if device_id in result.errors:
                raise result.errors[device_id]
            command_id = result.commands.get(device_id)
            return IssueResult(device_id, action, command_id, noop=command_id is None)

        async with self._locks[device_id]:
            return self._issue_locked(device_id, action, issued_by)

    async def acknowledge(
        self,
        command_id: int,
        reported_state: LockState | None = None,
        expected_device_id: str | None = None,
    ) -> bool:
        """Close the loop on a command the device carried out.

        An ack is also proof of life, so the device is marked online.
        Returns False when the command was already resolved (duplicate or
        late ack); no ack event is published in that case. Raises CommandNotFound
        for unknown ids and CommandDeviceMismatch when ``expected_device_id``
        is given and the command was addressed to another device.
        """
        command = self.log.get(command_id)
        if expected_device_id is not None and command.device_id != expected_device_id:
            raise CommandDeviceMismatch(command_id, expected_device_id)
        action = CommandAction(command.action)

        async with self._locks[command.device_id]:
            if command.device_id in self.registry:
                self._touch(command.device_id)

            outcome = reported_state
            if outcome is None or outcome.is_pending:
                outcome = ACTION_TARGETS[action]
            try:
                self.log.mark_resolved(
                    command_id,
                    CommandStatus.acknowledged,
                    datetime.now(UTC),
                    reported_state=str(outcome) if outcome else None,
                )
            except AlreadyResolved as e:
                logger.info("Ignoring ack for command %d: already %s", command_id, e.status)
                return False

            device = self.registry.resolve(command_id, outcome)
            if device is None:
                if command.device_id not in self.registry:
                    logger.warning(
                        "Ack for command %d on unregistered device %s",
                        command_id,
                        command.device_id,
                    )
                    return True
                device = self.registry.get(command.device_id)

            self.channel.publish(
                CommandAcknowledged(
                    device_id=device.device_id,
                    owner_member_id=device.owner_member_id,
                    command_id=command_id,
                    result_state=device.lock_state,
                )
            )
        logger.info("Command %d acknowledged by %s (%s)", command_id, command.device_id, outcome)
        return True

    async def expire_stale(self, now: datetime | None = None) -> list[int]:
        """Expire issued commands older than the ack timeout.

        Each expired command yields exactly one CommandExpired event.
        """
        now = now or datetime.now(UTC)
        cutoff = now - timedelta(seconds=self.ack_timeout)
        expired: list[int] = []

        for command in self.log.list_issued_before(cutoff):
            if command.id is None:
                continue
            async with self._locks[command.device_id]:
                try:
                    self.log.mark_resolved(command.id, CommandStatus.expired, now)
                except AlreadyResolved:
                    # Acked or superseded while we waited for the lock
                    continue
                self.registry.resolve(command.id, None)
                event = CommandExpired(
                    device_id=command.device_id,
                    owner_member_id=self._owner_of(command.device_id),
                    command_id=command.id,
                )
                self.channel.publish(event)
                self._alert(event)
            logger.warning(
                "Command %d (%s) for %s expired without acknowledgement",
                command.id,
                command.action,
                command.device_id,
            )
            expired.append(command.id)

        return expired

    async def record_heartbeat(
        self, device_id: str, reported_lock_state: LockState | None = None
    ) -> Device:
        """Mark a device alive and reconcile its reported lock state.

        A device still under an active family lockdown that is neither
        locked nor waiting on a command gets the lockdown issued again. This
        covers lockdown commands that expired while the device was offline.
        """
        self.registry.get(device_id)
        async with self._locks[device_id]:
            device = self._touch(device_id, reported_lock_state)
            if device.emergency_active and device.pending_command_id is None:
                self._resume_lockdown(device)
            return self.registry.get(device_id)

    def sweep_offline(self, now: datetime | None = None) -> list[Device]:
        devices = self.registry.sweep_offline(now)
        for device in devices:
            self.channel.publish(device_status(device))
        return devices

    async def emergency_lockdown(self, owner_member_id: str, issued_by: str) -> EmergencyResult:
        """Lock every device in the family.

        One independent command per device; per-device failures are collected
        rather than aborting the rest. Offline devices get their command
        replayed when they reconnect.
        """
        devices = self.registry.snapshot(owner_member_id)
        event = self.log.get_active_emergency(owner_member_id)
        if event is None:
            event = self.log.create_emergency_event(
                owner_member_id,
                issued_by,
                f"Emergency lockdown of {len(devices)} device(s)",
            )
        if event.id is None:
            raise StorageUnavailable("Command store returned no id for emergency event")

        result = EmergencyResult(owner_member_id, CommandAction.emergency_lockdown, event.id)
        for device in devices:
            async with self._locks[device.device_id]:
                self._fan_out_one(result, device, issued_by)

        published = EmergencyLockdownActivated(
            owner_member_id=owner_member_id,
            event_id=event.id,
            device_ids=sorted(d for d, c in result.commands.items() if c is not None),
        )
        self.channel.publish(published)
        self._alert(published)
        logger.warning(
            "Emergency lockdown for %s: %d command(s), %d error(s)",
            owner_member_id,
            len(result.commands),
            len(result.errors),
        )
        return result

    async def emergency_release(self, owner_member_id: str, issued_by: str) -> EmergencyResult:
        """Release a family lockdown and unlock its devices."""
        devices = self.registry.snapshot(owner_member_id)
        event = self.log.get_active_emergency(owner_member_id)
        event_id = event.id if event is not None else None

        result = EmergencyResult(owner_member_id, CommandAction.emergency_release, event_id)
        for device in devices:
            async with self._locks[device.device_id]:
                self._fan_out_one(result, device, issued_by)

        if event_id is None:
            logger.info("No active emergency for %s; release is a no-op", owner_member_id)
            return result

        self.log.resolve_emergency_event(event_id, issued_by, datetime.now(UTC))
        published = EmergencyReleased(
            owner_member_id=owner_member_id,
            event_id=event_id,
            device_ids=sorted(d for d, c in result.commands.items() if c is not None),
        )
        self.channel.publish(published)
        self._alert(published)
        return result

    async def issue_from_text(
        self, text: str, issued_by: str, owner_member_id: str | None = None
    ) -> TextCommandResult:
        """Interpret free text and act on it when the reading is confident.

        Raises CommandDeclined when nothing actionable came out of the text,
        InterpreterError when the interpreter backend failed.
        """
        if self.interpreter is None:
            raise CommandDeclined("No command interpreter configured")

        interpretation = await asyncio.to_thread(self.interpreter.interpret, text)
        action = interpretation.action
        if action is None:
            raise CommandDeclined(f"Not a supported command: {interpretation.explanation}")
        if interpretation.confidence < self.min_confidence:
            raise CommandDeclined(
                f"Confidence {interpretation.confidence:.2f} is below "
                f"{self.min_confidence:.2f}: {interpretation.explanation}"
            )

        if action.is_family_wide:
            if owner_member_id is None:
                raise CommandDeclined("Emergency commands need an owner_member_id")
            if action is CommandAction.emergency_lockdown:
                emergency = await self.emergency_lockdown(owner_member_id, issued_by)
            else:
                emergency = await self.emergency_release(owner_member_id, issued_by)
            return TextCommandResult(interpretation=interpretation, emergency=emergency)

        if not interpretation.target:
            raise CommandDeclined(f"No device named in: {text!r}")
        device = self.registry.find(interpretation.target, owner_member_id)
        if device is None:
            raise CommandDeclined(f"No device matches {interpretation.target!r}")

        issued = await self.issue(device.device_id, action, issued_by)
        return TextCommandResult(interpretation=interpretation, command=issued)

    async def close(self) -> None:
        """Wait for in-flight webhook deliveries."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    def _issue_locked(
        self,
        device_id: str,
        action: CommandAction,
        issued_by: str,
        emergency_event_id: int | None = None,
    ) -> IssueResult:
        # Validate first so a rejected command leaves no trace
        if self.registry.plan(device_id, action) is Transition.noop:
            logger.info("%s on %s: already in target state", action, device_id)
            return IssueResult(device_id, action, None, noop=True)

        pending = self.log.get_pending(device_id)
        command = Command(
            device_id=device_id,
            action=action,
            issued_by=issued_by,
            emergency_event_id=emergency_event_id,
        )
        command_id = self.log.append(command, supersede=pending.id if pending else None)

        try:
            transition = self.registry.apply(command)
        except InvalidTransition:
            self._withdraw(command_id, pending)
            raise
        if transition is Transition.noop:
            self._withdraw(command_id, pending)
            return IssueResult(device_id, action, None, noop=True)

        self.channel.publish(
            CommandIssued(
                device_id=device_id,
                owner_member_id=self._owner_of(device_id),
                command_id=command_id,
                action=action,
            )
        )
        return IssueResult(device_id, action, command_id)

    def _touch(self, device_id: str, reported_lock_state: LockState | None = None) -> Device:
        result = self.registry.heartbeat(device_id, reported_lock_state)
        if result.changed:
            self.channel.publish(device_status(result.device))
        return result.device

    def _resume_lockdown(self, device: Device) -> None:
        plan = self.registry.plan(device.device_id, CommandAction.emergency_lockdown)
        if plan is Transition.noop:
            return
        try:
            event = self.log.get_active_emergency(device.owner_member_id)
            issued_by = event.issued_by if event is not None else "guardlink"
            issued = self._issue_locked(
                device.device_id,
                CommandAction.emergency_lockdown,
                issued_by,
                emergency_event_id=event.id if event is not None else None,
            )
        except StorageUnavailable as e:
            # The next heartbeat tries again
            logger.warning("Could not re-issue lockdown to %s: %s", device.device_id, e)
            return
        logger.warning(
            "Re-issued emergency lockdown to %s as command %s",
            device.device_id,
            issued.command_id,
        )

    def _withdraw(self, command_id: int, superseded: Command | None) -> None:
        """Undo an append the registry refused, so nothing is left dangling."""
        try:
            self.log.mark_resolved(command_id, CommandStatus.superseded, datetime.now(UTC))
        except AlreadyResolved:
            pass
        if superseded is not None and superseded.id is not None:
            self.registry.resolve(superseded.id, None)
        logger.warning("Command %d withdrawn: rejected by registry", command_id)

    def _fan_out_one(self, result: EmergencyResult, device: Device, issued_by: str) -> None:
        try:
            issued = self._issue_locked(
                device.device_id, result.action, issued_by, emergency_event_id=result.event_id
            )
        except GuardlinkError as e:
            logger.warning("%s failed for %s: %s", result.action, device.device_id, e)
            result.errors[device.device_id] = e
            return
        result.commands[device.device_id] = issued.command_id

    def _owner_of(self, device_id: str) -> str | None:
        if device_id not in self.registry:
            return None
        return self.registry.get(device_id).owner_member_id

    def _alert(self, event: BaseEvent) -> None:
        if not self.webhook_urls or not wants_alert(event):
            return
        task = asyncio.create_task(asyncio.to_thread(deliver, event, list(self.webhook_urls)))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
