"""Publish/subscribe channel between the dispatcher and connected observers.

Delivery is best effort to currently connected observers only. Each
observer owns a bounded outbound queue drained by its own writer task, so
``publish`` never waits on a socket: a full queue or a failed send drops
that one observer and leaves everyone else untouched.
"""

import asyncio
import enum
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Protocol

from guardlink.presence.events import (
    BaseEvent,
    CommandIssued,
    EventType,
    Snapshot,
    Welcome,
)
from guardlink.registry.registry import DeviceRegistry

logger = logging.getLogger(__name__)


class ObserverRole(enum.StrEnum):
    dashboard = "dashboard"
    device_agent = "device_agent"


DASHBOARD_TOPICS = frozenset(EventType)
DEVICE_AGENT_TOPICS = frozenset({EventType.command_issued, EventType.device_status})


class ObserverTransport(Protocol):
    """What the channel needs from a connection (a FastAPI WebSocket fits)."""

    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


@dataclass
class Observer:
    session_id: str
    role: ObserverRole
    transport: ObserverTransport
    outbox: asyncio.Queue[dict[str, Any]]
    subscriptions: frozenset[EventType]
    device_id: str | None = None
    owner_member_id: str | None = None
    task: asyncio.Task[None] | None = field(default=None, repr=False)

    def wants(self, event: BaseEvent) -> bool:
        if event.type not in self.subscriptions:
            return False
        if self.role is ObserverRole.device_agent:
            return event.device_id == self.device_id
        if self.owner_member_id is None or event.owner_member_id is None:
            return True
        return event.owner_member_id == self.owner_member_id


class PresenceChannel:
    def __init__(
        self,
        registry: DeviceRegistry,
        buffer_limit: int = 100,
        send_timeout: float = 5.0,
    ) -> None:
        self.registry = registry
        self.buffer_limit = buffer_limit
        self.send_timeout = send_timeout
        self._observers: dict[str, Observer] = {}
        self._closing: set[asyncio.Task[None]] = set()

    def __len__(self) -> int:
        return len(self._observers)

    async def connect(
        self,
        transport: ObserverTransport,
        role: ObserverRole,
        device_id: str | None = None,
        owner_member_id: str | None = None,
    ) -> str:
        """Register an observer and queue its initial state.

        Dashboards get a welcome plus a full snapshot. Device agents get a
        welcome, their own device, and a replay of any pending command so a
        device that was offline when the command was issued still receives it.
        """
        device = None
        if role is ObserverRole.device_agent:
            if device_id is None:
                raise ValueError("device_agent observers need a device_id")
            device = self.registry.get(device_id)
            owner_member_id = device.owner_member_id
            subscriptions = DEVICE_AGENT_TOPICS
        else:
            subscriptions = DASHBOARD_TOPICS

        session_id = uuid.uuid4().hex

        # No await between reading state and registering, so nothing
        # published in between can be missed or reordered.
        initial: list[BaseEvent] = [
            Welcome(
                session_id=session_id,
                device_id=device_id,
                owner_member_id=owner_member_id,
            )
        ]
        if device is None:
            initial.append(
                Snapshot(
                    owner_member_id=owner_member_id,
                    devices=self.registry.snapshot(owner_member_id),
                )
            )
        else:
            initial.append(
                Snapshot(
                    device_id=device.device_id,
                    owner_member_id=owner_member_id,
                    devices=[device],
                )
            )
            pending = self.registry.pending_command(device.device_id)
            if pending is not None:
                command_id, action = pending
                initial.append(
                    CommandIssued(
                        device_id=device.device_id,
                        owner_member_id=owner_member_id,
                        command_id=command_id,
                        action=action,
                        replay=True,
                    )
                )

        # The initial burst does not count against the backlog limit.
        observer = Observer(
            session_id=session_id,
            role=role,
            transport=transport,
            outbox=asyncio.Queue(maxsize=self.buffer_limit + len(initial)),
            subscriptions=subscriptions,
            device_id=device_id,
            owner_member_id=owner_member_id,
        )
        for event in initial:
            observer.outbox.put_nowait(event.model_dump(mode="json"))

        self._observers[observer.session_id] = observer
        observer.task = asyncio.create_task(self._writer(observer))
        logger.info(
            "Observer %s connected (%s%s)",
            observer.session_id,
            role,
            f" {device_id}" if device_id else "",
        )
        return observer.session_id

    async def disconnect(self, session_id: str) -> None:
        """Forget an observer. Devices are not marked offline here."""
        observer = self._observers.pop(session_id, None)
        if observer is None:
            return
        task = observer.task
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("Observer %s disconnected", session_id)

    def publish(self, event: BaseEvent) -> int:
        """Queue ``event`` for every matching observer. Never waits.

        Returns the number of observers the event was queued for.
        """
        message = event.model_dump(mode="json")
        delivered = 0

        for observer in list(self._observers.values()):
            if not observer.wants(event):
                continue
            try:
                observer.outbox.put_nowait(message)
            except asyncio.QueueFull:
                logger.warning(
                    "Observer %s fell %d events behind; dropping it",
                    observer.session_id,
                    observer.outbox.maxsize,
                )
                self._drop(observer)
                continue
            delivered += 1

        logger.debug("Published %s to %d observer(s)", event.type, delivered)
        return delivered

    def observers(self) -> list[Observer]:
        return list(self._observers.values())

    async def close(self) -> None:
        """Drop every observer (application shutdown)."""
        for session_id in list(self._observers):
            observer = self._observers.get(session_id)
            if observer is not None:
                self._drop(observer)
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)

    async def _writer(self, observer: Observer) -> None:
        while True:
            message = await observer.outbox.get()
            try:
                await asyncio.wait_for(
                    observer.transport.send_json(message), timeout=self.send_timeout
                )
            except asyncio.CancelledError:
                raise
            except TimeoutError:
                logger.warning(
                    "Send to observer %s timed out after %.1fs; dropping it",
                    observer.session_id,
                    self.send_timeout,
                )
                self._drop(observer)
                return
            except Exception as e:
                logger.warning(
                    "Send to observer %s failed: %s; dropping it", observer.session_id, e
                )
                self._drop(observer)
                return

    def _drop(self, observer: Observer) -> None:
        if self._observers.pop(observer.session_id, None) is None:
            return
        task = observer.task
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        closer = asyncio.get_running_loop().create_task(self._close_transport(observer))
        self._closing.add(closer)
        closer.add_done_callback(self._closing.discard)

    async def _close_transport(self, observer: Observer) -> None:
        try:
            await observer.transport.close(code=1011)
        except Exception:
            logger.debug("Closing observer %s failed", observer.session_id, exc_info=True)
