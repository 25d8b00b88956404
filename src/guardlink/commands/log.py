"""Append-only, per-device ordered record of commands."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from guardlink.commands.models import (
    Command,
    CommandStatus,
    EmergencyEvent,
    EmergencyStatus,
)
from guardlink.errors import AlreadyResolved, CommandNotFound, StorageUnavailable

logger = logging.getLogger(__name__)


class CommandLog:
    """Durable command history backed by SQLModel.

    Identifiers come from the table's integer primary key, so they are
    strictly increasing in append order. Entries are never deleted.
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self._engine, expire_on_commit=False) as session:
                yield session
        except SQLAlchemyError as e:
            logger.error("Command store unavailable: %s", e)
            raise StorageUnavailable(str(e)) from e

    def append(self, command: Command, supersede: int | None = None) -> int:
        """Insert an issued command and return its id.

        If ``supersede`` names a command that is still issued, it is marked
        superseded in the same transaction.
        """
        with self._session() as session:
            if supersede is not None:
                previous = session.get(Command, supersede)
                if previous is not None and previous.status == CommandStatus.issued:
                    previous.status = CommandStatus.superseded
                    previous.resolved_at = command.issued_at
                    session.add(previous)
            command.status = CommandStatus.issued
            command.resolved_at = None
            session.add(command)
            session.commit()
            session.refresh(command)

        if command.id is None:
            raise StorageUnavailable("Command store returned no id for appended command")
        if supersede is not None:
            logger.info(
                "Command %d (%s) for %s supersedes %d",
                command.id,
                command.action,
                command.device_id,
                supersede,
            )
        else:
            logger.info("Command %d (%s) for %s", command.id, command.action, command.device_id)
        return command.id

    def get(self, command_id: int) -> Command:
        with self._session() as session:
            command = session.get(Command, command_id)
        if command is None:
            raise CommandNotFound(command_id)
        return command

    def get_pending(self, device_id: str) -> Command | None:
        """Return the single issued command for a device, if any."""
        with self._session() as session:
            stmt = (
                select(Command)
                .where(Command.device_id == device_id)
                .where(Command.status == CommandStatus.issued)
                .order_by(Command.id.desc())  # type: ignore[union-attr]
            )
            return session.exec(stmt).first()

    def mark_resolved(
        self,
        command_id: int,
        status: CommandStatus,
        resolved_at: datetime,
        reported_state: str | None = None,
    ) -> Command:
        """Move a command out of ``issued``.

        Raises CommandNotFound for unknown ids and AlreadyResolved when the
        command is already terminal.
        """
        if not status.is_terminal:
            raise ValueError("Commands can only be resolved to a terminal status")

        with self._session() as session:
            command = session.get(Command, command_id)
            if command is None:
                raise CommandNotFound(command_id)
            if command.status != CommandStatus.issued:
                raise AlreadyResolved(command_id, str(command.status))

            command.status = status
            command.resolved_at = resolved_at
            command.reported_state = reported_state
            session.add(command)
            session.commit()
            session.refresh(command)

        logger.info("Command %d %s", command_id, status)
        return command

    def history(self, device_id: str, limit: int = 50) -> list[Command]:
        """Commands for a device, newest first."""
        with self._session() as session:
            stmt = (
                select(Command)
                .where(Command.device_id == device_id)
                .order_by(Command.id.desc())  # type: ignore[union-attr]
                .limit(limit)
            )
            return list(session.exec(stmt).all())

    def list_issued_before(self, cutoff: datetime) -> list[Command]:
        """Issued commands older than ``cutoff`` (timezone-aware), oldest first."""
        if cutoff.tzinfo is None:
            raise ValueError("cutoff must be timezone-aware")
        # Timestamps are written in UTC; SQLite compares them as text
        cutoff = cutoff.astimezone(UTC)
        with self._session() as session:
            stmt = (
                select(Command)
                .where(Command.status == CommandStatus.issued)
                .where(Command.issued_at < cutoff)  # type: ignore[arg-type]
                .order_by(Command.id)  # type: ignore[arg-type]
            )
            return list(session.exec(stmt).all())

    # --- Emergency events ---

    def create_emergency_event(
        self, owner_member_id: str, issued_by: str, description: str
    ) -> EmergencyEvent:
        event = EmergencyEvent(
            owner_member_id=owner_member_id,
            issued_by=issued_by,
            description=description,
        )
        with self._session() as session:
            session.add(event)
            session.commit()
            session.refresh(event)
        logger.warning("Emergency event %s opened for family %s", event.id, owner_member_id)
        return event

    def get_active_emergency(self, owner_member_id: str) -> EmergencyEvent | None:
        with self._session() as session:
            stmt = (
                select(EmergencyEvent)
                .where(EmergencyEvent.owner_member_id == owner_member_id)
                .where(EmergencyEvent.status == EmergencyStatus.active)
                .order_by(EmergencyEvent.id.desc())  # type: ignore[union-attr]
            )
            return session.exec(stmt).first()

    def resolve_emergency_event(
        self, event_id: int, resolved_by: str, resolved_at: datetime
    ) -> EmergencyEvent:
        with self._session() as session:
            event = session.get(EmergencyEvent, event_id)
            if event is None:
                raise LookupError(f"Emergency event {event_id} not found")
            if event.status == EmergencyStatus.active:
                event.status = EmergencyStatus.resolved
                event.resolved_at = resolved_at
                event.resolved_by = resolved_by
                session.add(event)
                session.commit()
                session.refresh(event)
        logger.warning("Emergency event %d resolved by %s", event_id, resolved_by)
        return event

    def list_emergency_events(
        self, owner_member_id: str | None = None, limit: int = 50
    ) -> list[EmergencyEvent]:
        with self._session() as session:
            stmt = select(EmergencyEvent)
            if owner_member_id is not None:
                stmt = stmt.where(EmergencyEvent.owner_member_id == owner_member_id)
            stmt = stmt.order_by(EmergencyEvent.id.desc()).limit(limit)  # type: ignore[union-attr]
            return list(session.exec(stmt).all())
