"""Shared test fixtures."""

import asyncio
from collections.abc import Generator
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

import guardlink.database as db_module
from guardlink.commands.dispatcher import CommandDispatcher
from guardlink.commands.log import CommandLog
from guardlink.interpreter.keyword import KeywordInterpreter
from guardlink.main import app
from guardlink.presence.channel import PresenceChannel
from guardlink.registry.registry import DeviceRegistry


class RecordingTransport:
    """In-memory stand-in for a WebSocket connection."""

    def __init__(self, fail: bool = False, hang: bool = False) -> None:
        self.sent: list[dict[str, Any]] = []
        self.closed_with: int | None = None
        self.fail = fail
        self.hang = hang

    async def send_json(self, data: Any) -> None:
        if self.fail:
            raise ConnectionResetError("peer went away")
        if self.hang:
            await asyncio.Event().wait()
        self.sent.append(data)

    async def close(self, code: int = 1000) -> None:
        self.closed_with = code

    def types(self) -> list[str]:
        return [m["type"] for m in self.sent]

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [m for m in self.sent if m["type"] == event_type]


@pytest.fixture
def engine():
    """In-memory SQLite engine with all tables created.

    StaticPool ensures every session uses the same connection,
    so the in-memory database is shared across the test.
    """
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(eng)
    return eng


@pytest.fixture
def session(engine) -> Generator[Session, None, None]:
    with Session(engine) as s:
        yield s


@pytest.fixture
def command_log(engine) -> CommandLog:
    return CommandLog(engine)


@pytest.fixture
def registry(engine) -> DeviceRegistry:
    return DeviceRegistry(offline_threshold=90, engine=engine)


@pytest.fixture
def channel(registry) -> PresenceChannel:
    return PresenceChannel(registry, buffer_limit=10, send_timeout=1.0)


@pytest.fixture
def dispatcher(command_log, registry, channel) -> CommandDispatcher:
    return CommandDispatcher(
        command_log,
        registry,
        channel,
        ack_timeout=30,
        interpreter=KeywordInterpreter(),
        min_confidence=0.7,
    )


@pytest.fixture
def transport_cls() -> type[RecordingTransport]:
    return RecordingTransport


@pytest.fixture
def settle():
    """Give observer writer tasks a chance to drain their queues."""

    async def _settle(seconds: float = 0.05) -> None:
        await asyncio.sleep(seconds)

    return _settle


@pytest.fixture
def client(engine) -> Generator[TestClient, None, None]:
    """FastAPI TestClient running the full lifespan against the test engine."""
    # Patch the module-level engine so lifespan's init_db() and the
    # command log both use the test engine.
    original_engine = db_module.engine
    db_module.engine = engine

    with TestClient(app) as c:
        yield c
    db_module.engine = original_engine
