"""Guardlink application entrypoint."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlmodel import Session
from starlette.middleware.base import BaseHTTPMiddleware

from guardlink import database
from guardlink.commands.dispatcher import CommandDispatcher
from guardlink.commands.log import CommandLog
from guardlink.config import Settings, load_config, settings
from guardlink.interpreter import create_interpreter
from guardlink.presence.channel import PresenceChannel
from guardlink.registry.registry import DeviceRegistry
from guardlink.registry.store import get_device_records
from guardlink.sweeper import Sweeper

logging.basicConfig(level=settings.log_level.upper())
logger = logging.getLogger(__name__)


def _build_dispatcher(cfg: Settings) -> CommandDispatcher:
    """Wire log, registry and channel together, restoring state from storage."""
    engine = database.engine

    log = CommandLog(engine)
    registry = DeviceRegistry(offline_threshold=cfg.offline_threshold, engine=engine)
    with Session(engine) as session:
        registry.rebuild(get_device_records(session), log)

    channel = PresenceChannel(
        registry,
        buffer_limit=cfg.observer_buffer_limit,
        send_timeout=cfg.observer_send_timeout,
    )
    return CommandDispatcher(
        log,
        registry,
        channel,
        ack_timeout=cfg.ack_timeout,
        interpreter=create_interpreter(cfg),
        min_confidence=cfg.min_confidence,
        webhook_urls=cfg.webhook_urls,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application startup/shutdown lifecycle."""
    # Import models to register them with SQLModel before init_db()
    import guardlink.commands.models  # noqa: F401
    import guardlink.registry.models  # noqa: F401

    database.init_db()
    logger.info("Database initialized")

    cfg = load_config()
    dispatcher = _build_dispatcher(cfg)
    sweeper = Sweeper(dispatcher, interval=cfg.sweep_interval)
    await sweeper.start()

    app.state.dispatcher = dispatcher
    app.state.sweeper = sweeper

    yield

    await sweeper.stop()
    await dispatcher.channel.close()
    await dispatcher.close()
    logger.info("Shutdown complete")


app = FastAPI(
    title="Guardlink",
    description="Real-time device commands and presence for family safety",
    version="0.1.0",
    lifespan=lifespan,
)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = "default-src 'none'"
        return response


app.add_middleware(SecurityHeadersMiddleware)


# Register routers
from guardlink.api.routes import router as api_router  # noqa: E402
from guardlink.api.ws import router as ws_router  # noqa: E402

app.include_router(api_router)
app.include_router(ws_router)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


def main() -> None:
    import uvicorn

    logger.info("Starting Guardlink on %s:%d", settings.host, settings.port)
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
