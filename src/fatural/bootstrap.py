from __future__ import annotations

import fatural.models  # noqa: F401
from fatural.core.config import settings
from fatural.core.db import engine
from fatural.core.logging import get_logger, log_event
from fatural.core.models import Base
from fatural.modules.processing.events import get_status_relay

logger = get_logger(__name__)


def bootstrap() -> None:
    if settings.environment in {"dev", "test"} and str(settings.database_url).startswith("sqlite"):
        Base.metadata.create_all(engine)

    relay = get_status_relay()
    if relay is not None:
        relay.start()

    log_event(
        logger,
        "app.bootstrap",
        environment=settings.environment,
        storage_backend=settings.storage_backend,
        status_channel_backend=settings.status_channel_backend,
    )


def shutdown() -> None:
    relay = get_status_relay()
    if relay is not None:
        relay.stop()
