"""Wiring of the core components.

Everything is built explicitly and passed to whoever needs it; there is no
module-level state.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from .config import Settings, load_settings
from .connection import ConnectionManager
from .http_session import http_connector
from .queue import JobQueue
from .session import Connector
from .storage import JsonFileStore, RecordStore

logger = logging.getLogger(__name__)


@dataclass
class AppServices:
    settings: Settings
    connection: ConnectionManager
    queue: JobQueue

    async def startup(self) -> None:
        """Connect to the default profile if configured, then start processing."""
        if self.settings.connect_on_startup:
            state = await self.connection.connect_to_default()
            if not state.is_connected:
                logger.warning(f"Startup connection failed: {state.error_message}")
        self.queue.start()

    async def shutdown(self) -> None:
        await self.queue.shutdown()
        await self.connection.close()


def create_services(
    settings: Optional[Settings] = None,
    connector: Optional[Connector] = None,
    profile_store: Optional[RecordStore] = None,
    queue_store: Optional[RecordStore] = None,
) -> AppServices:
    """Build the connection manager and job queue.

    Stores default to JSON files under ``settings.data_dir``; the connector
    defaults to the HTTP session adapter.
    """
    settings = settings or load_settings()
    if connector is None:
        connector = http_connector(poll_interval=settings.poll_interval)
    if profile_store is None:
        profile_store = JsonFileStore(settings.profiles_path)
    if queue_store is None:
        queue_store = JsonFileStore(settings.queue_path)

    connection = ConnectionManager(
        profile_store,
        connector,
        probe_timeout=settings.probe_timeout,
    )
    queue = JobQueue(
        queue_store,
        connection,
        cancel_timeout=settings.cancel_timeout,
        progress_persist_interval=settings.progress_persist_interval,
        start_paused=settings.start_paused,
    )
    logger.info(f"Services ready (data dir {settings.data_dir})")
    return AppServices(settings=settings, connection=connection, queue=queue)
