"""Miner entry point: wires settings, database, Twitch clients and the status server."""

import asyncio
import logging
import signal

from miner.auth import TwitchAuth
from miner.core import get_settings, setup_logging
from miner.event_store import EventStore
from miner.health_server import StatusServer
from miner.miner_config import MinerConfigStore
from miner.pubsub import PubSubClient
from miner.service import MinerService, SchedulerConfig
from miner.twitch_client import TwitchClient
from shared.database import DatabaseManager, PoolConfig
from shared.migrations.runner import MigrationRunner
from shared.repositories.events import EventRepository

LOGGER: logging.Logger = logging.getLogger("Miner")


async def run() -> None:
    settings = get_settings()

    db = DatabaseManager(settings.database_url, PoolConfig.for_service("miner"))
    await db.connect()
    await MigrationRunner(db.pool).run_pending()

    config = MinerConfigStore.from_settings(settings)
    client = TwitchClient()
    pubsub = PubSubClient(
        listen_timeout=settings.pubsub_listen_timeout,
        pong_timeout=settings.pubsub_pong_timeout,
        ping_interval=(settings.pubsub_ping_interval_min, settings.pubsub_ping_interval_max),
        reconnect_delay=(settings.pubsub_reconnect_delay_min, settings.pubsub_reconnect_delay_max),
    )
    event_store = EventStore(EventRepository(db.pool))
    auth = TwitchAuth(config, client)
    service = MinerService(
        auth, config, client, pubsub, event_store, SchedulerConfig.from_settings(settings)
    )
    server = StatusServer(service, auth, config, host=settings.host, port=settings.port, db=db)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass

    try:
        await server.start()

        if settings.autostart and auth.get_auth_token():
            result = await service.start()
            if result.success:
                LOGGER.info(result.message)
            else:
                LOGGER.warning(f"Autostart failed: {result.reason.value} ({result.message})")
        elif not auth.get_auth_token():
            LOGGER.info("No auth token yet, POST /auth {\"action\": \"startLogin\"} to log in")

        await stop_event.wait()
        LOGGER.info("Shutting down...")
    finally:
        await service.stop()
        await server.stop()
        await event_store.close()
        await auth.close()
        await client.close()
        await db.disconnect()


def main() -> None:
    setup_logging(get_settings().log_level)

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        LOGGER.warning("Shutting down due to KeyboardInterrupt...")


if __name__ == "__main__":
    main()
