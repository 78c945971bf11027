"""Miner orchestration: lifecycle, PubSub dispatch and the two periodic loops."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from miner.auth import TwitchAuth
from miner.event_store import EventStore
from miner.events import MessageDedup, PubSubEventHandler
from miner.miner_config import MinerConfigStore
from miner.models import MinerStartResult, MinerStatus, StartReason, StreamerRuntimeState
from miner.pubsub import PubSubClient
from miner.state import StreamerState
from miner.streamers import ChannelMonitor, to_datetime
from miner.twitch_client import TwitchClient, encode_minute_watched_payload
from miner.watch import diff_watched_logins, select_streamers_to_watch
from shared.models.miner import EventSource, EventType, MinerRunInput

logger = logging.getLogger(__name__)


@dataclass
class SchedulerConfig:
    context_refresh_interval: float = 1800.0
    minute_watched_interval: float = 20.0
    max_watched: int = 2
    watch_grace_period: float = 30.0
    stale_metadata_age: float = 600.0
    offline_debounce: float = 60.0
    stream_up_confirm_delay: float = 120.0
    dedup_window: float = 0.5

    @classmethod
    def from_settings(cls, settings) -> SchedulerConfig:
        return cls(
            context_refresh_interval=settings.context_refresh_interval,
            minute_watched_interval=settings.minute_watched_interval,
            max_watched=settings.max_watched,
            watch_grace_period=settings.watch_grace_period,
            stale_metadata_age=settings.stale_metadata_age,
            offline_debounce=settings.offline_debounce,
            stream_up_confirm_delay=settings.stream_up_confirm_delay,
            dedup_window=settings.dedup_window,
        )


class MinerService:
    """Owns the streamer state map and drives every component around it."""

    def __init__(
        self,
        auth: TwitchAuth,
        config: MinerConfigStore,
        client: TwitchClient,
        pubsub: PubSubClient,
        event_store: EventStore,
        scheduler: SchedulerConfig | None = None,
        *,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.auth = auth
        self.config = config
        self.client = client
        self.pubsub = pubsub
        self.event_store = event_store
        self.scheduler = scheduler or SchedulerConfig()
        self.clock = clock
        self._sleep = sleep

        self.monitor = ChannelMonitor(
            client,
            pubsub,
            event_store,
            config,
            offline_debounce=self.scheduler.offline_debounce,
            clock=clock,
        )
        self.handler = PubSubEventHandler(
            self.monitor,
            MessageDedup(self.scheduler.dedup_window),
            stream_up_confirm_delay=self.scheduler.stream_up_confirm_delay,
        )

        self.running = False
        self.starting = False
        self.started_at: float | None = None
        self.tick_count = 0
        self.last_tick: float | None = None
        self.user_id: str | None = None
        self.watched_logins: set[str] = set()
        self.last_start_result: MinerStartResult | None = None

        # Serializes start() and stop(); a stop issued mid-startup runs after it
        self._lifecycle_lock = asyncio.Lock()
        self._dispatch_task: asyncio.Task | None = None
        self._context_task: asyncio.Task | None = None
        self._watch_task: asyncio.Task | None = None

    @property
    def states(self) -> dict[str, StreamerState]:
        return self.monitor.states

    def _set_start_result(self, success: bool, reason: StartReason, message: str) -> MinerStartResult:
        self.last_start_result = MinerStartResult(success=success, reason=reason, message=message)
        return self.last_start_result

    # ==================== Lifecycle ====================

    async def start(self) -> MinerStartResult:
        if self.running or self.starting:
            logger.info("Miner already running")
            return self._set_start_result(True, StartReason.ALREADY_RUNNING, "Miner is already running")

        async with self._lifecycle_lock:
            if self.running:
                logger.info("Miner already running")
                return self._set_start_result(True, StartReason.ALREADY_RUNNING, "Miner is already running")
            return await self._start()

    async def _start(self) -> MinerStartResult:
        auth_token = self.auth.get_auth_token()
        if not auth_token:
            logger.warning("Cannot start: no auth token configured")
            return self._set_start_result(False, StartReason.MISSING_TOKEN, "Missing Twitch auth token")

        self.starting = True
        self.client.set_auth_token(auth_token)
        self.client.set_device_id(self.auth.get_device_id())
        self.pubsub.set_auth_token(auth_token)

        if not await self.auth.validate_token():
            logger.warning("Cannot start: invalid auth token")
            await self.auth.logout()
            self.starting = False
            return self._set_start_result(False, StartReason.INVALID_TOKEN, "Invalid Twitch auth token")

        self.user_id = self.auth.get_user_id()
        self.event_store.start_run(
            MinerRunInput(
                start_reason="started",
                user_id=self.user_id,
                username=self.auth.username,
                started_at=to_datetime(self.clock()),
            )
        )
        self.running = True
        self.started_at = self.clock()
        self.tick_count = 0

        try:
            await self.pubsub.connect()
        except Exception as e:
            logger.error(f"Failed to connect to PubSub: {e}")
            await self._shutdown("startup_failed")
            return self._set_start_result(
                False, StartReason.PUBSUB_CONNECT_FAILED, "Failed to connect to Twitch PubSub"
            )

        try:
            self._drain_stale_messages()
            self._dispatch_task = asyncio.create_task(self._dispatch_loop())

            logger.info("Setting up streamers...")
            await self.monitor.sync_streamers()
            await self.monitor.subscribe_to_points_topic(self.user_id)
            for state in list(self.states.values()):
                await self.monitor.subscribe_to_streamer(state)

            logger.info("Fetching initial stream info...")
            for state in list(self.states.values()):
                await self.monitor.check_streamer_online(state)

            await self.tick()

            self._context_task = asyncio.create_task(self._context_loop())
            self._watch_task = asyncio.create_task(self._watch_loop())
        except Exception as e:
            logger.exception(f"Failed to finish miner startup: {e}")
            await self._shutdown("startup_failed")
            return self._set_start_result(False, StartReason.START_FAILED, "Miner startup failed")

        self.starting = False
        logger.info(f"Monitoring {len(self.states)} streamer(s)")
        return self._set_start_result(True, StartReason.STARTED, "Miner started")

    async def stop(self) -> None:
        if self.starting:
            logger.info("Waiting for miner startup to finish before stopping")
        async with self._lifecycle_lock:
            if not self.running:
                logger.info("Miner not running")
                return
            await self._shutdown("stopped")
        logger.info("Miner stopped")

    async def _shutdown(self, reason: str) -> None:
        current = asyncio.current_task()
        tasks = [
            t for t in (self._context_task, self._watch_task, self._dispatch_task)
            if t is not None and t is not current
        ]
        self._context_task = self._watch_task = self._dispatch_task = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

        self.persist_watch_transitions([])
        try:
            await self.pubsub.disconnect()
        except Exception as e:
            logger.error(f"Error disconnecting PubSub: {e}")
        self.event_store.stop_run(reason)

        self.starting = False
        self.running = False
        self.started_at = None
        self.user_id = None

    def _drain_stale_messages(self) -> None:
        while not self.pubsub.messages.empty():
            self.pubsub.messages.get_nowait()

    # ==================== Loops ====================

    async def _dispatch_loop(self) -> None:
        """Single consumer of the PubSub queue; messages are handled in arrival order."""
        while True:
            try:
                message = await self.pubsub.messages.get()
                await self.handler.handle(message)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception(f"Error handling PubSub message: {e}")

    async def _context_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.scheduler.context_refresh_interval)
                await self.tick()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception(f"Tick error: {e}")

    async def _watch_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.scheduler.minute_watched_interval)
                await self.watch_tick()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception(f"Minute-watched loop error: {e}")

    async def tick(self) -> None:
        """Slow tick: resync configuration and refresh every channel's context."""
        self.tick_count += 1
        self.last_tick = self.clock()
        logger.debug(f"Tick #{self.tick_count}")

        await self.monitor.sync_streamers()
        for state in list(self.states.values()):
            await self.monitor.refresh_context(state)

    # ==================== Watching ====================

    def select_watched(self) -> list[StreamerState]:
        return select_streamers_to_watch(
            self.states.values(),
            self.config.get_streamers(),
            self.clock(),
            max_watched=self.scheduler.max_watched,
            grace=self.scheduler.watch_grace_period,
        )

    def persist_watch_transitions(self, selected: list[StreamerState]) -> None:
        next_logins = {state.name for state in selected}
        diff = diff_watched_logins(self.watched_logins, next_logins)
        self.watched_logins = next_logins
        if diff.empty:
            return

        now = self.clock()
        for event_type, logins in (
            (EventType.WATCH_STOPPED, diff.stopped),
            (EventType.WATCH_STARTED, diff.started),
        ):
            for login in logins:
                state = self.states.get(login)
                self.monitor.record(
                    event_type,
                    EventSource.SYSTEM,
                    login=login,
                    channel_id=state.channel_id if state else None,
                    now=now,
                    broadcast_id=state.stream.broadcast_id if state else None,
                    viewers_count=state.stream.viewers if state else None,
                )

    async def watch_tick(self) -> None:
        """Fast tick: send minute-watched events for the selected channels."""
        if not self.user_id:
            return

        now = self.clock()
        for state in list(self.states.values()):
            if (
                state.is_live
                and state.channel_id
                and now - state.last_context_refresh > self.scheduler.stale_metadata_age
            ):
                try:
                    await self.monitor.check_streamer_online(state)
                except Exception as e:
                    logger.error(f"Failed to refresh stale stream metadata for {state.name}: {e}")

        selected = self.select_watched()
        self.persist_watch_transitions(selected)
        if not selected:
            return

        spacing = self.scheduler.minute_watched_interval / len(selected)
        for index, state in enumerate(selected):
            if not self.running:
                return
            try:
                await self._send_minute_watched(state)
            except Exception as e:
                logger.exception(f"Error in minute-watched for {state.name}: {e}")

            if index < len(selected) - 1:
                await self._sleep(spacing)

    async def _send_minute_watched(self, state: StreamerState) -> None:
        stream = state.stream
        if not (state.channel_id and stream.broadcast_id and stream.spade_url and self.user_id):
            return

        token = await self.client.get_playback_access_token(state.name)
        if token is None:
            logger.debug(f"No playback token for {state.name}, skipping minute-watched")
            return

        stream_url = await self.client.fetch_lowest_quality_stream_url(state.name, token.signature, token.value)
        if stream_url is None:
            logger.debug(f"Could not resolve stream URL for {state.name}, skipping minute-watched")
            return

        payload = encode_minute_watched_payload(state.channel_id, stream.broadcast_id, self.user_id, state.name)
        sent = await self.client.send_minute_watched_event(stream.spade_url, payload)
        if not self.running:
            return

        now = self.clock()
        if sent:
            added = state.record_minute_watched(now)
            self.monitor.record(
                EventType.MINUTE_WATCHED_TICK,
                EventSource.SPADE,
                login=state.name,
                channel_id=state.channel_id,
                now=now,
                broadcast_id=stream.broadcast_id,
                viewers_count=stream.viewers,
                payload={"success": True, "minutesAdded": round(added, 4)},
            )
            logger.debug(f"Minute-watched sent for {state.name} ({stream.minute_watched:.2f} min)")
        else:
            self.monitor.record(
                EventType.MINUTE_WATCHED_TICK_FAILED,
                EventSource.SPADE,
                login=state.name,
                channel_id=state.channel_id,
                now=now,
                broadcast_id=stream.broadcast_id,
                viewers_count=stream.viewers,
                payload={"success": False},
            )
            logger.debug(f"Minute-watched POST for {state.name} did not return 204")

    # ==================== Status ====================

    def get_status(self) -> MinerStatus:
        return MinerStatus(
            running=self.running,
            starting=self.starting,
            started_at=self.started_at,
            streamers=[state.to_dict() for state in self.states.values()],
            tick_count=self.tick_count,
            last_tick=self.last_tick,
            pubsub_connected=self.pubsub.is_connected,
            user_id=self.user_id,
        )

    def get_streamer_runtime_states(self) -> list[StreamerRuntimeState]:
        configured = self.config.get_streamers()
        if not self.running:
            return [StreamerRuntimeState(login=login, is_online=False, is_watched=False) for login in configured]

        watched = {state.name for state in self.select_watched()}
        runtime = []
        for login in configured:
            state = self.states.get(login)
            runtime.append(
                StreamerRuntimeState(
                    login=login,
                    is_online=bool(state and state.is_live),
                    is_watched=login in watched,
                )
            )
        return runtime

    def get_runtime_balance_by_login(self) -> dict[str, int]:
        if not self.running:
            return {}

        balances: dict[str, int] = {}
        for login in self.config.get_streamers():
            state = self.states.get(login)
            if state is None or state.last_context_refresh == 0:
                continue
            balances[login] = state.channel_points
        return balances

    def get_last_start_result(self) -> MinerStartResult | None:
        return self.last_start_result
