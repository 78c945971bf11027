"""Channel monitoring: keeps ``StreamerState`` in step with Twitch.

``ChannelMonitor`` owns the I/O side of the state machine: channel id
resolution, PubSub subscriptions, GQL liveness confirmation, context refresh
and the claim flow. Every transition it observes is recorded through the
event store.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Protocol

from miner.core.constants import TopicType
from miner.state import StreamerState, find_streamer_by_channel_id
from shared.models.miner import ChannelPointEventInput, EventSource, EventType, StreamerRef

if TYPE_CHECKING:
    from miner.event_store import EventStore
    from miner.pubsub import PubSubClient
    from miner.twitch_client import TwitchClient

logger = logging.getLogger(__name__)


class StreamerListProvider(Protocol):
    def get_streamers(self) -> list[str]: ...


def to_datetime(timestamp: float) -> datetime:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


class ChannelMonitor:
    def __init__(
        self,
        client: TwitchClient,
        pubsub: PubSubClient,
        event_store: EventStore,
        config: StreamerListProvider,
        *,
        offline_debounce: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        self.client = client
        self.pubsub = pubsub
        self.event_store = event_store
        self.config = config
        self.offline_debounce = offline_debounce
        self.clock = clock
        self.states: dict[str, StreamerState] = {}

    def get(self, channel_id: str | None) -> StreamerState | None:
        return find_streamer_by_channel_id(self.states.values(), channel_id)

    def record(
        self,
        event_type: EventType,
        source: EventSource,
        *,
        login: str | None = None,
        channel_id: str | None = None,
        now: float | None = None,
        **fields: Any,
    ) -> None:
        self.event_store.record_event(
            ChannelPointEventInput(
                streamer=StreamerRef(login=login, channel_id=channel_id),
                event_type=event_type,
                source=source,
                occurred_at=to_datetime(self.clock() if now is None else now),
                **fields,
            )
        )

    # ==================== Configuration Sync ====================

    async def sync_streamers(self) -> None:
        """Align the state map with the configured streamer list."""
        configured = self.config.get_streamers()

        for name in configured:
            if name not in self.states:
                channel_id = await self.client.resolve_channel_id(name)
                self.states[name] = StreamerState(name=name, channel_id=channel_id)
                if not channel_id:
                    logger.warning(f"Could not get channel ID for {name}")

            state = self.states[name]
            self.event_store.register_streamer(StreamerRef(login=state.name, channel_id=state.channel_id))

        for name in list(self.states):
            if name not in configured:
                del self.states[name]
                logger.info(f"Stopped tracking {name}")

    # ==================== PubSub Subscriptions ====================

    async def subscribe_to_points_topic(self, user_id: str | None) -> None:
        if not user_id:
            logger.warning("No user ID available, skipping user-level PubSub topic")
            logger.info("Claim bonuses will be detected via periodic channel points context checks")
            return

        try:
            await self.pubsub.listen(TopicType.COMMUNITY_POINTS_USER.topic(user_id), requires_auth=True)
            logger.info(f"Subscribed to channel points topic for user {user_id}")
        except Exception as e:
            logger.error(f"Failed to subscribe to user topic: {e}")
            logger.warning("Claim bonuses will be detected via periodic channel points context checks")

    async def subscribe_to_streamer(self, state: StreamerState) -> None:
        if not state.channel_id:
            return

        try:
            await self.pubsub.listen(TopicType.VIDEO_PLAYBACK_BY_ID.topic(state.channel_id))
            logger.info(f"Subscribed to stream status for {state.name}")
        except Exception as e:
            logger.error(f"Failed to subscribe to {state.name}: {e}")

    # ==================== Liveness ====================

    async def check_streamer_online(
        self, state: StreamerState, source: EventSource = EventSource.GQL_STREAM
    ) -> None:
        """Confirm liveness through GQL; the only path that marks a channel live."""
        if not state.channel_id:
            return

        now = self.clock()
        if state.in_offline_debounce(now, self.offline_debounce):
            logger.debug(f"Skipping online check for {state.name} (offline debounce)")
            return

        info = await self.client.get_stream_info(state.name)
        now = self.clock()

        if info is not None:
            state.apply_stream_info(info)
            if state.set_online(now):
                self.record(
                    EventType.STREAM_UP,
                    source,
                    login=state.name,
                    channel_id=state.channel_id,
                    now=now,
                    broadcast_id=state.stream.broadcast_id,
                    title=state.stream.title,
                    game=state.stream.game,
                    viewers_count=state.stream.viewers,
                )
                logger.info(
                    f"{state.name} went LIVE: {state.stream.title!r} "
                    f"({state.stream.game or 'no category'}, {state.stream.viewers} viewers)"
                )

            if not state.stream.spade_url:
                spade_url = await self.client.get_spade_url(state.name)
                if spade_url:
                    state.stream.spade_url = spade_url
                else:
                    logger.warning(f"Could not fetch spade URL for {state.name}")
            return

        if state.is_live:
            previous = state.set_offline(now)
            self.record(
                EventType.STREAM_DOWN,
                EventSource.GQL_STREAM,
                login=state.name,
                channel_id=state.channel_id,
                now=now,
                broadcast_id=previous.broadcast_id,
                title=previous.title,
                game=previous.game,
                viewers_count=previous.viewers,
            )
            logger.info(f"{state.name} went OFFLINE (verified via API)")
        else:
            state.reset_stream()

    # ==================== Claims ====================

    async def claim_bonus(self, channel_id: str, claim_id: str, source: EventSource) -> None:
        """Attempt a claim, recording attempt and outcome. Never raises."""
        streamer = self.get(channel_id)
        login = streamer.name if streamer else None
        label = login or channel_id

        self.record(EventType.CLAIM_ATTEMPT, source, login=login, channel_id=channel_id, claim_id=claim_id)

        try:
            result = await self.client.claim_bonus(channel_id, claim_id)
        except Exception as e:
            self.record(
                EventType.CLAIM_FAILED,
                source,
                login=login,
                channel_id=channel_id,
                claim_id=claim_id,
                payload={"reason": "exception", "error": str(e)},
            )
            logger.exception(f"Failed to claim bonus for {label}: {e}")
            return

        if not result.ok:
            payload: dict[str, Any] = {"reason": result.reason}
            if result.errors:
                payload["errors"] = result.errors
            self.record(
                EventType.CLAIM_FAILED,
                source,
                login=login,
                channel_id=channel_id,
                claim_id=claim_id,
                payload=payload,
            )
            logger.warning(f"Failed to claim bonus for {label}: {result.reason}")
            return

        self.record(EventType.CLAIM_SUCCESS, source, login=login, channel_id=channel_id, claim_id=claim_id)
        logger.info(f"Claimed bonus for {label} (via {source.value})")

    # ==================== Context Refresh ====================

    async def refresh_context(self, state: StreamerState) -> None:
        """Slow-tick poll of balance, multipliers and any pending claim."""
        state.last_context_refresh = self.clock()

        if not state.channel_id:
            logger.debug(f"Skipping {state.name}: no channel ID")
            return

        context = await self.client.get_channel_points_context(state.name)
        if context is None:
            return

        state.apply_context(context)
        self.record(
            EventType.CONTEXT_SNAPSHOT,
            EventSource.GQL_CONTEXT,
            login=state.name,
            channel_id=state.channel_id,
            balance_after=context.balance,
            payload={"activeMultipliers": context.active_multipliers},
        )

        if context.available_claim_id:
            logger.info(f"Found available claim for {state.name} via context check")
            self.record(
                EventType.CLAIM_AVAILABLE,
                EventSource.GQL_CONTEXT,
                login=state.name,
                channel_id=state.channel_id,
                claim_id=context.available_claim_id,
            )
            await self.claim_bonus(state.channel_id, context.available_claim_id, EventSource.GQL_CONTEXT)
