"""PubSub message handling: dedup and feed-driven state transitions."""

from __future__ import annotations

import logging
from typing import Any

from miner.core.constants import CommunityPointsMessageType, TopicType, VideoPlaybackMessageType
from miner.pubsub import PubSubMessage
from miner.streamers import ChannelMonitor
from shared.models.miner import EventSource, EventType

logger = logging.getLogger(__name__)


class MessageDedup:
    """Drops a message identical to the previous one within ``window`` seconds."""

    def __init__(self, window: float = 0.5):
        self.window = window
        self.last_identifier: str | None = None
        self.last_timestamp: float = 0.0

    def is_duplicate(self, message: PubSubMessage) -> bool:
        identifier = f"{message.message_type}.{message.topic}"
        if identifier == self.last_identifier and message.received_at - self.last_timestamp < self.window:
            return True
        self.last_identifier = identifier
        self.last_timestamp = message.received_at
        return False


class PubSubEventHandler:
    def __init__(
        self,
        monitor: ChannelMonitor,
        dedup: MessageDedup | None = None,
        *,
        stream_up_confirm_delay: float = 120.0,
    ):
        self.monitor = monitor
        self.dedup = dedup or MessageDedup()
        self.stream_up_confirm_delay = stream_up_confirm_delay

    async def handle(self, message: PubSubMessage) -> None:
        if self.dedup.is_duplicate(message):
            logger.debug(f"Skipping duplicate PubSub message {message.message_type} on {message.topic}")
            return

        topic_type = message.topic_type
        if topic_type == TopicType.COMMUNITY_POINTS_USER.value:
            await self._handle_community_points(message)
        elif topic_type == TopicType.VIDEO_PLAYBACK_BY_ID.value:
            await self._handle_video_playback(message)

    # ==================== community-points-user-v1 ====================

    async def _handle_community_points(self, message: PubSubMessage) -> None:
        inner: dict[str, Any] = message.data.get("data") or {}

        if message.message_type == CommunityPointsMessageType.CLAIM_AVAILABLE.value:
            claim = inner.get("claim") or {}
            channel_id, claim_id = claim.get("channel_id"), claim.get("id")
            if not channel_id or not claim_id:
                logger.warning("claim-available message without channel or claim id")
                return

            streamer = self.monitor.get(channel_id)
            logger.info(f"Claim available for {streamer.name if streamer else channel_id}")
            self.monitor.record(
                EventType.CLAIM_AVAILABLE,
                EventSource.PUBSUB,
                login=streamer.name if streamer else None,
                channel_id=channel_id,
                now=message.received_at,
                claim_id=claim_id,
                payload=message.data,
            )
            await self.monitor.claim_bonus(channel_id, claim_id, EventSource.PUBSUB)

        elif message.message_type == CommunityPointsMessageType.POINTS_EARNED.value:
            balance = inner.get("balance") or {}
            point_gain = inner.get("point_gain") or {}
            channel_id = inner.get("channel_id") or balance.get("channel_id")
            reason_code = point_gain.get("reason_code")
            points = int(point_gain.get("total_points") or 0)
            new_balance = balance.get("balance")

            streamer = self.monitor.get(channel_id)
            logger.info(
                f"+{points} points for {streamer.name if streamer else channel_id} "
                f"({reason_code}), balance {new_balance}"
            )

            if channel_id:
                self.monitor.record(
                    EventType.POINTS_EARNED,
                    EventSource.PUBSUB,
                    login=streamer.name if streamer else None,
                    channel_id=channel_id,
                    now=message.received_at,
                    reason_code=reason_code,
                    points_delta=points,
                    balance_after=new_balance,
                    payload=message.data,
                )

            if streamer is not None and new_balance is not None:
                streamer.apply_points_earned(reason_code or "", points, int(new_balance))

    # ==================== video-playback-by-id ====================

    async def _handle_video_playback(self, message: PubSubMessage) -> None:
        streamer = self.monitor.get(message.topic_id)
        if streamer is None:
            return

        now = message.received_at
        if message.message_type == VideoPlaybackMessageType.STREAM_UP.value:
            streamer.record_stream_up_signal(now)
            logger.debug(f"stream-up for {streamer.name}, waiting for verification")

        elif message.message_type == VideoPlaybackMessageType.STREAM_DOWN.value:
            was_live = streamer.is_live
            previous = streamer.set_offline(now)
            if was_live:
                self.monitor.record(
                    EventType.STREAM_DOWN,
                    EventSource.PUBSUB,
                    login=streamer.name,
                    channel_id=streamer.channel_id,
                    now=now,
                    broadcast_id=previous.broadcast_id,
                    title=previous.title,
                    game=previous.game,
                    viewers_count=previous.viewers,
                    payload=message.data,
                )
                logger.info(f"{streamer.name} went OFFLINE")

        elif message.message_type == VideoPlaybackMessageType.VIEWCOUNT.value:
            viewers = message.data.get("viewers")
            if viewers is not None:
                streamer.stream.viewers = int(viewers)

            if streamer.needs_live_confirmation(now, self.stream_up_confirm_delay):
                await self.monitor.check_streamer_online(streamer, source=EventSource.PUBSUB)
