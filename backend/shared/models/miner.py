"""Data models for miner runs, stream sessions and channel-point events."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any


class EventType(str, Enum):
    """Kinds of rows written to ``channel_point_events``."""

    STREAM_UP = "stream_up"
    STREAM_DOWN = "stream_down"
    CLAIM_AVAILABLE = "claim_available"
    CLAIM_ATTEMPT = "claim_attempt"
    CLAIM_SUCCESS = "claim_success"
    CLAIM_FAILED = "claim_failed"
    POINTS_EARNED = "points_earned"
    WATCH_STARTED = "watch_started"
    WATCH_STOPPED = "watch_stopped"
    MINUTE_WATCHED_TICK = "minute_watched_tick"
    MINUTE_WATCHED_TICK_FAILED = "minute_watched_tick_failed"
    CONTEXT_SNAPSHOT = "context_snapshot"


class EventSource(str, Enum):
    """Where an event was observed."""

    PUBSUB = "pubsub"
    GQL_CONTEXT = "gql_context"
    GQL_STREAM = "gql_stream"
    SPADE = "spade"
    SYSTEM = "system"


@dataclass
class StreamerRef:
    """Identifies a streamer by login, channel id, or both."""

    login: str | None = None
    channel_id: str | None = None

    def normalized(self) -> StreamerRef:
        login = (self.login or "").strip().lower() or None
        channel_id = (self.channel_id or "").strip() or None
        return StreamerRef(login=login, channel_id=channel_id)

    @property
    def is_empty(self) -> bool:
        ref = self.normalized()
        return ref.login is None and ref.channel_id is None


@dataclass
class ChannelPointEventInput:
    """A single event to append to the channel-point event log."""

    streamer: StreamerRef
    event_type: EventType
    source: EventSource
    occurred_at: datetime | None = None
    reason_code: str | None = None
    points_delta: int | None = None
    balance_after: int | None = None
    claim_id: str | None = None
    broadcast_id: str | None = None
    viewers_count: int | None = None
    title: str | None = None
    game: str | None = None
    payload: dict[str, Any] | None = None


@dataclass
class MinerRunInput:
    """Values recorded when a miner run begins."""

    start_reason: str
    user_id: str | None = None
    username: str | None = None
    started_at: datetime | None = None
