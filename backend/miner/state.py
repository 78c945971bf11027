"""Per-channel runtime state and its transitions.

Everything here is synchronous and clock-free: callers pass ``now`` (epoch
seconds) so transitions can be driven deterministically. Network I/O lives in
``miner.streamers``.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import asdict, dataclass, field
from typing import Any

from miner.core.constants import WATCH_STREAK_REASON
from miner.models import ChannelPointsContext, StreamInfo


@dataclass
class StreamData:
    """Data for the current broadcast. Reset whenever the channel goes offline."""

    broadcast_id: str | None = None
    title: str | None = None
    game: str | None = None
    viewers: int = 0
    spade_url: str | None = None
    stream_up_at: float = 0.0  # unconfirmed PubSub signal
    online_at: float = 0.0  # confirmed live, starts the watch grace period
    minute_watched: float = 0.0
    minute_watched_timestamp: float = 0.0
    watch_streak_missing: bool = False


@dataclass
class HistoryEntry:
    counter: int = 0
    amount: int = 0


@dataclass
class StreamerState:
    name: str
    channel_id: str | None = None
    is_live: bool = False
    offline_at: float = 0.0
    channel_points: int = 0
    starting_points: int | None = None
    active_multipliers: list[dict[str, Any]] = field(default_factory=list)
    history: dict[str, HistoryEntry] = field(default_factory=dict)
    last_context_refresh: float = 0.0
    stream: StreamData = field(default_factory=StreamData)

    # ==================== Liveness ====================

    def record_stream_up_signal(self, now: float) -> None:
        """Remember a PubSub stream-up. Never marks the channel live by itself."""
        self.stream.stream_up_at = now

    def needs_live_confirmation(self, now: float, confirm_after: float = 120.0) -> bool:
        return not self.is_live and now - self.stream.stream_up_at >= confirm_after

    def in_offline_debounce(self, now: float, window: float = 60.0) -> bool:
        return self.offline_at > 0 and now - self.offline_at < window

    def apply_stream_info(self, info: StreamInfo) -> None:
        self.stream.broadcast_id = info.broadcast_id
        self.stream.title = info.title
        self.stream.game = info.game
        self.stream.viewers = info.viewers

    def set_online(self, now: float) -> bool:
        """Confirm the channel live. Returns False if it already was."""
        if self.is_live:
            return False
        self.is_live = True
        self.stream.online_at = now
        self.stream.watch_streak_missing = True
        self.stream.minute_watched = 0.0
        self.stream.minute_watched_timestamp = 0.0
        return True

    def set_offline(self, now: float) -> StreamData:
        """Mark the channel offline and reset stream data.

        Returns the stream data as it was, for recording the stream_down event.
        """
        previous = self.stream
        self.is_live = False
        self.offline_at = now
        self.stream = StreamData()
        return previous

    def reset_stream(self) -> None:
        self.stream = StreamData()

    # ==================== Points ====================

    def apply_points_earned(self, reason_code: str, amount: int, balance: int) -> None:
        self.channel_points = balance
        if reason_code == WATCH_STREAK_REASON:
            self.stream.watch_streak_missing = False

        entry = self.history.setdefault(reason_code, HistoryEntry())
        entry.counter += 1
        entry.amount += amount

    def apply_context(self, context: ChannelPointsContext) -> None:
        if self.starting_points is None:
            self.starting_points = context.balance
        self.channel_points = context.balance
        self.active_multipliers = list(context.active_multipliers)

    # ==================== Watching ====================

    def record_minute_watched(self, now: float) -> float:
        """Advance the watched counter by wall time since the previous success.

        Returns the minutes added (zero on the first tick of a broadcast).
        """
        added = 0.0
        if self.stream.minute_watched_timestamp > 0:
            added = max(now - self.stream.minute_watched_timestamp, 0.0) / 60
            self.stream.minute_watched += added
        self.stream.minute_watched_timestamp = now
        return added

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def find_streamer_by_channel_id(
    states: Iterable[StreamerState], channel_id: str | None
) -> StreamerState | None:
    if not channel_id:
        return None
    for state in states:
        if state.channel_id == channel_id:
            return state
    return None
