"""Watch selection: which live channels get simulated viewing this tick."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from miner.state import StreamerState


@dataclass
class WatchDiff:
    started: list[str] = field(default_factory=list)
    stopped: list[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.started and not self.stopped


def is_watchable(state: StreamerState, now: float, grace: float = 30.0) -> bool:
    stream = state.stream
    if not (state.is_live and state.channel_id and stream.broadcast_id and stream.spade_url):
        return False
    return stream.online_at == 0 or now - stream.online_at > grace


def select_streamers_to_watch(
    states: Iterable[StreamerState],
    order: Sequence[str],
    now: float,
    max_watched: int = 2,
    grace: float = 30.0,
) -> list[StreamerState]:
    """Pick up to ``max_watched`` eligible channels by configured priority.

    Channels missing from ``order`` sort after every configured one, keeping
    their relative order.
    """
    priority = {name: index for index, name in enumerate(order)}
    eligible = [s for s in states if is_watchable(s, now, grace)]
    eligible.sort(key=lambda s: priority.get(s.name, len(priority)))
    return eligible[: max(max_watched, 0)]


def diff_watched_logins(previous: Iterable[str], current: Iterable[str]) -> WatchDiff:
    before, after = set(previous), set(current)
    return WatchDiff(started=sorted(after - before), stopped=sorted(before - after))
