"""Tests for PubSub dedup and feed-driven transitions."""

import pytest

from miner.events import MessageDedup, PubSubEventHandler
from miner.models import ClaimResult, StreamInfo
from miner.pubsub import PubSubMessage
from miner.state import StreamerState
from miner.streamers import ChannelMonitor
from shared.models.miner import EventSource, EventType

from conftest import T0

POINTS_TOPIC = "community-points-user-v1.900"


def video(message_type: str, channel_id: str = "1", at: float = T0, **data) -> PubSubMessage:
    return PubSubMessage(
        topic=f"video-playback-by-id.{channel_id}",
        message_type=message_type,
        data={"type": message_type, **data},
        received_at=at,
    )


def claim_available(channel_id: str = "1", claim_id: str = "c-1", at: float = T0) -> PubSubMessage:
    return PubSubMessage(
        topic=POINTS_TOPIC,
        message_type="claim-available",
        data={"type": "claim-available", "data": {"claim": {"id": claim_id, "channel_id": channel_id}}},
        received_at=at,
    )


def points_earned(channel_id="1", reason="WATCH", gain=10, balance=1010, at=T0) -> PubSubMessage:
    return PubSubMessage(
        topic=POINTS_TOPIC,
        message_type="points-earned",
        data={
            "type": "points-earned",
            "data": {
                "channel_id": channel_id,
                "balance": {"balance": balance, "channel_id": channel_id},
                "point_gain": {"total_points": gain, "reason_code": reason},
            },
        },
        received_at=at,
    )


@pytest.fixture
def monitor(fake_client, fake_pubsub, event_store, config_store, clock) -> ChannelMonitor:
    monitor = ChannelMonitor(fake_client, fake_pubsub, event_store, config_store, clock=clock)
    monitor.states["alpha"] = StreamerState(name="alpha", channel_id="1")
    return monitor


@pytest.fixture
def handler(monitor) -> PubSubEventHandler:
    return PubSubEventHandler(monitor)


class TestMessageDedup:
    def test_identical_message_within_window_dropped(self):
        dedup = MessageDedup(window=0.5)
        assert dedup.is_duplicate(video("viewcount", at=T0)) is False
        assert dedup.is_duplicate(video("viewcount", at=T0 + 0.4)) is True

    def test_identical_message_after_window_kept(self):
        dedup = MessageDedup(window=0.5)
        assert dedup.is_duplicate(video("viewcount", at=T0)) is False
        assert dedup.is_duplicate(video("viewcount", at=T0 + 0.6)) is False

    def test_different_topic_is_not_duplicate(self):
        dedup = MessageDedup(window=0.5)
        dedup.is_duplicate(video("viewcount", channel_id="1", at=T0))
        assert dedup.is_duplicate(video("viewcount", channel_id="2", at=T0 + 0.1)) is False

    async def test_duplicate_reaches_state_machine_once(self, handler, fake_client):
        # alpha stays offline, so every accepted viewcount triggers a confirmation poll
        await handler.handle(video("viewcount", at=T0, viewers=3))
        await handler.handle(video("viewcount", at=T0 + 0.2, viewers=3))

        assert fake_client.stream_info_calls == ["alpha"]


class TestVideoPlayback:
    async def test_stream_up_alone_never_goes_live(self, handler, monitor, repository, event_store):
        await handler.handle(video("stream-up", at=T0))
        await event_store.flush()

        state = monitor.states["alpha"]
        assert state.is_live is False
        assert state.stream.stream_up_at == T0
        assert repository.events == []

    async def test_viewcount_before_delay_does_not_confirm(self, handler, monitor, fake_client):
        await handler.handle(video("stream-up", at=T0))
        await handler.handle(video("viewcount", at=T0 + 60, viewers=42))

        assert fake_client.stream_info_calls == []
        assert monitor.states["alpha"].stream.viewers == 42

    async def test_viewcount_after_delay_confirms_with_pubsub_source(
        self, handler, monitor, fake_client, clock, repository, event_store
    ):
        fake_client.stream_info["alpha"] = StreamInfo(broadcast_id="b1", viewers=50, title="t", game="g")
        await handler.handle(video("stream-up", at=T0))
        clock.advance(121)
        await handler.handle(video("viewcount", at=clock.now, viewers=50))
        await event_store.flush()

        state = monitor.states["alpha"]
        assert state.is_live is True
        assert state.stream.online_at == clock.now
        assert state.stream.watch_streak_missing is True
        [stream_up] = repository.events_of(EventType.STREAM_UP)
        assert stream_up.source == EventSource.PUBSUB
        assert stream_up.broadcast_id == "b1"

    async def test_stream_down_while_live_records_previous_stream(
        self, handler, monitor, repository, event_store
    ):
        state = monitor.states["alpha"]
        state.apply_stream_info(StreamInfo(broadcast_id="b1", viewers=7, title="t", game="g"))
        state.set_online(T0 - 600)

        await handler.handle(video("stream-down", at=T0))
        await event_store.flush()

        assert state.is_live is False
        assert state.offline_at == T0
        assert state.stream.broadcast_id is None
        [down] = repository.events_of(EventType.STREAM_DOWN)
        assert down.source == EventSource.PUBSUB
        assert (down.broadcast_id, down.viewers_count, down.title) == ("b1", 7, "t")

    async def test_stream_down_while_offline_records_nothing(self, handler, repository, event_store):
        await handler.handle(video("stream-down", at=T0))
        await event_store.flush()
        assert repository.events == []

    async def test_unknown_channel_ignored(self, handler, repository, event_store):
        await handler.handle(video("stream-down", channel_id="77", at=T0))
        await event_store.flush()
        assert repository.events == []


class TestCommunityPoints:
    async def test_claim_available_records_then_claims(self, handler, fake_client, repository, event_store):
        await handler.handle(claim_available())
        await event_store.flush()

        assert fake_client.claims == [("1", "c-1")]
        assert repository.event_types() == [
            EventType.CLAIM_AVAILABLE,
            EventType.CLAIM_ATTEMPT,
            EventType.CLAIM_SUCCESS,
        ]
        assert all(e.claim_id == "c-1" for e in repository.events)
        assert repository.events[0].streamer.login == "alpha"

    async def test_claim_failure_records_reason(self, handler, fake_client, repository, event_store):
        fake_client.claim_result = ClaimResult(ok=False, reason="gql_error", errors=["boom"])
        await handler.handle(claim_available())
        await event_store.flush()

        [failed] = repository.events_of(EventType.CLAIM_FAILED)
        assert failed.payload == {"reason": "gql_error", "errors": ["boom"]}
        assert repository.events_of(EventType.CLAIM_SUCCESS) == []

    async def test_claim_exception_is_recorded_not_raised(self, handler, fake_client, repository, event_store):
        fake_client.claim_result = RuntimeError("network down")
        await handler.handle(claim_available())
        await event_store.flush()

        assert repository.event_types()[1:] == [EventType.CLAIM_ATTEMPT, EventType.CLAIM_FAILED]
        failed = repository.events_of(EventType.CLAIM_FAILED)[0]
        assert failed.payload == {"reason": "exception", "error": "network down"}

    async def test_points_earned_updates_state_and_records(self, handler, monitor, repository, event_store):
        monitor.states["alpha"].set_online(T0 - 600)
        await handler.handle(points_earned(reason="WATCH_STREAK", gain=450, balance=2000))
        await event_store.flush()

        state = monitor.states["alpha"]
        assert state.channel_points == 2000
        assert state.stream.watch_streak_missing is False
        assert state.history["WATCH_STREAK"].amount == 450

        [earned] = repository.events_of(EventType.POINTS_EARNED)
        assert (earned.reason_code, earned.points_delta, earned.balance_after) == ("WATCH_STREAK", 450, 2000)

    async def test_points_for_unknown_channel_recorded_by_id(self, handler, repository, event_store):
        await handler.handle(points_earned(channel_id="55"))
        await event_store.flush()

        [earned] = repository.events_of(EventType.POINTS_EARNED)
        assert earned.streamer.channel_id == "55"
        assert earned.streamer.login is None
