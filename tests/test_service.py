"""End-to-end tests for the miner service using in-memory fakes."""

import asyncio

from miner.errors import PubSubConnectError
from miner.models import ChannelPointsContext, StartReason, StreamInfo
from miner.pubsub import PubSubMessage
from shared.models.miner import EventSource, EventType


async def settle(service, rounds: int = 20) -> None:
    """Let the dispatch loop drain the PubSub queue."""
    for _ in range(rounds):
        await asyncio.sleep(0)
        if service.pubsub.messages.empty():
            await asyncio.sleep(0)


def live_info(name: str) -> StreamInfo:
    return StreamInfo(broadcast_id=f"b-{name}", viewers=100, title=f"{name} stream", game="Chess")


class TestStart:
    async def test_start_subscribes_and_ticks(self, service, fake_pubsub, repository, event_store):
        result = await service.start()
        await event_store.flush()

        assert result.success is True
        assert result.reason == StartReason.STARTED
        assert service.running is True and service.starting is False
        assert service.user_id == "900"
        assert service.tick_count == 1
        assert fake_pubsub.listened == [
            ("community-points-user-v1.900", True),
            ("video-playback-by-id.1", False),
            ("video-playback-by-id.2", False),
            ("video-playback-by-id.3", False),
        ]
        name, run = repository.calls[0]
        assert name == "start_run"
        assert (run.user_id, run.username) == ("900", "viewer")

    async def test_already_running(self, service):
        await service.start()
        result = await service.start()
        assert result.success is True
        assert result.reason == StartReason.ALREADY_RUNNING

    async def test_missing_token(self, service, config_store):
        config_store.set_auth_token(None)
        result = await service.start()

        assert result.success is False
        assert result.reason == StartReason.MISSING_TOKEN
        assert service.get_last_start_result() is result

    async def test_invalid_token_logs_out(self, service, config_store, repository, event_store):
        config_store.set_auth_token("expired")
        result = await service.start()
        await event_store.flush()

        assert result.reason == StartReason.INVALID_TOKEN
        assert config_store.get_auth_token() is None
        assert service.running is False and service.starting is False
        assert repository.calls == []

    async def test_pubsub_failure_rolls_back(self, service, fake_pubsub, repository, event_store):
        fake_pubsub.connect_error = PubSubConnectError("handshake failed")
        result = await service.start()
        await event_store.flush()

        assert result.reason == StartReason.PUBSUB_CONNECT_FAILED
        assert service.running is False
        assert repository.calls[-1] == ("stop_run", "startup_failed")

    async def test_setup_exception_rolls_back(self, service, fake_client, repository, event_store):
        async def broken_lookup(login):
            raise RuntimeError("lookup exploded")

        fake_client.resolve_channel_id = broken_lookup
        result = await service.start()
        await event_store.flush()

        assert result.reason == StartReason.START_FAILED
        assert service.running is False
        assert repository.calls[-1] == ("stop_run", "startup_failed")


class TestScenarios:
    async def test_never_live_channel_only_snapshots(self, service, fake_client, repository, event_store, clock):
        fake_client.contexts["alpha"] = ChannelPointsContext(balance=500)
        config = service.config
        config.remove_streamer("bravo")
        config.remove_streamer("charlie")

        await service.start()
        clock.advance(3600)
        await service.tick()
        await service.watch_tick()
        await event_store.flush()

        assert repository.event_types() == [EventType.CONTEXT_SNAPSHOT, EventType.CONTEXT_SNAPSHOT]
        assert all(e.balance_after == 500 for e in repository.events)
        assert service.states["alpha"].is_live is False
        assert service.watched_logins == set()
        assert service.get_runtime_balance_by_login() == {"alpha": 500}

    async def test_stream_up_then_viewcount_confirms_live(
        self, service, fake_client, fake_pubsub, repository, event_store, clock
    ):
        await service.start()
        fake_client.stream_info["alpha"] = live_info("alpha")

        fake_pubsub.messages.put_nowait(
            PubSubMessage("video-playback-by-id.1", "stream-up", {"type": "stream-up"}, clock.now)
        )
        await settle(service)
        assert service.states["alpha"].is_live is False

        clock.advance(120)
        fake_pubsub.messages.put_nowait(
            PubSubMessage("video-playback-by-id.1", "viewcount", {"type": "viewcount", "viewers": 99}, clock.now)
        )
        await settle(service)
        await event_store.flush()

        state = service.states["alpha"]
        assert state.is_live is True
        assert state.stream.online_at == clock.now
        assert state.stream.watch_streak_missing is True
        [stream_up] = repository.events_of(EventType.STREAM_UP)
        assert stream_up.source == EventSource.PUBSUB
        assert stream_up.streamer.login == "alpha"

    async def test_watch_cap_follows_configured_order(
        self, service, fake_client, repository, event_store, clock, spacing_sleep
    ):
        for name in ("alpha", "bravo", "charlie"):
            fake_client.stream_info[name] = live_info(name)

        await service.start()
        clock.advance(31)
        await service.watch_tick()
        await event_store.flush()

        assert service.watched_logins == {"alpha", "bravo"}
        started = repository.events_of(EventType.WATCH_STARTED)
        assert [e.streamer.login for e in started] == ["alpha", "bravo"]
        assert all(e.source == EventSource.SYSTEM for e in started)
        ticks = repository.events_of(EventType.MINUTE_WATCHED_TICK)
        assert [e.streamer.login for e in ticks] == ["alpha", "bravo"]
        assert len(fake_client.minute_watched_posts) == 2
        assert spacing_sleep.calls == [service.scheduler.minute_watched_interval / 2]

        runtime = {s.login: (s.is_online, s.is_watched) for s in service.get_streamer_runtime_states()}
        assert runtime == {"alpha": (True, True), "bravo": (True, True), "charlie": (True, False)}

    async def test_grace_period_blocks_watching(self, service, fake_client, clock):
        fake_client.stream_info["alpha"] = live_info("alpha")

        await service.start()
        clock.advance(10)
        await service.watch_tick()

        assert service.states["alpha"].is_live is True
        assert service.watched_logins == set()
        assert fake_client.minute_watched_posts == []

    async def test_failed_minute_watched_does_not_advance(
        self, service, fake_client, repository, event_store, clock
    ):
        fake_client.stream_info["alpha"] = live_info("alpha")
        fake_client.minute_watched_ok = False

        await service.start()
        clock.advance(60)
        await service.watch_tick()
        await event_store.flush()

        [failed] = repository.events_of(EventType.MINUTE_WATCHED_TICK_FAILED)
        assert failed.source == EventSource.SPADE
        assert failed.payload == {"success": False}
        assert service.states["alpha"].stream.minute_watched_timestamp == 0

    async def test_minutes_accumulate_between_ticks(self, service, fake_client, clock):
        fake_client.stream_info["alpha"] = live_info("alpha")

        await service.start()
        clock.advance(60)
        await service.watch_tick()
        clock.advance(20)
        await service.watch_tick()

        assert round(service.states["alpha"].stream.minute_watched, 4) == round(20 / 60, 4)

    async def test_stream_down_stops_watching(self, service, fake_client, repository, event_store, clock):
        fake_client.stream_info["alpha"] = live_info("alpha")
        await service.start()
        clock.advance(60)
        await service.watch_tick()

        service.pubsub.messages.put_nowait(
            PubSubMessage("video-playback-by-id.1", "stream-down", {"type": "stream-down"}, clock.now)
        )
        await settle(service)
        clock.advance(20)
        await service.watch_tick()
        await event_store.flush()

        types = repository.event_types()
        assert types.index(EventType.STREAM_DOWN) < types.index(EventType.WATCH_STOPPED)
        assert service.watched_logins == set()


class TestStop:
    async def test_stop_closes_watch_and_run(self, service, fake_client, fake_pubsub, repository, event_store, clock):
        fake_client.stream_info["alpha"] = live_info("alpha")
        await service.start()
        clock.advance(60)
        await service.watch_tick()

        await service.stop()
        await event_store.flush()

        assert service.running is False
        assert fake_pubsub.disconnects == 1
        assert repository.event_types()[-1] == EventType.WATCH_STOPPED
        assert repository.calls[-1] == ("stop_run", "stopped")
        assert service.get_runtime_balance_by_login() == {}
        assert all(not s.is_online for s in service.get_streamer_runtime_states())

    async def test_stop_when_not_running_is_noop(self, service, fake_pubsub):
        await service.stop()
        assert fake_pubsub.disconnects == 0

    async def test_stop_during_startup_cancels_loops(self, service, fake_client, fake_pubsub, repository, event_store):
        gate = asyncio.Event()
        entered = asyncio.Event()

        async def slow_context(login: str):
            entered.set()
            await gate.wait()
            return None

        fake_client.get_channel_points_context = slow_context
        starting = asyncio.create_task(service.start())
        await entered.wait()
        assert service.starting is True

        stopping = asyncio.create_task(service.stop())
        await asyncio.sleep(0)
        gate.set()
        result = await starting
        await stopping
        await event_store.flush()

        assert result.reason == StartReason.STARTED
        assert service.running is False
        assert service._watch_task is None and service._context_task is None
        assert fake_pubsub.disconnects == 1
        assert repository.calls[-1] == ("stop_run", "stopped")

        await service.stop()
        assert fake_pubsub.disconnects == 1
