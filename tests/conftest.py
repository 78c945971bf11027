"""Shared fixtures and fakes for miner tests."""

from __future__ import annotations

import asyncio
from typing import Any

import httpx
import pytest

from miner.auth import TwitchAuth
from miner.event_store import EventStore
from miner.miner_config import MinerConfig, MinerConfigStore
from miner.models import ChannelPointsContext, ClaimResult, PlaybackToken, StreamInfo, TokenValidation
from miner.service import MinerService, SchedulerConfig
from miner.twitch_client import channel_id_cache
from shared.models.miner import ChannelPointEventInput, EventType, MinerRunInput, StreamerRef

T0 = 1_700_000_000.0


class FakeClock:
    def __init__(self, start: float = T0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FakeTwitchClient:
    """In-memory stand-in for ``TwitchClient``."""

    def __init__(self) -> None:
        self.auth_token: str | None = None
        self.device_id: str | None = None
        self.channel_ids: dict[str, str] = {}
        self.stream_info: dict[str, StreamInfo] = {}
        self.contexts: dict[str, ChannelPointsContext] = {}
        self.spade_url: str | None = "https://spade.example/track"
        self.claim_result: ClaimResult | Exception = ClaimResult(ok=True)
        self.minute_watched_ok = True
        self.valid_tokens: dict[str, TokenValidation] = {}
        self.claims: list[tuple[str, str]] = []
        self.minute_watched_posts: list[tuple[str, str]] = []
        self.stream_info_calls: list[str] = []

    def set_auth_token(self, token: str | None) -> None:
        self.auth_token = token

    def set_device_id(self, device_id: str | None) -> None:
        self.device_id = device_id

    async def validate_token(self, token: str) -> TokenValidation | None:
        return self.valid_tokens.get(token)

    async def resolve_channel_id(self, login: str) -> str | None:
        return self.channel_ids.get(login)

    async def get_stream_info(self, login: str) -> StreamInfo | None:
        self.stream_info_calls.append(login)
        return self.stream_info.get(login)

    async def get_channel_points_context(self, login: str) -> ChannelPointsContext | None:
        return self.contexts.get(login)

    async def get_spade_url(self, login: str) -> str | None:
        return self.spade_url

    async def claim_bonus(self, channel_id: str, claim_id: str) -> ClaimResult:
        self.claims.append((channel_id, claim_id))
        if isinstance(self.claim_result, Exception):
            raise self.claim_result
        return self.claim_result

    async def get_playback_access_token(self, login: str) -> PlaybackToken | None:
        return PlaybackToken(signature="sig", value="value")

    async def fetch_lowest_quality_stream_url(self, login: str, signature: str, value: str) -> str | None:
        return f"https://video.example/{login}/segment.ts"

    async def send_minute_watched_event(self, spade_url: str, payload: str) -> bool:
        self.minute_watched_posts.append((spade_url, payload))
        return self.minute_watched_ok


class FakePubSub:
    """In-memory stand-in for ``PubSubClient``."""

    def __init__(self) -> None:
        self.messages: asyncio.Queue = asyncio.Queue()
        self.auth_token: str | None = None
        self.connected = False
        self.connect_error: Exception | None = None
        self.listened: list[tuple[str, bool]] = []
        self.disconnects = 0

    def set_auth_token(self, token: str | None) -> None:
        self.auth_token = token

    @property
    def is_connected(self) -> bool:
        return self.connected

    async def connect(self) -> None:
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False
        self.disconnects += 1

    async def listen(self, topic: str, requires_auth: bool = False) -> None:
        self.listened.append((topic, requires_auth))


class RecordingRepository:
    """Captures every operation the event store applies."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, Any]] = []
        self.fail_on: set[str] = set()

    def _maybe_fail(self, name: str) -> None:
        if name in self.fail_on:
            raise RuntimeError(f"{name} failed")

    async def ensure_streamer(self, ref: StreamerRef) -> int:
        self._maybe_fail("ensure_streamer")
        self.calls.append(("ensure_streamer", ref))
        return len(self.calls)

    async def start_run(self, run: MinerRunInput) -> int:
        self._maybe_fail("start_run")
        self.calls.append(("start_run", run))
        return 1

    async def stop_run(self, stop_reason: str = "stopped") -> None:
        self._maybe_fail("stop_run")
        self.calls.append(("stop_run", stop_reason))

    async def record_event(self, event: ChannelPointEventInput) -> int:
        self._maybe_fail("record_event")
        self.calls.append(("record_event", event))
        return len(self.calls)

    @property
    def events(self) -> list[ChannelPointEventInput]:
        return [payload for name, payload in self.calls if name == "record_event"]

    def events_of(self, event_type: EventType) -> list[ChannelPointEventInput]:
        return [e for e in self.events if e.event_type == event_type]

    def event_types(self) -> list[EventType]:
        return [e.event_type for e in self.events]


@pytest.fixture(autouse=True)
def reset_channel_id_cache():
    channel_id_cache.reset()
    yield
    channel_id_cache.reset()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_client() -> FakeTwitchClient:
    client = FakeTwitchClient()
    client.valid_tokens["good-token"] = TokenValidation(user_id="900", login="viewer")
    client.channel_ids.update({"alpha": "1", "bravo": "2", "charlie": "3"})
    return client


@pytest.fixture
def fake_pubsub() -> FakePubSub:
    return FakePubSub()


@pytest.fixture
def repository() -> RecordingRepository:
    return RecordingRepository()


@pytest.fixture
async def event_store(repository: RecordingRepository):
    store = EventStore(repository)
    yield store
    await store.close()


@pytest.fixture
def config_store(tmp_path) -> MinerConfigStore:
    return MinerConfigStore(
        tmp_path / "config.json",
        MinerConfig(auth_token="good-token", streamers=["alpha", "bravo", "charlie"]),
    )


@pytest.fixture
async def auth(config_store: MinerConfigStore, fake_client: FakeTwitchClient):
    http = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
    twitch_auth = TwitchAuth(config_store, fake_client, http=http, clock=FakeClock())  # type: ignore[arg-type]
    yield twitch_auth
    await twitch_auth.close()


@pytest.fixture
def spacing_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
async def service(auth, config_store, fake_client, fake_pubsub, event_store, clock, spacing_sleep):
    scheduler = SchedulerConfig(context_refresh_interval=3600.0, minute_watched_interval=3600.0)
    miner = MinerService(
        auth,
        config_store,
        fake_client,  # type: ignore[arg-type]
        fake_pubsub,  # type: ignore[arg-type]
        event_store,
        scheduler,
        clock=clock,
        sleep=spacing_sleep,
    )
    yield miner
    await miner.stop()
    await event_store.close()
