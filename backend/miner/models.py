"""Value types returned by the Twitch client and exposed by the miner service."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


# ==================== Twitch API results ====================


@dataclass
class StreamInfo:
    broadcast_id: str
    viewers: int = 0
    title: str | None = None
    game: str | None = None


@dataclass
class ChannelPointsContext:
    balance: int
    available_claim_id: str | None = None
    active_multipliers: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class PlaybackToken:
    signature: str
    value: str


@dataclass
class ClaimResult:
    """Outcome of a ClaimCommunityPoints call.

    ``reason`` is ``not_authenticated`` or ``gql_error`` when ``ok`` is False.
    """

    ok: bool
    reason: str | None = None
    errors: list[Any] | None = None


@dataclass
class TokenValidation:
    user_id: str
    login: str
    expires_in: int = 0


@dataclass
class DeviceCode:
    device_code: str
    user_code: str
    verification_uri: str
    expires_in: int
    interval: int


# ==================== Service results ====================


class StartReason(str, Enum):
    STARTED = "started"
    ALREADY_RUNNING = "already_running"
    MISSING_TOKEN = "missing_token"
    INVALID_TOKEN = "invalid_token"
    PUBSUB_CONNECT_FAILED = "pubsub_connect_failed"
    START_FAILED = "start_failed"


@dataclass
class MinerStartResult:
    success: bool
    reason: StartReason
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"success": self.success, "reason": self.reason.value, "message": self.message}


@dataclass
class StreamerRuntimeState:
    login: str
    is_online: bool
    is_watched: bool


@dataclass
class AuthStatus:
    authenticated: bool
    user_id: str | None = None
    username: str | None = None
    pending_login: bool = False
    user_code: str | None = None
    verification_uri: str | None = None
    expires_at: float | None = None


@dataclass
class MinerStatus:
    running: bool
    starting: bool
    started_at: float | None
    streamers: list[dict[str, Any]]
    tick_count: int
    last_tick: float | None
    pubsub_connected: bool
    user_id: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "starting": self.starting,
            "started_at": self.started_at,
            "streamers": self.streamers,
            "tick_count": self.tick_count,
            "last_tick": self.last_tick,
            "pubsub_connected": self.pubsub_connected,
            "user_id": self.user_id,
        }
