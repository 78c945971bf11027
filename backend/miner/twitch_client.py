"""Twitch GQL and video edge client.

Talks to the undocumented endpoints the web player uses, authenticated with
the viewer's OAuth token from the Android TV device flow:

- GQL persisted queries: channel ids, stream info, channel points, claims,
  playback tokens
- usher / video edge: HLS master and variant playlists
- spade: minute-watched telemetry
"""

from __future__ import annotations

import base64
import json
import logging
import re
import secrets
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import httpx

from miner.core.constants import (
    CLIENT_ID,
    GQL_URL,
    OAUTH_VALIDATE_URL,
    TWITCH_URL,
    USER_AGENT,
    USHER_URL,
    GqlOperation,
)
from miner.errors import GqlError, PersistedQueryNotFound
from miner.models import (
    ChannelPointsContext,
    ClaimResult,
    PlaybackToken,
    StreamInfo,
    TokenValidation,
)
from shared.cache import AsyncTTLCache, cached

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Channel ids never change for a login; keep them around and fall back to the
# last known id when GQL is unavailable.
channel_id_cache = AsyncTTLCache(maxsize=512, ttl=3600)

# The settings JS and spade endpoint are served to desktop browsers only
BROWSER_USER_AGENT = (
    "Mozilla/5.0 (X11; Ubuntu; Linux x86_64; rv:124.0) Gecko/20100101 Firefox/124.0"
)

_CLIENT_VERSION_RE = re.compile(r'twilightBuildID\s*=\s*"([0-9a-fA-F-]{36})"')
_SETTINGS_URL_RE = re.compile(
    r"(https://static\.twitchcdn\.net/config/settings.*?js|https://assets\.twitch\.tv/config/settings.*?\.js)"
)
_SPADE_URL_RE = re.compile(r'"spade_url":"(.*?)"')
_BANDWIDTH_RE = re.compile(r"BANDWIDTH=(\d+)")


def encode_minute_watched_payload(
    channel_id: str, broadcast_id: str, user_id: str, login: str
) -> str:
    """Build the base64 ``data`` form field for a minute-watched POST."""
    events = [
        {
            "event": "minute-watched",
            "properties": {
                "channel_id": channel_id,
                "broadcast_id": broadcast_id,
                "player": "site",
                "user_id": user_id,
                "live": True,
                "channel": login,
            },
        }
    ]
    raw = json.dumps(events, separators=(",", ":"))
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


def parse_lowest_bandwidth_variant(master_playlist: str) -> str | None:
    """Return the variant URL with the smallest BANDWIDTH in an HLS master playlist."""
    lines = [line.strip() for line in master_playlist.splitlines()]
    best_url: str | None = None
    best_bandwidth: int | None = None
    for index, line in enumerate(lines):
        if not line.startswith("#EXT-X-STREAM-INF"):
            continue
        match = _BANDWIDTH_RE.search(line)
        url = next((u for u in lines[index + 1 :] if u and not u.startswith("#")), None)
        if match is None or url is None:
            continue
        bandwidth = int(match.group(1))
        if best_bandwidth is None or bandwidth < best_bandwidth:
            best_bandwidth = bandwidth
            best_url = url
    return best_url


def parse_last_segment(variant_playlist: str) -> str | None:
    """Return the newest segment URL of an HLS media playlist."""
    segments = [
        line.strip()
        for line in variant_playlist.splitlines()
        if line.strip() and not line.startswith("#")
    ]
    return segments[-1] if segments else None


def _error_messages(errors: list[Any]) -> list[str]:
    return [e.get("message", str(e)) if isinstance(e, dict) else str(e) for e in errors]


@dataclass
class RetryPolicy:
    """Retry a call when it raises one of ``retry_on``.

    ``before_retry`` runs between attempts (e.g. refreshing the client version).
    """

    max_attempts: int = 2
    retry_on: tuple[type[Exception], ...] = (PersistedQueryNotFound,)

    async def run(
        self,
        call: Callable[[], Awaitable[T]],
        before_retry: Callable[[], Awaitable[Any]] | None = None,
    ) -> T:
        attempt = 1
        while True:
            try:
                return await call()
            except self.retry_on as e:
                if attempt >= self.max_attempts:
                    raise
                logger.warning(f"Retrying after {type(e).__name__} ({attempt}/{self.max_attempts})")
                if before_retry is not None:
                    await before_retry()
                attempt += 1


class TwitchClient:
    """Client for the Twitch web player APIs.

    Every method degrades to ``None`` / ``False`` / a failed ``ClaimResult``
    instead of raising; errors are logged.
    """

    def __init__(
        self,
        auth_token: str | None = None,
        device_id: str | None = None,
        *,
        http: httpx.AsyncClient | None = None,
        retry_policy: RetryPolicy | None = None,
        timeout: float = 20.0,
    ):
        self.auth_token = auth_token
        self.device_id = device_id
        self.client_version: str | None = None
        self.client_session = secrets.token_hex(16)
        self.retry_policy = retry_policy or RetryPolicy()

        # Shared HTTP client, reuses TCP connections across requests
        self._http = http or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        """Close the shared HTTP client. Call on shutdown."""
        await self._http.aclose()

    def set_auth_token(self, token: str | None) -> None:
        self.auth_token = token or None

    def set_device_id(self, device_id: str | None) -> None:
        self.device_id = device_id

    @property
    def is_authenticated(self) -> bool:
        return bool(self.auth_token)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _gql_headers(self) -> dict[str, str]:
        headers = {
            "Authorization": f"OAuth {self.auth_token}",
            "Client-Id": CLIENT_ID,
            "Client-Session-Id": self.client_session,
            "User-Agent": USER_AGENT,
        }
        if self.client_version:
            headers["Client-Version"] = self.client_version
        if self.device_id:
            headers["X-Device-Id"] = self.device_id
        return headers

    async def _gql_once(self, operation: GqlOperation, variables: dict[str, Any]) -> dict[str, Any]:
        response = await self._http.post(
            GQL_URL, json=operation.payload(variables), headers=self._gql_headers()
        )
        response.raise_for_status()
        try:
            body = response.json()
        except ValueError:
            raise GqlError(operation.value, [{"message": "invalid JSON response"}]) from None
        if not isinstance(body, dict):
            raise GqlError(operation.value, [{"message": "unexpected response shape"}])

        errors = body.get("errors")
        if errors:
            if "PersistedQueryNotFound" in _error_messages(errors):
                raise PersistedQueryNotFound(operation.value, errors)
            raise GqlError(operation.value, errors)

        data = body.get("data")
        if not isinstance(data, dict):
            raise GqlError(operation.value, [{"message": "response missing data"}])
        return data

    async def _gql(self, operation: GqlOperation, variables: dict[str, Any]) -> dict[str, Any]:
        """Run a persisted query. Raises ``GqlError`` or ``httpx.HTTPError``."""
        return await self.retry_policy.run(
            lambda: self._gql_once(operation, variables),
            before_retry=self.refresh_client_version,
        )

    async def refresh_client_version(self) -> str | None:
        """Scrape the current web client build id from the Twitch homepage."""
        try:
            response = await self._http.get(TWITCH_URL, headers={"User-Agent": BROWSER_USER_AGENT})
            if response.status_code != 200:
                logger.debug(f"Client version refresh failed: HTTP {response.status_code}")
                return self.client_version
            match = _CLIENT_VERSION_RE.search(response.text)
            if match is None:
                logger.debug("Client version refresh failed: build id not found")
                return self.client_version
            self.client_version = match.group(1)
            logger.debug(f"Client version: {self.client_version}")
        except httpx.HTTPError as e:
            logger.warning(f"Client version refresh error: {e}")
        return self.client_version

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    @cached(channel_id_cache, key_func=lambda self, login: f"channel_id:{login.lower()}", retry=1)
    async def _lookup_channel_id(self, login: str) -> str | None:
        data = await self._gql(GqlOperation.GET_ID_FROM_LOGIN, {"login": login.lower()})
        user = data.get("user")
        return str(user["id"]) if user and user.get("id") else None

    async def resolve_channel_id(self, login: str) -> str | None:
        if not self.is_authenticated:
            logger.warning("Cannot resolve channel id - not authenticated")
            return None
        try:
            channel_id = await self._lookup_channel_id(login)
        except (GqlError, httpx.HTTPError) as e:
            logger.error(f"Failed to resolve channel id for {login}: {e}")
            return None

        if channel_id is None:
            logger.info(f"User not found: {login}")
        return channel_id

    async def get_stream_info(self, login: str) -> StreamInfo | None:
        """Return live stream metadata, or None when offline or on error."""
        if not self.is_authenticated:
            return None
        try:
            data = await self._gql(
                GqlOperation.VIDEO_PLAYER_STREAM_INFO_OVERLAY_CHANNEL, {"channel": login.lower()}
            )
        except (GqlError, httpx.HTTPError) as e:
            logger.error(f"Failed to get stream info for {login}: {e}")
            return None

        user = data.get("user") or {}
        stream = user.get("stream")
        if not stream or not stream.get("id"):
            return None

        settings = user.get("broadcastSettings") or stream.get("broadcastSettings") or {}
        game = settings.get("game") or {}
        return StreamInfo(
            broadcast_id=str(stream["id"]),
            viewers=int(stream.get("viewersCount") or 0),
            title=settings.get("title"),
            game=game.get("displayName") or game.get("name"),
        )

    async def get_channel_points_context(self, login: str) -> ChannelPointsContext | None:
        if not self.is_authenticated:
            return None
        try:
            data = await self._gql(
                GqlOperation.CHANNEL_POINTS_CONTEXT, {"channelLogin": login.lower()}
            )
        except (GqlError, httpx.HTTPError) as e:
            logger.error(f"Failed to get channel points context for {login}: {e}")
            return None

        channel = (data.get("community") or {}).get("channel")
        if not channel:
            logger.error(f"Channel points context missing for {login}")
            return None

        points = (channel.get("self") or {}).get("communityPoints") or {}
        claim = points.get("availableClaim") or {}
        return ChannelPointsContext(
            balance=int(points.get("balance") or 0),
            available_claim_id=claim.get("id"),
            active_multipliers=list(points.get("activeMultipliers") or []),
        )

    async def get_playback_access_token(self, login: str) -> PlaybackToken | None:
        if not self.is_authenticated:
            return None
        try:
            data = await self._gql(
                GqlOperation.PLAYBACK_ACCESS_TOKEN,
                {
                    "login": login.lower(),
                    "isLive": True,
                    "isVod": False,
                    "vodID": "",
                    "playerType": "site",
                },
            )
        except (GqlError, httpx.HTTPError) as e:
            logger.error(f"Failed to get playback token for {login}: {e}")
            return None

        token = data.get("streamPlaybackAccessToken") or {}
        signature, value = token.get("signature"), token.get("value")
        if not signature or not value:
            logger.error(f"Playback token missing signature or value for {login}")
            return None
        return PlaybackToken(signature=signature, value=value)

    # ------------------------------------------------------------------
    # Claims
    # ------------------------------------------------------------------

    async def claim_bonus(self, channel_id: str, claim_id: str) -> ClaimResult:
        if not self.is_authenticated:
            logger.warning("Cannot claim bonus - not authenticated")
            return ClaimResult(ok=False, reason="not_authenticated")

        try:
            data = await self._gql(
                GqlOperation.CLAIM_COMMUNITY_POINTS,
                {"input": {"channelID": channel_id, "claimID": claim_id}},
            )
        except GqlError as e:
            return ClaimResult(ok=False, reason="gql_error", errors=e.errors)
        except httpx.HTTPError as e:
            return ClaimResult(ok=False, reason="gql_error", errors=[{"message": str(e)}])

        claim_error = (data.get("claimCommunityPoints") or {}).get("error")
        if claim_error:
            return ClaimResult(ok=False, reason="gql_error", errors=[claim_error])
        return ClaimResult(ok=True)

    # ------------------------------------------------------------------
    # Watching
    # ------------------------------------------------------------------

    async def fetch_lowest_quality_stream_url(
        self, login: str, signature: str, value: str
    ) -> str | None:
        """Resolve the newest low-bitrate segment and HEAD-check it."""
        headers = {"User-Agent": USER_AGENT}
        try:
            master = await self._http.get(
                f"{USHER_URL}/{login.lower()}.m3u8",
                params={"sig": signature, "token": value},
                headers=headers,
            )
            if master.status_code != 200:
                logger.debug(f"Usher playlist for {login}: HTTP {master.status_code}")
                return None
            variant_url = parse_lowest_bandwidth_variant(master.text)
            if variant_url is None:
                return None

            variant = await self._http.get(variant_url, headers=headers)
            if variant.status_code != 200:
                return None
            segment_url = parse_last_segment(variant.text)
            if segment_url is None:
                return None

            head = await self._http.head(segment_url, headers=headers)
            if head.status_code != 200:
                return None
            return segment_url
        except httpx.HTTPError as e:
            logger.debug(f"Stream URL resolution failed for {login}: {e}")
            return None

    async def get_spade_url(self, login: str) -> str | None:
        """Find the telemetry endpoint via the channel page's settings script."""
        headers = {"User-Agent": BROWSER_USER_AGENT}
        try:
            page = await self._http.get(f"{TWITCH_URL}/{login.lower()}", headers=headers)
            settings_match = _SETTINGS_URL_RE.search(page.text)
            if settings_match is None:
                logger.warning(f"Settings script not found on channel page of {login}")
                return None

            settings = await self._http.get(settings_match.group(1), headers=headers)
            spade_match = _SPADE_URL_RE.search(settings.text)
            if spade_match is None:
                logger.warning(f"spade_url not found for {login}")
                return None
            return spade_match.group(1)
        except httpx.HTTPError as e:
            logger.error(f"Something went wrong during extraction of spade_url: {e}")
            return None

    async def send_minute_watched_event(self, spade_url: str, payload: str) -> bool:
        """POST an encoded minute-watched payload. True only on HTTP 204."""
        try:
            response = await self._http.post(
                spade_url, data={"data": payload}, headers={"User-Agent": USER_AGENT}
            )
        except httpx.HTTPError as e:
            logger.debug(f"Minute-watched POST failed: {e}")
            return False
        return response.status_code == 204

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    async def validate_token(self, token: str) -> TokenValidation | None:
        """Check a token against id.twitch.tv. None if invalid or unreachable."""
        try:
            response = await self._http.get(
                OAUTH_VALIDATE_URL, headers={"Authorization": f"OAuth {token}"}
            )
        except httpx.HTTPError as e:
            logger.error(f"Token validation error: {e}")
            return None

        if response.status_code != 200:
            logger.info(f"Token validation failed: HTTP {response.status_code}")
            return None

        try:
            data = response.json()
        except ValueError:
            return None
        if not data.get("user_id"):
            return None
        return TokenValidation(
            user_id=str(data["user_id"]),
            login=data.get("login", ""),
            expires_in=int(data.get("expires_in") or 0),
        )
