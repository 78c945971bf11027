"""Twitch device-code login and token state for the miner."""

from __future__ import annotations

import asyncio
import logging
import secrets
import string
import time
from collections.abc import Callable
from dataclasses import dataclass

import httpx

from miner.core.constants import (
    ACTIVATE_URL,
    CLIENT_ID,
    OAUTH_DEVICE_URL,
    OAUTH_SCOPES,
    OAUTH_TOKEN_URL,
    USER_AGENT,
)
from miner.miner_config import MinerConfigStore
from miner.models import AuthStatus, DeviceCode
from miner.twitch_client import TwitchClient

logger = logging.getLogger(__name__)

DEVICE_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:device_code"
_DEVICE_ID_ALPHABET = string.ascii_lowercase + string.digits


def generate_device_id() -> str:
    return "".join(secrets.choice(_DEVICE_ID_ALPHABET) for _ in range(32))


class DeviceFlowError(Exception):
    pass


@dataclass
class PendingAuth:
    device_code: str
    user_code: str
    interval: int
    expires_at: float
    task: asyncio.Task | None = None


class TwitchAuth:
    def __init__(
        self,
        config: MinerConfigStore,
        client: TwitchClient,
        *,
        http: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.client = client
        self.clock = clock
        self.username: str | None = None
        self.device_id = generate_device_id()
        self.pending: PendingAuth | None = None
        self._http = http or httpx.AsyncClient(timeout=20.0)

    async def close(self) -> None:
        self.cancel_pending_auth()
        await self._http.aclose()

    def _headers(self) -> dict[str, str]:
        return {
            "Accept": "application/json",
            "Client-Id": CLIENT_ID,
            "User-Agent": USER_AGENT,
            "X-Device-Id": self.device_id,
        }

    # ==================== Token State ====================

    def get_auth_token(self) -> str | None:
        return self.config.get_auth_token()

    def get_user_id(self) -> str | None:
        return self.config.get_user_id()

    def get_device_id(self) -> str:
        return self.device_id

    async def validate_token(self) -> bool:
        """Validate the stored token, refreshing the cached user id and login."""
        token = self.get_auth_token()
        if not token:
            return False

        validation = await self.client.validate_token(token)
        if validation is None:
            return False

        self.config.set_user_id(validation.user_id)
        self.username = validation.login or None
        return True

    async def logout(self) -> None:
        self.cancel_pending_auth()
        self.config.set_auth_token(None)
        self.config.set_user_id(None)
        self.username = None
        logger.info("Logged out")

    def get_status(self) -> AuthStatus:
        pending = self.pending
        return AuthStatus(
            authenticated=bool(self.get_auth_token()),
            user_id=self.get_user_id(),
            username=self.username,
            pending_login=pending is not None,
            user_code=pending.user_code if pending else None,
            verification_uri=ACTIVATE_URL if pending else None,
            expires_at=pending.expires_at if pending else None,
        )

    # ==================== Device Flow ====================

    async def start_device_flow(self) -> DeviceCode:
        """Request a device code and start polling for the token in the background."""
        self.cancel_pending_auth()
        logger.info("Starting device authorization flow")

        try:
            response = await self._http.post(
                OAUTH_DEVICE_URL,
                headers=self._headers(),
                data={"client_id": CLIENT_ID, "scopes": OAUTH_SCOPES},
            )
        except httpx.HTTPError as e:
            raise DeviceFlowError(f"Device flow request failed: {e}") from e

        if response.status_code != 200:
            logger.error(f"Device flow request failed: HTTP {response.status_code} {response.text[:200]}")
            raise DeviceFlowError(f"Device flow request failed: {response.status_code}")

        data = response.json()
        device = DeviceCode(
            device_code=data["device_code"],
            user_code=data["user_code"],
            verification_uri=data.get("verification_uri", ACTIVATE_URL),
            expires_in=int(data.get("expires_in", 1800)),
            interval=int(data.get("interval", 5)),
        )
        logger.info(f"Visit {device.verification_uri} and enter code {device.user_code}")

        self.pending = PendingAuth(
            device_code=device.device_code,
            user_code=device.user_code,
            interval=device.interval,
            expires_at=self.clock() + device.expires_in,
        )
        self.pending.task = asyncio.create_task(self._poll_for_token(self.pending))
        return device

    def cancel_pending_auth(self) -> None:
        pending, self.pending = self.pending, None
        if pending is not None and pending.task is not None and pending.task is not asyncio.current_task():
            pending.task.cancel()

    async def wait_for_login(self) -> bool:
        """Block until the pending login finishes. True if a token was stored."""
        pending = self.pending
        if pending is None or pending.task is None:
            return bool(self.get_auth_token())
        try:
            return await pending.task
        except asyncio.CancelledError:
            return False

    async def _poll_for_token(self, pending: PendingAuth) -> bool:
        while self.pending is pending:
            await asyncio.sleep(pending.interval)
            if self.pending is not pending:
                return False

            if self.clock() >= pending.expires_at:
                logger.warning("Device code expired")
                self.cancel_pending_auth()
                return False

            try:
                response = await self._http.post(
                    OAUTH_TOKEN_URL,
                    headers=self._headers(),
                    data={
                        "client_id": CLIENT_ID,
                        "device_code": pending.device_code,
                        "grant_type": DEVICE_GRANT_TYPE,
                    },
                )
            except httpx.HTTPError as e:
                logger.error(f"Token polling error: {e}")
                continue

            if response.status_code == 400:
                # authorization_pending
                continue

            if response.status_code != 200:
                logger.error(f"Token request failed: HTTP {response.status_code} {response.text[:200]}")
                self.cancel_pending_auth()
                return False

            try:
                access_token = response.json()["access_token"]
            except (ValueError, KeyError):
                logger.error("Token response without access_token")
                self.cancel_pending_auth()
                return False

            logger.info("Got access token")
            self.config.set_auth_token(access_token)
            await self._save_identity(access_token)
            self.cancel_pending_auth()
            return True
        return False

    async def _save_identity(self, token: str) -> None:
        validation = await self.client.validate_token(token)
        if validation is None:
            logger.warning("Could not read user id for the new token")
            return
        self.config.set_user_id(validation.user_id)
        self.username = validation.login or None
        logger.info(f"Logged in as {self.username} ({validation.user_id})")
