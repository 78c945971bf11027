"""HTTP status and control server"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from typing import Any

from aiohttp import web

from miner.auth import DeviceFlowError, TwitchAuth
from miner.miner_config import MinerConfigStore
from miner.models import StartReason
from miner.service import MinerService
from shared.database import DatabaseManager

logger = logging.getLogger("Miner.Status")

START_REASON_STATUS = {
    StartReason.MISSING_TOKEN: 400,
    StartReason.INVALID_TOKEN: 400,
    StartReason.PUBSUB_CONNECT_FAILED: 500,
    StartReason.START_FAILED: 500,
}


@dataclass
class Lifecycle:
    state: str
    reason: str | None = None


def derive_lifecycle(service: MinerService, auth: TwitchAuth) -> Lifecycle:
    """Collapse service and auth state into one dashboard-facing lifecycle."""
    if service.running and not service.starting:
        return Lifecycle("running")
    if service.starting:
        return Lifecycle("starting")

    auth_status = auth.get_status()
    if auth_status.pending_login:
        return Lifecycle("authenticating", "auth_pending")

    last = service.get_last_start_result()
    if not auth_status.authenticated:
        if last is not None and last.reason == StartReason.INVALID_TOKEN:
            return Lifecycle("auth_required", "invalid_token")
        return Lifecycle("auth_required", "missing_token")

    if last is not None and last.reason in (StartReason.PUBSUB_CONNECT_FAILED, StartReason.START_FAILED):
        return Lifecycle("error", "startup_failed")
    return Lifecycle("ready")


class StatusServer:
    """Health check plus miner/auth control endpoints"""

    def __init__(
        self,
        service: MinerService,
        auth: TwitchAuth,
        config: MinerConfigStore,
        host: str = "0.0.0.0",
        port: int = 4345,
        db: DatabaseManager | None = None,
    ):
        self.service = service
        self.auth = auth
        self.config = config
        self.db = db
        self.host = host
        self.port = port
        self.app = web.Application()
        self.runner: web.AppRunner | None = None
        self._start_time: float = time.time()
        self._heartbeat_task: asyncio.Task | None = None
        self._setup_routes()

    def _setup_routes(self) -> None:
        self.app.router.add_get("/health", self.handle_health)
        self.app.router.add_get("/miner", self.handle_miner_status)
        self.app.router.add_post("/miner", self.handle_miner_action)
        self.app.router.add_get("/auth", self.handle_auth_status)
        self.app.router.add_post("/auth", self.handle_auth_action)

    @staticmethod
    async def _read_body(request: web.Request) -> dict[str, Any]:
        try:
            body = await request.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    # ==================== Health ====================

    async def handle_health(self, request: web.Request) -> web.Response:
        """Liveness: always 200, database reachability reported alongside"""
        lifecycle = derive_lifecycle(self.service, self.auth)
        return web.json_response(
            {
                "status": "ok",
                "lifecycle": lifecycle.state,
                "reason": lifecycle.reason,
                "database": await self.db.check_health() if self.db else None,
                "uptime_seconds": int(time.time() - self._start_time),
            }
        )

    # ==================== Miner ====================

    async def handle_miner_status(self, request: web.Request) -> web.Response:
        lifecycle = derive_lifecycle(self.service, self.auth)
        last_start = self.service.get_last_start_result()
        return web.json_response(
            {
                **self.service.get_status().to_dict(),
                "lifecycle": lifecycle.state,
                "reason": lifecycle.reason,
                "has_auth_token": bool(self.auth.get_auth_token()),
                "configured_streamers": self.config.get_streamers(),
                "streamer_runtime_states": [asdict(s) for s in self.service.get_streamer_runtime_states()],
                "balances": self.service.get_runtime_balance_by_login(),
                "pending_event_writes": self.service.event_store.pending,
                "last_start_result": last_start.to_dict() if last_start else None,
            }
        )

    async def handle_miner_action(self, request: web.Request) -> web.Response:
        body = await self._read_body(request)
        action = body.get("action")
        value = body.get("value")

        if action == "start":
            result = await self.service.start()
            return web.json_response(result.to_dict(), status=START_REASON_STATUS.get(result.reason, 200))

        if action == "stop":
            await self.service.stop()
            return web.json_response({"success": True, "message": "Miner stopped"})

        if action in ("addStreamer", "removeStreamer"):
            if not isinstance(value, str) or not value.strip():
                return web.json_response({"success": False, "message": "Streamer name is required"}, status=400)
            if action == "addStreamer":
                self.config.add_streamer(value)
                message = f"Added streamer: {value}"
            else:
                self.config.remove_streamer(value)
                message = f"Removed streamer: {value}"
            return web.json_response({"success": True, "message": message})

        return web.json_response({"success": False, "message": "Unknown action"}, status=400)

    # ==================== Auth ====================

    async def handle_auth_status(self, request: web.Request) -> web.Response:
        return web.json_response(asdict(self.auth.get_status()))

    async def handle_auth_action(self, request: web.Request) -> web.Response:
        action = (await self._read_body(request)).get("action")

        if action == "startLogin":
            try:
                device = await self.auth.start_device_flow()
            except DeviceFlowError as e:
                return web.json_response({"success": False, "message": str(e)}, status=500)
            return web.json_response(
                {
                    "success": True,
                    "user_code": device.user_code,
                    "verification_uri": device.verification_uri,
                    "expires_in": device.expires_in,
                }
            )

        if action == "cancelLogin":
            self.auth.cancel_pending_auth()
            return web.json_response({"success": True, "message": "Login cancelled"})

        if action == "validate":
            valid = await self.auth.validate_token()
            return web.json_response({"success": True, "valid": valid})

        if action == "logout":
            await self.auth.logout()
            return web.json_response({"success": True, "message": "Logged out"})

        return web.json_response({"success": False, "message": "Unknown action"}, status=400)

    # ==================== Server ====================

    async def _heartbeat(self) -> None:
        """Periodic heartbeat: log uptime and miner status"""
        while True:
            await asyncio.sleep(300)
            uptime = int(time.time() - self._start_time)
            status = self.service.get_status()
            logger.info(
                f"Heartbeat: uptime={uptime}s, running={status.running}, "
                f"streamers={len(status.streamers)}, pubsub={status.pubsub_connected}, "
                f"pending_writes={self.service.event_store.pending}"
            )

    async def start(self) -> None:
        try:
            self.runner = web.AppRunner(self.app)
            await self.runner.setup()

            site = web.TCPSite(self.runner, self.host, self.port)
            await site.start()

            self._heartbeat_task = asyncio.create_task(self._heartbeat())

            logger.info(f"Status server started on {self.host}:{self.port}")
            logger.info(f"  GET  http://{self.host}:{self.port}/health - Health check")
            logger.info(f"  GET  http://{self.host}:{self.port}/miner  - Miner status")

        except Exception as e:
            logger.exception(f"Failed to start status server: {e}")
            raise

    async def stop(self) -> None:
        if self._heartbeat_task:
            self._heartbeat_task.cancel()
        if self.runner:
            try:
                await self.runner.cleanup()
                logger.info("Status server stopped")
            except Exception as e:
                logger.exception(f"Error stopping status server: {e}")
