"""Repository for streamers, miner_runs, stream_sessions, channel_point_events
and balance_samples tables."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

import asyncpg

from shared.cache import _MISSING, AsyncTTLCache
from shared.models.miner import (
    ChannelPointEventInput,
    EventType,
    MinerRunInput,
    StreamerRef,
)

logger = logging.getLogger(__name__)


def serialize_payload(payload: dict[str, Any] | None) -> str:
    """Encode an event payload for the JSONB column."""
    if payload is None:
        return "{}"
    try:
        return json.dumps(payload)
    except (TypeError, ValueError):
        return json.dumps({"serializationError": True})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EventRepository:
    """SQL operations backing the channel-point event log.

    Tracks the active miner run id in-process so that every event written
    during a run is tagged with it, and caches the open stream session per
    streamer.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool
        self.active_run_id: int | None = None
        self._session_cache = AsyncTTLCache(maxsize=256, ttl=300)

    # ==================== Streamers ====================

    async def ensure_streamer(
        self, ref: StreamerRef, conn: asyncpg.Connection | None = None
    ) -> int:
        """Find or create the streamer row, filling in missing identifiers.

        Lookup is by channel id first, then by login.
        """
        ref = ref.normalized()
        if ref.login is None and ref.channel_id is None:
            raise ValueError("Streamer reference requires login or channel_id")

        if conn is None:
            async with self.pool.acquire() as conn:
                return await self._ensure_streamer(conn, ref)
        return await self._ensure_streamer(conn, ref)

    async def _ensure_streamer(self, conn: asyncpg.Connection, ref: StreamerRef) -> int:
        if ref.channel_id:
            streamer_id = await conn.fetchval(
                """
                UPDATE streamers
                SET login = COALESCE($2, login), updated_at = NOW()
                WHERE channel_id = $1
                RETURNING id
                """,
                ref.channel_id,
                ref.login,
            )
            if streamer_id is not None:
                return int(streamer_id)

        if ref.login:
            streamer_id = await conn.fetchval(
                """
                UPDATE streamers
                SET channel_id = COALESCE($2, channel_id), updated_at = NOW()
                WHERE login = $1
                RETURNING id
                """,
                ref.login,
                ref.channel_id,
            )
            if streamer_id is not None:
                return int(streamer_id)

        streamer_id = await conn.fetchval(
            """
            INSERT INTO streamers (login, channel_id)
            VALUES ($1, $2)
            RETURNING id
            """,
            ref.login,
            ref.channel_id,
        )
        if streamer_id is None:
            raise ValueError("Failed to upsert streamer: no ID returned")
        return int(streamer_id)

    # ==================== Miner Runs ====================

    async def start_run(self, run: MinerRunInput) -> int:
        """Open a miner run. Returns the already-active run id if there is one.

        Runs left open by a previous process are closed as ``orphaned``.
        """
        if self.active_run_id is not None:
            return self.active_run_id

        started_at = run.started_at or _utcnow()
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                orphaned = await conn.execute(
                    """
                    UPDATE miner_runs
                    SET stopped_at = $1, stop_reason = 'orphaned'
                    WHERE stopped_at IS NULL
                    """,
                    started_at,
                )
                if orphaned != "UPDATE 0":
                    logger.warning("Closed orphaned miner run(s): %s", orphaned)

                run_id = await conn.fetchval(
                    """
                    INSERT INTO miner_runs (started_at, start_reason, user_id, username)
                    VALUES ($1, $2, $3, $4)
                    RETURNING id
                    """,
                    started_at,
                    run.start_reason,
                    run.user_id,
                    run.username,
                )
        if run_id is None:
            raise ValueError("Failed to start miner run: no ID returned")

        self.active_run_id = int(run_id)
        return self.active_run_id

    async def stop_run(self, stop_reason: str = "stopped") -> None:
        """Close the active miner run, if any."""
        if self.active_run_id is None:
            return

        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE miner_runs
                SET stopped_at = $1, stop_reason = $2
                WHERE id = $3
                """,
                _utcnow(),
                stop_reason,
                self.active_run_id,
            )
        self.active_run_id = None
        self._session_cache.clear()

    # ==================== Stream Sessions ====================

    async def find_open_session_id(
        self, conn: asyncpg.Connection, streamer_id: int
    ) -> int | None:
        cache_key = f"open:{streamer_id}"
        cached = self._session_cache.get(cache_key)
        if cached is not _MISSING:
            return cached

        session_id = await conn.fetchval(
            """
            SELECT id FROM stream_sessions
            WHERE streamer_id = $1 AND ended_at IS NULL
            ORDER BY started_at DESC
            LIMIT 1
            """,
            streamer_id,
        )
        if session_id is None:
            return None

        self._session_cache.set(cache_key, int(session_id))
        return int(session_id)

    async def _open_session(
        self,
        conn: asyncpg.Connection,
        streamer_id: int,
        event: ChannelPointEventInput,
        occurred_at: datetime,
    ) -> int:
        """Enrich the open session, or start a new one."""
        session_id = await self.find_open_session_id(conn, streamer_id)
        if session_id is not None:
            await conn.execute(
                """
                UPDATE stream_sessions
                SET broadcast_id = COALESCE($2, broadcast_id),
                    title = COALESCE($3, title),
                    game = COALESCE($4, game)
                WHERE id = $1
                """,
                session_id,
                event.broadcast_id,
                event.title,
                event.game,
            )
            return session_id

        session_id = await conn.fetchval(
            """
            INSERT INTO stream_sessions (streamer_id, started_at, broadcast_id, title, game)
            VALUES ($1, $2, $3, $4, $5)
            RETURNING id
            """,
            streamer_id,
            occurred_at,
            event.broadcast_id,
            event.title,
            event.game,
        )
        if session_id is None:
            raise ValueError("Failed to create stream session: no ID returned")
        return int(session_id)

    async def _close_session(
        self, conn: asyncpg.Connection, session_id: int, ended_at: datetime
    ) -> None:
        await conn.execute(
            "UPDATE stream_sessions SET ended_at = $1 WHERE id = $2 AND ended_at IS NULL",
            ended_at,
            session_id,
        )

    # ==================== Event Recording ====================

    async def record_event(self, event: ChannelPointEventInput) -> int:
        """Append one event and update derived state in a single transaction.

        ``stream_up`` opens (or enriches) the streamer's session, ``stream_down``
        closes it, and a known ``balance_after`` upserts a balance sample.
        Returns the new event id.
        """
        occurred_at = event.occurred_at or _utcnow()
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                streamer_id = await self._ensure_streamer(conn, event.streamer.normalized())
                session_id = await self.find_open_session_id(conn, streamer_id)

                if event.event_type == EventType.STREAM_UP:
                    session_id = await self._open_session(conn, streamer_id, event, occurred_at)

                event_id = await conn.fetchval(
                    """
                    INSERT INTO channel_point_events (
                        occurred_at, streamer_id, miner_run_id, stream_session_id,
                        event_type, source, reason_code, points_delta, balance_after,
                        claim_id, broadcast_id, viewers_count, payload
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13::jsonb)
                    RETURNING id
                    """,
                    occurred_at,
                    streamer_id,
                    self.active_run_id,
                    session_id,
                    event.event_type.value,
                    event.source.value,
                    event.reason_code,
                    event.points_delta,
                    event.balance_after,
                    event.claim_id,
                    event.broadcast_id,
                    event.viewers_count,
                    serialize_payload(event.payload),
                )
                if event_id is None:
                    raise ValueError("Failed to write channel point event: no ID returned")

                if event.balance_after is not None:
                    await conn.execute(
                        """
                        INSERT INTO balance_samples (streamer_id, sampled_at, balance, source_event_id)
                        VALUES ($1, $2, $3, $4)
                        ON CONFLICT (streamer_id, sampled_at)
                        DO UPDATE SET
                            balance = excluded.balance,
                            source_event_id = excluded.source_event_id
                        """,
                        streamer_id,
                        occurred_at,
                        event.balance_after,
                        event_id,
                    )

                if event.event_type == EventType.STREAM_DOWN and session_id is not None:
                    await self._close_session(conn, session_id, occurred_at)

        # Cache only committed session state
        cache_key = f"open:{streamer_id}"
        if event.event_type == EventType.STREAM_UP and session_id is not None:
            self._session_cache.set(cache_key, session_id)
        elif event.event_type == EventType.STREAM_DOWN:
            self._session_cache.invalidate(cache_key)

        return int(event_id)
