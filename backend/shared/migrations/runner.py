"""SQL migration runner for the miner schema."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import asyncpg

logger = logging.getLogger(__name__)

VERSIONS_DIR = Path(__file__).resolve().parent / "versions"

# Arbitrary key shared by every process that migrates this database
MIGRATION_LOCK_KEY = 4_345_001


@dataclass(frozen=True)
class Migration:
    version: str
    path: Path

    @property
    def sql(self) -> str:
        return self.path.read_text(encoding="utf-8")


class MigrationRunner:
    """Apply ``NNN_name.sql`` files from ``versions/`` in order, once each.

    Applied versions live in ``schema_migrations``. Each file runs in its own
    transaction under an advisory lock, so two processes booting together
    cannot apply the same file twice.
    """

    TRACKING_TABLE = "schema_migrations"

    def __init__(self, pool: asyncpg.Pool, migrations_dir: Path | None = None) -> None:
        self.pool = pool
        self.migrations_dir = migrations_dir or VERSIONS_DIR

    def discover(self) -> list[Migration]:
        return [Migration(path.stem, path) for path in sorted(self.migrations_dir.glob("*.sql"))]

    async def _ensure_table(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {self.TRACKING_TABLE} (
                version    TEXT PRIMARY KEY,
                applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
            """
        )

    async def applied_versions(self) -> set[str]:
        async with self.pool.acquire() as conn:
            await self._ensure_table(conn)
            rows = await conn.fetch(f"SELECT version FROM {self.TRACKING_TABLE}")  # noqa: S608
        return {row["version"] for row in rows}

    async def pending(self) -> list[Migration]:
        applied = await self.applied_versions()
        return [m for m in self.discover() if m.version not in applied]

    async def run_pending(self) -> list[str]:
        """Apply every pending migration. Returns the versions applied now."""
        applied_now: list[str] = []
        for migration in await self.pending():
            if await self._apply(migration):
                applied_now.append(migration.version)

        if applied_now:
            logger.info(f"Applied {len(applied_now)} migration(s): {', '.join(applied_now)}")
        else:
            logger.info("Database schema is up to date")
        return applied_now

    async def _apply(self, migration: Migration) -> bool:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute("SELECT pg_advisory_xact_lock($1)", MIGRATION_LOCK_KEY)
                already = await conn.fetchval(
                    f"SELECT 1 FROM {self.TRACKING_TABLE} WHERE version = $1",  # noqa: S608
                    migration.version,
                )
                if already:
                    logger.debug(f"Migration {migration.version} applied by another process")
                    return False

                logger.info(f"Applying migration {migration.version}")
                await conn.execute(migration.sql)
                await conn.execute(
                    f"INSERT INTO {self.TRACKING_TABLE} (version) VALUES ($1)",  # noqa: S608
                    migration.version,
                )
        return True
