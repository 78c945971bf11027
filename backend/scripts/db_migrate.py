"""Apply the miner's SQL migrations outside the service.

Usage:
    python scripts/db_migrate.py          # Apply pending migrations
    python scripts/db_migrate.py --dry    # List pending migrations only
"""

import asyncio
import logging
import os
import sys
from pathlib import Path

# Ensure backend/ is on sys.path so shared.* is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from dotenv import load_dotenv

from shared.database import DatabaseManager, PoolConfig
from shared.migrations.runner import MigrationRunner

load_dotenv(Path(__file__).resolve().parent.parent / "miner" / ".env")

logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")


async def main() -> None:
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        print("ERROR: DATABASE_URL not set. Check miner/.env or environment variables.")
        sys.exit(1)

    db = DatabaseManager(database_url, PoolConfig.for_service("scripts"))
    await db.connect()

    try:
        runner = MigrationRunner(db.pool)

        if "--dry" in sys.argv:
            pending = await runner.pending()
            print(f"Pending: {len(pending)}")
            for migration in pending:
                print(f"  -> {migration.version}")
            if not pending:
                print("Database is up to date.")
        else:
            applied = await runner.run_pending()
            print(f"Applied {len(applied)} migration(s)." if applied else "No pending migrations.")
    finally:
        await db.disconnect()


if __name__ == "__main__":
    asyncio.run(main())
