"""Database migration runner.

The schema version lives in SQLite's ``user_version`` pragma. Version 1 is
the base schema in ``schema.sql``; later versions append to MIGRATIONS.
"""

import logging
from pathlib import Path

import aiosqlite

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).parent / "schema.sql"

# (version, SQL script) applied in order on top of the base schema
MIGRATIONS: list[tuple[int, str]] = []


async def schema_version(db: aiosqlite.Connection) -> int:
    async with db.execute("PRAGMA user_version") as cursor:
        row = await cursor.fetchone()
        return row[0]


async def init_database(db: aiosqlite.Connection) -> None:
    """Create every table and index of the base schema."""
    with open(SCHEMA_PATH) as f:
        schema_sql = f.read()

    await db.executescript(schema_sql)
    await db.execute("PRAGMA user_version = 1")
    await db.commit()


async def run_migrations(db_path: Path | str) -> None:
    """Bring the database at db_path up to the latest schema version.

    Safe to run on every startup. WAL mode lets the heartbeat, deferred
    deliveries and milestone jobs read while another writes.
    """
    async with aiosqlite.connect(db_path) as db:
        await db.execute("PRAGMA journal_mode = WAL")

        version = await schema_version(db)
        if version == 0:
            await init_database(db)
            logger.info(f"Database initialized at {db_path}")
            version = 1

        for target, script in MIGRATIONS:
            if target <= version:
                continue
            await db.executescript(script)
            await db.execute(f"PRAGMA user_version = {target}")
            await db.commit()
            logger.info(f"Migrated database to version {target}")
            version = target
