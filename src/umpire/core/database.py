"""SQLite database setup and connection management for the review store."""

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import aiosqlite
from loguru import logger

# Database path in user's home directory
DB_PATH = Path.home() / ".umpire" / "umpire.db"

# Current schema version - increment when making schema changes
SCHEMA_VERSION = 2

# Global connection pool (single connection for SQLite)
_db_connection: Optional[aiosqlite.Connection] = None


async def init_db() -> None:
    """Initialize the database, creating tables if they don't exist."""
    global _db_connection

    # Ensure directory exists
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)

    logger.info(f"Initializing database at {DB_PATH}")

    _db_connection = await aiosqlite.connect(str(DB_PATH))
    _db_connection.row_factory = aiosqlite.Row

    # Enable WAL mode for better concurrent read performance
    await _db_connection.execute("PRAGMA journal_mode=WAL")

    # Enable foreign keys
    await _db_connection.execute("PRAGMA foreign_keys = ON")

    await _db_connection.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY,
            applied_at TEXT NOT NULL,
            description TEXT
        )
        """
    )

    async with _db_connection.execute(
        "SELECT MAX(version) as version FROM schema_version"
    ) as cursor:
        row = await cursor.fetchone()
        current_version = row["version"] if row and row["version"] else 0

    await _apply_migrations(current_version)

    await _db_connection.commit()

    logger.info(f"Database initialized successfully (schema version {SCHEMA_VERSION})")


async def _apply_migrations(current_version: int) -> None:
    """Apply database migrations incrementally."""
    if current_version < 1:
        await _migrate_v1()
    if current_version < 2:
        await _migrate_v2()


async def _migrate_v1() -> None:
    """Initial schema - uploaded and recorded videos."""
    logger.info("Applying migration v1: Videos table")

    await _db_connection.executescript(
        """
        CREATE TABLE IF NOT EXISTS videos (
            id TEXT PRIMARY KEY,
            media_path TEXT,
            mime_type TEXT NOT NULL,
            size_bytes INTEGER NOT NULL DEFAULT 0,
            status TEXT NOT NULL DEFAULT 'uploading',
            progress INTEGER NOT NULL DEFAULT 0,
            error TEXT,
            active_mode TEXT NOT NULL DEFAULT 'standard',
            camera_mode_json TEXT NOT NULL,
            video_info_json TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_videos_status ON videos(status);
        CREATE INDEX IF NOT EXISTS idx_videos_mode ON videos(active_mode);
        CREATE INDEX IF NOT EXISTS idx_videos_created_at ON videos(created_at);
        """
    )

    await _db_connection.execute(
        "INSERT OR IGNORE INTO schema_version (version, applied_at, description) VALUES (?, ?, ?)",
        (1, datetime.utcnow().isoformat(), "Videos table with status and camera mode"),
    )

    logger.info("Migration v1 applied successfully")


async def _migrate_v2() -> None:
    """Add analysis_results table for compiled review reports."""
    logger.info("Applying migration v2: Analysis results table")

    await _db_connection.executescript(
        """
        CREATE TABLE IF NOT EXISTS analysis_results (
            video_id TEXT PRIMARY KEY,
            lbw_json TEXT NOT NULL,
            no_ball_json TEXT NOT NULL,
            edge_json TEXT NOT NULL,
            frame_data_json TEXT NOT NULL,
            trajectory_overlay BLOB NOT NULL DEFAULT x'',
            snicko_overlay BLOB NOT NULL DEFAULT x'',
            created_at TEXT NOT NULL,
            updated_at TEXT,
            FOREIGN KEY (video_id) REFERENCES videos(id) ON DELETE CASCADE
        );
        """
    )

    await _db_connection.execute(
        "INSERT OR IGNORE INTO schema_version (version, applied_at, description) VALUES (?, ?, ?)",
        (2, datetime.utcnow().isoformat(), "Compiled analysis results per video"),
    )

    logger.info("Migration v2 applied successfully")


async def close_db() -> None:
    """Close the database connection."""
    global _db_connection
    if _db_connection:
        await _db_connection.close()
        _db_connection = None
        logger.info("Database connection closed")


async def get_db() -> aiosqlite.Connection:
    """Get the database connection.

    Raises:
        RuntimeError: If the database has not been initialized.
    """
    if _db_connection is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _db_connection


def serialize_json(data: Optional[dict | list]) -> Optional[str]:
    """Serialize a dict or list to JSON string for storage."""
    if data is None:
        return None
    return json.dumps(data)


def deserialize_json(data: Optional[str]) -> Optional[dict | list]:
    """Deserialize a JSON string from storage."""
    if data is None:
        return None
    return json.loads(data)


async def get_schema_version() -> int:
    """Get the current schema version."""
    db = await get_db()
    async with db.execute(
        "SELECT MAX(version) as version FROM schema_version"
    ) as cursor:
        row = await cursor.fetchone()
        return row["version"] if row and row["version"] else 0


async def get_database_stats() -> dict[str, Any]:
    """Get database statistics."""
    db = await get_db()

    stats = {
        "schema_version": await get_schema_version(),
        "db_path": str(DB_PATH),
        "db_size_bytes": DB_PATH.stat().st_size if DB_PATH.exists() else 0,
    }

    async with db.execute(
        "SELECT status, COUNT(*) as count FROM videos GROUP BY status"
    ) as cursor:
        rows = await cursor.fetchall()
        stats["videos_by_status"] = {row["status"]: row["count"] for row in rows}

    async with db.execute("SELECT COUNT(*) as count FROM videos") as cursor:
        row = await cursor.fetchone()
        stats["total_videos"] = row["count"]

    async with db.execute("SELECT COUNT(*) as count FROM analysis_results") as cursor:
        row = await cursor.fetchone()
        stats["total_results"] = row["count"]

    return stats
