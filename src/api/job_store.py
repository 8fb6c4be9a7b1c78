"""SQLite-based persistent storage for validation jobs.

Keeps job identity, status and per-video results on disk so an interrupted
run can be resumed after a restart. Uses aiosqlite for async database
operations. Writes are last-write-wins; there are no transactions spanning
more than one statement.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

import aiosqlite

from models.validation import JobStatus, ValidationJob

logger = logging.getLogger(__name__)

# Default database path
DEFAULT_DB_PATH = ".segmentry/segmentry.db"

# Columns accepted by update_job, with JSON-encoded ones flagged
_UPDATABLE_COLUMNS = {
    "status": False,
    "paused": False,
    "mirror": False,
    "started_at": False,
    "finished_at": False,
    "total_videos": False,
    "processed_videos": False,
    "current_video": True,
    "videos": True,
    "error": False,
    "updated_at": False,
}


class JobStore:
    """Async SQLite validation job storage.

    WebSocket connections and live job state remain in-memory; this store is
    the durable snapshot they are merged over.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize job store with database path.

        Args:
            db_path: Path to SQLite database file. Parent directory
                     will be created if it doesn't exist.
        """
        self.db_path = Path(db_path)
        self.db: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        """Initialize database connection and create schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self.db = await aiosqlite.connect(str(self.db_path))
        self.db.row_factory = aiosqlite.Row

        # Enable WAL mode for better concurrent read performance
        await self.db.execute("PRAGMA journal_mode=WAL")

        await self.db.execute("""
            CREATE TABLE IF NOT EXISTS validation_jobs (
                id TEXT PRIMARY KEY,
                status TEXT NOT NULL DEFAULT 'queued',
                paused INTEGER NOT NULL DEFAULT 0,
                mirror INTEGER NOT NULL DEFAULT 0,
                started_at TEXT,
                finished_at TEXT,
                total_videos INTEGER NOT NULL DEFAULT 0,
                processed_videos INTEGER NOT NULL DEFAULT 0,
                current_video JSON,
                videos JSON,
                error TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        await self.db.execute("""
            CREATE INDEX IF NOT EXISTS idx_validation_jobs_status
            ON validation_jobs (status)
        """)

        await self.db.execute("""
            CREATE INDEX IF NOT EXISTS idx_validation_jobs_created_at
            ON validation_jobs (created_at DESC)
        """)

        await self.db.commit()
        logger.info(f"Job store connected: {self.db_path}")

    async def close(self) -> None:
        """Close database connection."""
        if self.db:
            await self.db.close()
            self.db = None
            logger.info("Job store connection closed")

    def _require_db(self) -> aiosqlite.Connection:
        if self.db is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self.db

    async def create_job(self, job: ValidationJob) -> dict[str, Any]:
        """Persist a new job.

        Args:
            job: Job to insert

        Returns:
            Created job as dict

        Raises:
            RuntimeError: If database is not connected
        """
        db = self._require_db()
        data = job.to_dict()

        await db.execute(
            """
            INSERT INTO validation_jobs (
                id, status, paused, mirror, started_at, finished_at, total_videos,
                processed_videos, current_video, videos, error, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                data["id"],
                data["status"],
                int(data["paused"]),
                int(data["mirror"]),
                data["started_at"],
                data["finished_at"],
                data["total_videos"],
                data["processed_videos"],
                json.dumps(data["current_video"]),
                json.dumps(data["videos"]),
                data["error"],
                data["created_at"],
                data["updated_at"],
            ),
        )
        await db.commit()

        logger.info(f"Created validation job {job.id}")
        return data

    async def get_job(self, job_id: str) -> dict[str, Any] | None:
        """Get a job by ID.

        Returns:
            Job dict or None if not found
        """
        db = self._require_db()
        async with db.execute("SELECT * FROM validation_jobs WHERE id = ?", (job_id,)) as cursor:
            row = await cursor.fetchone()
            if row is None:
                return None
            return self._row_to_dict(row)

    async def update_job(self, job_id: str, **fields: Any) -> bool:
        """Update selected fields of a job.

        Args:
            job_id: Job identifier
            **fields: Column values to set (status, paused, videos, ...).
                ``updated_at`` is refreshed when not supplied.

        Returns:
            True if a row was updated, False if the job does not exist

        Raises:
            RuntimeError: If database is not connected
            ValueError: If an unknown field is passed
        """
        db = self._require_db()
        unknown = set(fields) - set(_UPDATABLE_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown job fields: {sorted(unknown)}")

        fields.setdefault("updated_at", datetime.now().isoformat())

        assignments = []
        params: list[Any] = []
        for name, value in fields.items():
            if isinstance(value, JobStatus):
                value = value.value
            elif isinstance(value, bool):
                value = int(value)
            elif _UPDATABLE_COLUMNS[name]:
                value = json.dumps(value)
            assignments.append(f"{name} = ?")
            params.append(value)
        params.append(job_id)

        cursor = await db.execute(
            f"UPDATE validation_jobs SET {', '.join(assignments)} WHERE id = ?",
            params,
        )
        await db.commit()
        updated = cursor.rowcount > 0
        await cursor.close()

        if updated:
            logger.debug(f"Updated job {job_id}: {', '.join(k for k in fields if k != 'updated_at')}")
        return updated

    async def list_jobs(self, status: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        """List jobs, newest first.

        Args:
            status: Filter by status (optional)
            limit: Max results (default 100)
        """
        db = self._require_db()
        query = "SELECT * FROM validation_jobs"
        params: list[Any] = []
        if status:
            query += " WHERE status = ?"
            params.append(status)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)

        async with db.execute(query, params) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_dict(row) for row in rows]

    async def find_active_job(self) -> dict[str, Any] | None:
        """Return the job interrupted by a restart: running first, then queued."""
        db = self._require_db()
        for status, order in (("running", "started_at"), ("queued", "created_at")):
            async with db.execute(
                f"SELECT * FROM validation_jobs WHERE status = ? ORDER BY {order} DESC LIMIT 1",
                (status,),
            ) as cursor:
                row = await cursor.fetchone()
                if row is not None:
                    return self._row_to_dict(row)
        return None

    async def find_latest_job(self) -> dict[str, Any] | None:
        """Most recent job, preferring one that is running."""
        db = self._require_db()
        async with db.execute(
            """
            SELECT * FROM validation_jobs
            ORDER BY (status = 'running') DESC, COALESCE(started_at, created_at) DESC
            LIMIT 1
            """
        ) as cursor:
            row = await cursor.fetchone()
            return self._row_to_dict(row) if row is not None else None

    async def delete_job(self, job_id: str) -> bool:
        """Delete a job.

        Returns:
            True if deleted, False if not found
        """
        db = self._require_db()
        async with db.execute(
            "DELETE FROM validation_jobs WHERE id = ? RETURNING id", (job_id,)
        ) as cursor:
            row = await cursor.fetchone()
            await db.commit()

            if row is not None:
                logger.info(f"Deleted validation job {job_id}")
                return True
            return False

    async def get_job_count(self, status: str | None = None) -> int:
        """Get count of jobs, optionally filtered by status."""
        db = self._require_db()
        query = "SELECT COUNT(*) FROM validation_jobs"
        params: list[Any] = []
        if status:
            query += " WHERE status = ?"
            params.append(status)

        async with db.execute(query, params) as cursor:
            row = await cursor.fetchone()
            return row[0] if row else 0

    def _row_to_dict(self, row: aiosqlite.Row) -> dict[str, Any]:
        """Convert a database row to a job dict, decoding JSON columns."""
        result: dict[str, Any] = {
            "id": row["id"],
            "status": row["status"],
            "paused": bool(row["paused"]),
            "mirror": bool(row["mirror"]),
            "started_at": row["started_at"],
            "finished_at": row["finished_at"],
            "total_videos": row["total_videos"],
            "processed_videos": row["processed_videos"],
            "error": row["error"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

        for column, default in (("current_video", None), ("videos", [])):
            raw = row[column]
            try:
                value = json.loads(raw) if raw else default
            except json.JSONDecodeError:
                logger.warning(f"Failed to parse {column} for job {row['id']}")
                value = default
            result[column] = value if value is not None else default

        return result


# Module-level singleton
_job_store: JobStore | None = None


async def get_job_store(db_path: str | None = None) -> JobStore:
    """Get or create the global JobStore singleton.

    Creates the database connection if it doesn't exist.

    Example:
        job_store = await get_job_store()
        job = await job_store.get_job("3f2a...")
    """
    global _job_store
    if _job_store is None:
        _job_store = JobStore(db_path or DEFAULT_DB_PATH)
        await _job_store.connect()
    return _job_store


async def close_job_store() -> None:
    """Close the global JobStore connection.

    Call this during application shutdown to properly close the database.
    """
    global _job_store
    if _job_store is not None:
        await _job_store.close()
        _job_store = None
