"""SQLite-backed lecture and video catalog.

Holds the video documents the validator reads (qualities, duration) and the
availability status it writes back. Quality records are normalized on the way
in, so legacy field names never reach the rest of the code.
"""

import json
import logging
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable

import aiosqlite

from models.video import Lecture, Quality, Video, VideoStatus, normalize_quality

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = ".segmentry/segmentry.db"


def _qualities_json(qualities: Iterable[Quality | dict]) -> str:
    normalized = [q if isinstance(q, Quality) else normalize_quality(q) for q in qualities]
    return json.dumps([q.to_dict() for q in normalized])


class CatalogStore:
    """Async SQLite store for lectures and their videos."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        self.db: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        """Open the database and create the catalog tables."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self.db = await aiosqlite.connect(str(self.db_path))
        self.db.row_factory = aiosqlite.Row
        await self.db.execute("PRAGMA journal_mode=WAL")

        await self.db.execute("""
            CREATE TABLE IF NOT EXISTS lectures (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                chapter_id TEXT,
                created_at TEXT NOT NULL
            )
        """)
        await self.db.execute("""
            CREATE TABLE IF NOT EXISTS videos (
                id TEXT PRIMARY KEY,
                lecture_id TEXT,
                title TEXT NOT NULL,
                duration REAL NOT NULL DEFAULT 0,
                qualities JSON,
                status TEXT NOT NULL DEFAULT 'unknown',
                status_updated_at TEXT,
                created_at TEXT NOT NULL
            )
        """)
        await self.db.execute("""
            CREATE INDEX IF NOT EXISTS idx_videos_lecture
            ON videos (lecture_id)
        """)
        await self.db.execute("""
            CREATE INDEX IF NOT EXISTS idx_videos_created_at
            ON videos (created_at)
        """)
        await self.db.commit()
        logger.info(f"Catalog store connected: {self.db_path}")

    async def close(self) -> None:
        if self.db:
            await self.db.close()
            self.db = None
            logger.info("Catalog store connection closed")

    def _require_db(self) -> aiosqlite.Connection:
        if self.db is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self.db

    # Lectures

    async def create_lecture(
        self,
        title: str,
        chapter_id: str | None = None,
        lecture_id: str | None = None,
    ) -> Lecture:
        db = self._require_db()
        lecture = Lecture(id=lecture_id or uuid.uuid4().hex, title=title, chapter_id=chapter_id)
        await db.execute(
            "INSERT INTO lectures (id, title, chapter_id, created_at) VALUES (?, ?, ?, ?)",
            (lecture.id, lecture.title, lecture.chapter_id, datetime.now().isoformat()),
        )
        await db.commit()
        logger.info(f"Created lecture {lecture.id}")
        return lecture

    async def get_lecture(self, lecture_id: str) -> Lecture | None:
        db = self._require_db()
        async with db.execute("SELECT * FROM lectures WHERE id = ?", (lecture_id,)) as cursor:
            row = await cursor.fetchone()
            if row is None:
                return None
            return Lecture(id=row["id"], title=row["title"], chapter_id=row["chapter_id"])

    # Videos

    async def create_video(
        self,
        title: str,
        lecture_id: str | None = None,
        duration: float = 0.0,
        qualities: Iterable[Quality | dict] = (),
        video_id: str | None = None,
    ) -> Video:
        """Insert a video. Raw quality dicts are normalized first."""
        db = self._require_db()
        video = Video(
            id=video_id or uuid.uuid4().hex,
            title=title,
            lecture_id=lecture_id,
            duration=float(duration or 0),
            qualities=[q if isinstance(q, Quality) else normalize_quality(q) for q in qualities],
        )
        await db.execute(
            """
            INSERT INTO videos (id, lecture_id, title, duration, qualities, status, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (video.id, video.lecture_id, video.title, video.duration, _qualities_json(video.qualities),
             video.status.value, video.created_at),
        )
        await db.commit()
        logger.info(f"Created video {video.id} in lecture {lecture_id}")
        return video

    async def get_video(self, video_id: str) -> Video | None:
        db = self._require_db()
        async with db.execute("SELECT * FROM videos WHERE id = ?", (video_id,)) as cursor:
            row = await cursor.fetchone()
            return self._row_to_video(row) if row is not None else None

    async def list_videos(self) -> list[Video]:
        """Every video in creation order."""
        db = self._require_db()
        async with db.execute("SELECT * FROM videos ORDER BY created_at ASC, rowid ASC") as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_video(row) for row in rows]

    async def list_lecture_videos(self, lecture_id: str) -> list[Video]:
        db = self._require_db()
        async with db.execute(
            "SELECT * FROM videos WHERE lecture_id = ? ORDER BY created_at ASC, rowid ASC",
            (lecture_id,),
        ) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_video(row) for row in rows]

    async def list_stale_videos(self, limit: int = 20) -> list[Video]:
        """Videos whose status was checked longest ago (never-checked first)."""
        db = self._require_db()
        async with db.execute(
            """
            SELECT * FROM videos
            ORDER BY status_updated_at IS NOT NULL, status_updated_at ASC, created_at ASC
            LIMIT ?
            """,
            (limit,),
        ) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_video(row) for row in rows]

    async def update_video(
        self,
        video_id: str,
        title: str | None = None,
        duration: float | None = None,
        qualities: Iterable[Quality | dict] | None = None,
    ) -> Video | None:
        """Apply an admin edit. Returns the updated video or None if missing."""
        db = self._require_db()
        assignments = []
        params: list[Any] = []
        if title is not None:
            assignments.append("title = ?")
            params.append(title)
        if duration is not None:
            assignments.append("duration = ?")
            params.append(float(duration))
        if qualities is not None:
            assignments.append("qualities = ?")
            params.append(_qualities_json(qualities))

        if assignments:
            params.append(video_id)
            await db.execute(f"UPDATE videos SET {', '.join(assignments)} WHERE id = ?", params)
            await db.commit()
        return await self.get_video(video_id)

    async def update_status(self, video_id: str, status: VideoStatus) -> bool:
        """Write back availability status and stamp ``status_updated_at``."""
        db = self._require_db()
        cursor = await db.execute(
            "UPDATE videos SET status = ?, status_updated_at = ? WHERE id = ?",
            (status.value, datetime.now().isoformat(), video_id),
        )
        await db.commit()
        updated = cursor.rowcount > 0
        await cursor.close()
        return updated

    async def delete_video(self, video_id: str) -> bool:
        db = self._require_db()
        async with db.execute("DELETE FROM videos WHERE id = ? RETURNING id", (video_id,)) as cursor:
            row = await cursor.fetchone()
            await db.commit()
            if row is not None:
                logger.info(f"Deleted video {video_id}")
                return True
            return False

    def _row_to_video(self, row: aiosqlite.Row) -> Video:
        try:
            raw_qualities = json.loads(row["qualities"]) if row["qualities"] else []
        except json.JSONDecodeError:
            logger.warning(f"Failed to parse qualities for video {row['id']}")
            raw_qualities = []

        return Video(
            id=row["id"],
            title=row["title"],
            lecture_id=row["lecture_id"],
            duration=float(row["duration"] or 0),
            qualities=[normalize_quality(q) for q in raw_qualities],
            status=VideoStatus(row["status"] or VideoStatus.UNKNOWN.value),
            status_updated_at=row["status_updated_at"],
            created_at=row["created_at"],
        )


# Module-level singleton
_catalog_store: CatalogStore | None = None


async def get_catalog_store(db_path: str | None = None) -> CatalogStore:
    """Get or create the global CatalogStore singleton."""
    global _catalog_store
    if _catalog_store is None:
        _catalog_store = CatalogStore(db_path or DEFAULT_DB_PATH)
        await _catalog_store.connect()
    return _catalog_store


async def close_catalog_store() -> None:
    global _catalog_store
    if _catalog_store is not None:
        await _catalog_store.close()
        _catalog_store = None
