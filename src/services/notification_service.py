"""Notification persistence and real-time fan-out.

Notifications are stored in SQLite and pushed to connected WebSocket
listeners. Delivery rules: explicit recipients reach only those users; an
empty recipient list is a broadcast, narrowed to admins by ``admin_only`` or
to signed-in non-admins by ``user_only``.
"""

import json
import logging
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Iterable

import aiosqlite

from api.websocket_manager import WebSocketManager
from models.notification import Notification

logger = logging.getLogger(__name__)

NOTIFICATIONS_KEY = "notifications"
DEFAULT_DB_PATH = ".segmentry/segmentry.db"


def should_deliver(payload: dict, user_id: str | None, is_admin: bool) -> bool:
    """Decide whether a live listener receives a notification payload."""
    recipients = payload.get("recipients") or []
    if recipients:
        if not user_id:
            return False
        return any(str(r) == str(user_id) for r in recipients)
    if payload.get("admin_only"):
        return is_admin
    if payload.get("user_only"):
        return bool(user_id) and not is_admin
    return True


class NotificationService:
    """Creates, queries and publishes notifications."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH, ws_manager: WebSocketManager | None = None):
        self.db_path = Path(db_path)
        self.ws_manager = ws_manager
        self.db: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.db = await aiosqlite.connect(str(self.db_path))
        self.db.row_factory = aiosqlite.Row
        await self.db.execute("PRAGMA journal_mode=WAL")
        await self.db.execute("""
            CREATE TABLE IF NOT EXISTS notifications (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                body TEXT,
                lecture_id TEXT,
                video_id TEXT,
                recipients JSON,
                admin_only INTEGER NOT NULL DEFAULT 0,
                user_only INTEGER NOT NULL DEFAULT 0,
                data JSON,
                created_at TEXT NOT NULL
            )
        """)
        await self.db.execute("""
            CREATE INDEX IF NOT EXISTS idx_notifications_created_at
            ON notifications (created_at DESC)
        """)
        await self.db.commit()
        logger.info(f"Notification store connected: {self.db_path}")

    async def close(self) -> None:
        if self.db:
            await self.db.close()
            self.db = None

    def _require_db(self) -> aiosqlite.Connection:
        if self.db is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self.db

    async def create_notification(
        self,
        title: str,
        body: str | None = None,
        lecture_id: str | None = None,
        video_id: str | None = None,
        recipients: Iterable[str] = (),
        admin_only: bool = False,
        user_only: bool = False,
        data: dict | None = None,
        publish: bool = True,
    ) -> Notification:
        """Persist a notification and, unless ``publish`` is False, push it live."""
        db = self._require_db()
        notification = Notification(
            id=uuid.uuid4().hex,
            title=title,
            body=body,
            lecture_id=lecture_id,
            video_id=video_id,
            recipients=[str(r) for r in recipients],
            admin_only=admin_only,
            user_only=user_only,
            data=data or {},
        )
        await db.execute(
            """
            INSERT INTO notifications (
                id, title, body, lecture_id, video_id, recipients, admin_only, user_only, data, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                notification.id,
                notification.title,
                notification.body,
                notification.lecture_id,
                notification.video_id,
                json.dumps(notification.recipients),
                int(notification.admin_only),
                int(notification.user_only),
                json.dumps(notification.data),
                notification.created_at,
            ),
        )
        await db.commit()
        logger.info(f"Created notification {notification.id}: {title}")

        if publish:
            await self.publish_realtime(notification.to_dict())
        return notification

    async def publish_realtime(self, payload: dict) -> int:
        """Fan a payload out to live listeners. Never raises.

        Returns:
            Number of listeners reached
        """
        if self.ws_manager is None:
            return 0
        try:
            return await self.ws_manager.broadcast(
                NOTIFICATIONS_KEY,
                {"type": "notification", "notification": payload},
                predicate=lambda s: should_deliver(payload, s.user_id, s.is_admin),
            )
        except Exception as e:
            logger.warning(f"Realtime notification publish failed: {e}")
            return 0

    async def find_recent(
        self,
        within_seconds: float,
        lecture_id: str | None = None,
        video_id: str | None = None,
        title: str | None = None,
        admin_only: bool | None = None,
    ) -> Notification | None:
        """Most recent notification matching every given filter within the window."""
        db = self._require_db()
        since = (datetime.now() - timedelta(seconds=within_seconds)).isoformat()
        query = "SELECT * FROM notifications WHERE created_at >= ?"
        params: list[Any] = [since]
        if lecture_id is not None:
            query += " AND lecture_id = ?"
            params.append(lecture_id)
        if video_id is not None:
            query += " AND video_id = ?"
            params.append(video_id)
        if title is not None:
            query += " AND title = ?"
            params.append(title)
        if admin_only is not None:
            query += " AND admin_only = ?"
            params.append(int(admin_only))
        query += " ORDER BY created_at DESC LIMIT 1"

        async with db.execute(query, params) as cursor:
            row = await cursor.fetchone()
            return self._row_to_notification(row) if row is not None else None

    async def list_recent(
        self,
        admin: bool = False,
        user_id: str | None = None,
        limit: int = 50,
    ) -> list[Notification]:
        """Notifications visible to the given audience, newest first."""
        db = self._require_db()
        async with db.execute(
            "SELECT * FROM notifications ORDER BY created_at DESC LIMIT ?", (limit * 4,)
        ) as cursor:
            rows = await cursor.fetchall()

        visible = []
        for row in rows:
            notification = self._row_to_notification(row)
            if should_deliver(notification.to_dict(), user_id, admin):
                visible.append(notification)
            if len(visible) >= limit:
                break
        return visible

    async def delete_matching(
        self,
        video_id: str | None = None,
        lecture_id: str | None = None,
        title_prefix: str | None = None,
    ) -> int:
        """Delete notifications matching all given filters. Returns the count."""
        db = self._require_db()
        clauses = []
        params: list[Any] = []
        if video_id is not None:
            clauses.append("video_id = ?")
            params.append(video_id)
        if lecture_id is not None:
            clauses.append("lecture_id = ?")
            params.append(lecture_id)
        if title_prefix is not None:
            clauses.append("title LIKE ?")
            params.append(f"{title_prefix}%")
        if not clauses:
            raise ValueError("delete_matching needs at least one filter")

        cursor = await db.execute(f"DELETE FROM notifications WHERE {' AND '.join(clauses)}", params)
        await db.commit()
        deleted = cursor.rowcount
        await cursor.close()
        if deleted:
            logger.info(f"Deleted {deleted} notification(s)")
        return deleted

    async def count_matching(
        self,
        lecture_id: str | None = None,
        title_prefix: str | None = None,
    ) -> int:
        db = self._require_db()
        query = "SELECT COUNT(*) FROM notifications WHERE 1=1"
        params: list[Any] = []
        if lecture_id is not None:
            query += " AND lecture_id = ?"
            params.append(lecture_id)
        if title_prefix is not None:
            query += " AND title LIKE ?"
            params.append(f"{title_prefix}%")
        async with db.execute(query, params) as cursor:
            row = await cursor.fetchone()
            return row[0] if row else 0

    def _row_to_notification(self, row: aiosqlite.Row) -> Notification:
        def _load(raw: str | None, default):
            try:
                return json.loads(raw) if raw else default
            except json.JSONDecodeError:
                return default

        return Notification(
            id=row["id"],
            title=row["title"],
            body=row["body"],
            lecture_id=row["lecture_id"],
            video_id=row["video_id"],
            recipients=_load(row["recipients"], []),
            admin_only=bool(row["admin_only"]),
            user_only=bool(row["user_only"]),
            data=_load(row["data"], {}),
            created_at=row["created_at"],
        )
