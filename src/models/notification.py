"""Notification data model."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


@dataclass
class Notification:
    """A persisted notification for admins or learners.

    Empty ``recipients`` means broadcast, narrowed by ``admin_only`` /
    ``user_only``.
    """

    id: str
    title: str
    body: Optional[str] = None
    lecture_id: Optional[str] = None
    video_id: Optional[str] = None
    recipients: list[str] = field(default_factory=list)
    admin_only: bool = False
    user_only: bool = False
    data: dict = field(default_factory=dict)
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "body": self.body,
            "lecture_id": self.lecture_id,
            "video_id": self.video_id,
            "recipients": list(self.recipients),
            "admin_only": self.admin_only,
            "user_only": self.user_only,
            "data": self.data,
            "created_at": self.created_at,
        }
