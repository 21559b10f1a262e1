"""Unread-comment notifications per user."""

from __future__ import annotations

from dataclasses import dataclass

from cassette_tracker.db import utc_now
from cassette_tracker.models import Comment, UserAccount
from cassette_tracker.services.gateway import PersistenceGateway

MAX_LISTED = 20


@dataclass(frozen=True)
class NotificationSummary:
    unread: list[Comment]
    last_seen_at: str

    @property
    def badge(self) -> str:
        count = len(self.unread)
        if count == 0:
            return ""
        return "9+" if count > 9 else str(count)

    def to_dict(self) -> dict:
        return {
            "unread_count": len(self.unread),
            "badge": self.badge,
            "last_seen_at": self.last_seen_at,
            "comments": [comment.to_dict() for comment in self.unread[:MAX_LISTED]],
        }


def unread_comments(comments: list[Comment], user_id: int, last_seen_at: str) -> list[Comment]:
    """Comments by other users created after the watermark."""

    return [
        comment
        for comment in comments
        if comment.created_by != user_id and comment.created_at > last_seen_at
    ]


class NotificationService:
    def __init__(self, gateway: PersistenceGateway) -> None:
        self.gateway = gateway

    def last_seen(self, user: UserAccount) -> str:
        """Return the watermark, starting it at now for a first visit."""

        last_seen_at = self.gateway.get_last_seen(user.id)
        if last_seen_at is None:
            last_seen_at = utc_now()
            self.gateway.set_last_seen(user.id, last_seen_at)
        return last_seen_at

    def summary(self, user: UserAccount) -> NotificationSummary:
        last_seen_at = self.last_seen(user)
        comments = self.gateway.list_comments()
        return NotificationSummary(
            unread=unread_comments(comments, user.id, last_seen_at),
            last_seen_at=last_seen_at,
        )

    def mark_seen(self, user: UserAccount) -> str:
        now = utc_now()
        self.gateway.set_last_seen(user.id, now)
        return now
