"""Cell comments keyed by (cell index, section)."""

from __future__ import annotations

import logging

from cassette_tracker.db import utc_now
from cassette_tracker.errors import ValidationError
from cassette_tracker.models import Comment, Section, UserAccount
from cassette_tracker.services.gateway import PersistenceGateway

logger = logging.getLogger(__name__)


def _clean_text(text: object) -> str:
    if not isinstance(text, str) or not text.strip():
        raise ValidationError("Comment text is required.")
    return text.strip()


class CommentStore:
    def __init__(self, gateway: PersistenceGateway) -> None:
        self.gateway = gateway

    def list(self) -> list[Comment]:
        """All comments, most recently created first."""

        return self.gateway.list_comments()

    def for_cell(self, cell_index: int, section: Section) -> Comment | None:
        return self.gateway.find_comment(cell_index, section)

    def add(self, actor: UserAccount, cell_index: int, section: Section, text: object) -> Comment:
        body = _clean_text(text)
        now = utc_now()
        comment = self.gateway.insert_comment(
            Comment(
                id=None,
                cell_index=cell_index,
                section=section,
                comment=body,
                created_by=actor.id,
                created_by_email=actor.email,
                created_at=now,
                updated_at=now,
            )
        )
        logger.info(
            "Comment added",
            extra={
                "event": "comment_added",
                "context": {"comment_id": comment.id, "cell_index": cell_index, "section": section.value},
            },
        )
        return comment

    def update(self, comment_id: int, text: object) -> Comment | None:
        return self.gateway.update_comment(comment_id, _clean_text(text))

    def delete(self, comment_id: int) -> bool:
        deleted = self.gateway.delete_comment(comment_id)
        if deleted:
            logger.info(
                "Comment deleted",
                extra={"event": "comment_deleted", "context": {"comment_id": comment_id}},
            )
        return deleted
