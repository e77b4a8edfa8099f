from __future__ import annotations

from datetime import datetime, timedelta
import logging
import threading

from bountybot.observability import log_event


LOGGER = logging.getLogger("bountybot.registry")


class ProcessedCommentRegistry:
    """In-memory record of comment ids that a poll tick already handled.

    Entries map a comment id to the time it was first seen. Nothing is
    persisted; a restart starts from an empty registry.
    """

    def __init__(self) -> None:
        self._seen_at: dict[int, datetime] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen_at)

    def has(self, comment_id: int) -> bool:
        with self._lock:
            return comment_id in self._seen_at

    def mark_seen(self, comment_id: int, now: datetime) -> None:
        with self._lock:
            self._seen_at.setdefault(comment_id, now)

    def claim(self, comment_id: int, now: datetime) -> bool:
        """Mark ``comment_id`` as seen; False if it was already seen."""
        with self._lock:
            if comment_id in self._seen_at:
                return False
            self._seen_at[comment_id] = now
            return True

    def purge_older_than(self, now: datetime, window: timedelta) -> int:
        cutoff = now - window
        with self._lock:
            initial_size = len(self._seen_at)
            expired = [
                comment_id for comment_id, seen_at in self._seen_at.items() if seen_at < cutoff
            ]
            for comment_id in expired:
                del self._seen_at[comment_id]
            kept = len(self._seen_at)
        log_event(
            LOGGER,
            "processed_comments_purged",
            cutoff=cutoff.isoformat(),
            removed=len(expired),
            kept=kept,
            initial_size=initial_size,
        )
        return len(expired)
