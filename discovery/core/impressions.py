"""
Impression Counter: idempotent per-creator exposure counts in UTC day buckets.
"""

from datetime import datetime, timedelta
from typing import Dict, Iterable, Optional

from .config import DENSITY_WINDOW_DAYS
from .db import get_db, immediate_transaction
from .schema import day_bucket, utcnow
from ..util.logging import logger

# Day buckets kept for cumulative counts and audits; must cover the density window
BUCKET_RETENTION_DAYS = 30
ANONYMOUS_SESSION = "-"


class ImpressionCounter:
    """Counts (creator, viewer, session) exposures at most once per day bucket."""

    def __init__(self, db_path: str = None):
        self.db_path = db_path

    def record(self, creator_id: str, viewer_id: str, session_id: Optional[str] = None,
               at: Optional[datetime] = None) -> bool:
        """
        Record one impression.

        Returns True if the impression was counted, False if its idempotency key
        was already seen in the bucket.
        """
        bucket = day_bucket(at or utcnow())
        session = session_id or ANONYMOUS_SESSION

        with immediate_transaction(self.db_path) as conn:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO impression_keys (bucket, creator_id, viewer_id, session_id) "
                "VALUES (?, ?, ?, ?)",
                (bucket, creator_id, viewer_id, session)
            )
            if cursor.rowcount == 0:
                return False

            conn.execute(
                "INSERT INTO impression_counts (creator_id, bucket, count) VALUES (?, ?, 1) "
                "ON CONFLICT(creator_id, bucket) DO UPDATE SET count = count + 1",
                (creator_id, bucket)
            )

        return True

    def bucket_count(self, creator_id: str, bucket: str) -> int:
        with get_db(self.db_path) as conn:
            row = conn.execute(
                "SELECT count FROM impression_counts WHERE creator_id = ? AND bucket = ?",
                (creator_id, bucket)
            ).fetchone()
        return row[0] if row else 0

    def rolling_counts(self, creator_ids: Iterable[str] = None, now: datetime = None,
                       window_days: int = DENSITY_WINDOW_DAYS) -> Dict[str, int]:
        """Sum of the last `window_days` day buckets (today included) per creator."""
        now = now or utcnow()
        oldest = day_bucket(now - timedelta(days=window_days - 1))
        newest = day_bucket(now)

        with get_db(self.db_path) as conn:
            rows = conn.execute(
                "SELECT creator_id, SUM(count) FROM impression_counts "
                "WHERE bucket >= ? AND bucket <= ? GROUP BY creator_id",
                (oldest, newest)
            ).fetchall()

        counts = {creator_id: int(total) for creator_id, total in rows}
        if creator_ids is None:
            return counts
        return {creator_id: counts.get(creator_id, 0) for creator_id in creator_ids}

    def rolling_count(self, creator_id: str, now: datetime = None,
                      window_days: int = DENSITY_WINDOW_DAYS) -> int:
        return self.rolling_counts([creator_id], now, window_days)[creator_id]

    def cumulative_counts(self, creator_ids: Iterable[str] = None) -> Dict[str, int]:
        """Total impressions across all retained buckets."""
        with get_db(self.db_path) as conn:
            rows = conn.execute(
                "SELECT creator_id, SUM(count) FROM impression_counts GROUP BY creator_id"
            ).fetchall()

        counts = {creator_id: int(total) for creator_id, total in rows}
        if creator_ids is None:
            return counts
        return {creator_id: counts.get(creator_id, 0) for creator_id in creator_ids}

    def purge_old_buckets(self, now: datetime = None, retention_days: int = BUCKET_RETENTION_DAYS) -> int:
        """Delete buckets older than the retention window. Returns the number of count rows removed."""
        cutoff = day_bucket((now or utcnow()) - timedelta(days=retention_days))

        with get_db(self.db_path) as conn:
            conn.execute("DELETE FROM impression_keys WHERE bucket < ?", (cutoff,))
            cursor = conn.execute("DELETE FROM impression_counts WHERE bucket < ?", (cutoff,))
            conn.commit()
            removed = cursor.rowcount

        if removed:
            logger.log_operation("impressions.purge", "success", {"cutoff": cutoff, "rows": removed})
        return removed
