"""
Activity ingestion: folds activity log events into interest profiles, impression counts
and per-creator activity aggregates.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from .config import RETENTION_TARGET_MS
from .db import get_db, immediate_transaction, get_marker, set_marker
from .errors import UpstreamUnavailable
from .impressions import ImpressionCounter
from .interests import InterestProfileStore
from .interfaces import ActivitySource
from .schema import ActivityEvent, EventType, format_ts, parse_ts, utcnow
from ..util.logging import logger

WATERMARK_KEY = "activity.watermark"


@dataclass
class CreatorActivityStats:
    """Audience aggregates for one creator, input to relevance recomputation."""
    creator_id: str
    views: int = 0
    retention_sum: float = 0.0
    audience_languages: Dict[str, int] = field(default_factory=dict)
    audience_regions: Dict[str, int] = field(default_factory=dict)
    audience_categories: Dict[str, int] = field(default_factory=dict)
    last_event_at: Optional[datetime] = None

    @property
    def audience_size(self) -> int:
        return sum(self.audience_languages.values())


class ActivityIngestor:
    """Applies activity events to the engine's stores. Each event id is applied once."""

    def __init__(self, source: ActivitySource = None, interests: InterestProfileStore = None,
                 impressions: ImpressionCounter = None, db_path: str = None,
                 retention_target_ms: int = RETENTION_TARGET_MS):
        self.source = source
        self.db_path = db_path
        self.interests = interests or InterestProfileStore(db_path, retention_target_ms)
        self.impressions = impressions or ImpressionCounter(db_path)
        self.retention_target_ms = retention_target_ms

    def ingest_event(self, event: ActivityEvent) -> bool:
        """Apply one event. Returns False if the event id was already ingested."""
        if event.event_type == EventType.IMPRESSION:
            # Impressions carry their own idempotency key
            return self.impressions.record(event.creator_id, event.viewer_id, event.session_id, event.occurred_at)

        with immediate_transaction(self.db_path) as conn:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO ingested_events (event_id, ingested_at) VALUES (?, ?)",
                (event.event_id, format_ts(utcnow()))
            )
            if cursor.rowcount == 0:
                return False
            self._update_creator_stats(conn, event)

        self.interests.apply_event(event)
        return True

    def ingest_since(self) -> int:
        """Pull events after the persisted watermark and apply them in order."""
        if self.source is None:
            return 0

        watermark = parse_ts(get_marker(WATERMARK_KEY, self.db_path))
        try:
            events = self.source.get_raw_activity_events(watermark)
        except Exception as e:
            logger.log_operation("activity.ingest", "failed", {"error": str(e)[:200]})
            raise UpstreamUnavailable(f"Activity log unavailable: {e}") from e

        applied = 0
        for event in events:
            if self.ingest_event(event):
                applied += 1
            # Advance per event so a failure resumes after the last applied one
            set_marker(WATERMARK_KEY, format_ts(event.occurred_at), self.db_path)

        if events:
            logger.log_operation("activity.ingest", "success", {"events": len(events), "applied": applied})
        return applied

    def get_creator_stats(self, creator_id: str) -> CreatorActivityStats:
        with get_db(self.db_path) as conn:
            row = conn.execute(
                "SELECT views, retention_sum, audience_languages, audience_regions, "
                "audience_categories, last_event_at FROM creator_stats WHERE creator_id = ?",
                (creator_id,)
            ).fetchone()

        if not row:
            return CreatorActivityStats(creator_id=creator_id)

        return CreatorActivityStats(
            creator_id=creator_id,
            views=row[0],
            retention_sum=row[1],
            audience_languages=json.loads(row[2]),
            audience_regions=json.loads(row[3]),
            audience_categories=json.loads(row[4]),
            last_event_at=parse_ts(row[5]),
        )

    def creators_active_since(self, since: datetime) -> List[str]:
        with get_db(self.db_path) as conn:
            rows = conn.execute(
                "SELECT creator_id FROM creator_stats WHERE last_event_at > ? ORDER BY creator_id",
                (format_ts(since),)
            ).fetchall()
        return [row[0] for row in rows]

    def creators_active_within(self, hours: int, now: datetime = None) -> List[str]:
        return self.creators_active_since((now or utcnow()) - timedelta(hours=hours))

    def _update_creator_stats(self, conn, event: ActivityEvent):
        row = conn.execute(
            "SELECT views, retention_sum, audience_languages, audience_regions, "
            "audience_categories, last_event_at FROM creator_stats WHERE creator_id = ?",
            (event.creator_id,)
        ).fetchone()

        views, retention_sum = (row[0], row[1]) if row else (0, 0.0)
        languages = json.loads(row[2]) if row else {}
        regions = json.loads(row[3]) if row else {}
        categories = json.loads(row[4]) if row else {}
        last_event_at = parse_ts(row[5]) if row else None

        if event.event_type == EventType.VIEW:
            views += 1
            retention_sum += min(1.0, max(0, event.duration_ms) / self.retention_target_ms)
            if event.language:
                languages[event.language] = languages.get(event.language, 0) + 1
            if event.region:
                regions[event.region] = regions.get(event.region, 0) + 1

        if event.category:
            categories[event.category] = categories.get(event.category, 0) + 1

        if last_event_at is None or event.occurred_at > last_event_at:
            last_event_at = event.occurred_at

        conn.execute(
            "INSERT INTO creator_stats (creator_id, views, retention_sum, audience_languages, "
            "audience_regions, audience_categories, last_event_at) VALUES (?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(creator_id) DO UPDATE SET views = excluded.views, "
            "retention_sum = excluded.retention_sum, audience_languages = excluded.audience_languages, "
            "audience_regions = excluded.audience_regions, audience_categories = excluded.audience_categories, "
            "last_event_at = excluded.last_event_at",
            (event.creator_id, views, retention_sum, json.dumps(languages), json.dumps(regions),
             json.dumps(categories), format_ts(last_event_at))
        )
