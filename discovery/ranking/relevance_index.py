"""
Creator Relevance Index: per-creator sub-scores and composite, published as immutable
generation-numbered snapshots.
"""

import json
import sqlite3
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from .constants import NEW_CREATOR_TAG
from .scorers import (
    AudienceShareScorer, ManipulationPenalty, RecencyScorer, RetentionScorer, TopicalScorer
)
from ..core.activity import ActivityIngestor
from ..core.config import RankingConfig
from ..core.db import get_db, immediate_transaction
from ..core.errors import BackgroundJobFailure, UpstreamUnavailable
from ..core.interfaces import ContentSource
from ..core.schema import (
    CreatorMetadata, CreatorRelevanceRecord, RotationState, SubScores, format_ts, utcnow
)
from ..core.snapshot import Snapshot, SnapshotHolder
from ..detection.detector import FlagChange, ManipulationDetector
from ..util.logging import logger


class CreatorRelevanceIndex:
    """Single writer of relevance records; readers use snapshot()."""

    def __init__(self, content: ContentSource, activity: ActivityIngestor, detector: ManipulationDetector,
                 config: RankingConfig, db_path: str = None):
        self.content = content
        self.activity = activity
        self.detector = detector
        self.config = config
        self.db_path = db_path
        self.holder = SnapshotHolder("relevance_index")

        self.recency = RecencyScorer()
        self.topical = TopicalScorer()
        self.audience = AudienceShareScorer()
        self.retention = RetentionScorer()
        self.penalty = ManipulationPenalty(config)

    def load(self) -> Optional[Snapshot]:
        """Publish the stored records as the current generation. An empty store publishes nothing."""
        try:
            with get_db(self.db_path) as conn:
                rows = conn.execute("SELECT data FROM relevance_records").fetchall()
        except sqlite3.Error as e:
            raise UpstreamUnavailable(f"Relevance store unavailable: {e}") from e

        records = {}
        for (data,) in rows:
            record = CreatorRelevanceRecord.from_dict(json.loads(data))
            records[record.creator_id] = record
        if not records:
            return None
        return self.holder.publish(records)

    def snapshot(self) -> Optional[Snapshot]:
        return self.holder.current()

    def get_record(self, creator_id: str) -> Optional[CreatorRelevanceRecord]:
        snapshot = self.holder.current()
        return snapshot.get(creator_id) if snapshot else None

    def indexed_creator_ids(self) -> List[str]:
        snapshot = self.holder.current()
        return sorted(snapshot.entries) if snapshot else []

    def compute_record(self, metadata: CreatorMetadata, now: datetime = None,
                       staged: List[FlagChange] = None) -> CreatorRelevanceRecord:
        """Score one creator. The returned record carries generation 0 until it is written."""
        now = now or utcnow()
        stats = self.activity.get_creator_stats(metadata.creator_id)

        classification = self.detector.evaluate(metadata.creator_id, staged)
        confidence = classification.confidence

        weights = self.topical.creator_weights(metadata.categories, stats.audience_categories)
        last_active = max(
            [ts for ts in (metadata.last_active_at, stats.last_event_at) if ts is not None],
            default=None
        )

        sub_scores = SubScores(
            topical=self.topical.calc_creator(weights),
            language=self.audience.calc(stats.audience_languages, metadata.primary_language),
            region=self.audience.calc(stats.audience_regions, metadata.region),
            recency=self.recency.calc(last_active, now),
            retention=self.retention.calc(stats.views, stats.retention_sum),
            safety=1.0 - confidence,
        )

        weighted_sum = sub_scores.weighted_sum(self.config.weights)
        multiplier = self.penalty.multiplier(confidence)

        tags = set(metadata.tags)
        if now - metadata.joined_at < timedelta(days=self.config.new_creator_age_days):
            tags.add(NEW_CREATOR_TAG)

        return CreatorRelevanceRecord(
            creator_id=metadata.creator_id,
            sub_scores=sub_scores,
            weighted_sum=weighted_sum,
            composite_score=max(0.0, min(100.0, 100.0 * weighted_sum * multiplier)),
            generation=0,
            manipulation_confidence=confidence,
            manipulation_multiplier=multiplier,
            rotation_state=RotationState.DEMOTED if self.penalty.demotes(confidence) else RotationState.NORMAL,
            category_weights=weights,
            tags=frozenset(tags),
            languages=tuple(metadata.languages),
            region=metadata.region,
            computed_at=now,
        )

    def recompute_generation(self, creator_ids: Iterable[str], now: datetime = None) -> Dict[str, CreatorRelevanceRecord]:
        """
        Recompute and publish a new generation for `creator_ids`.

        The batch is all-or-nothing: records are written in one transaction and then
        published by snapshot swap. Flag writes from classification are held back until the
        records are stored. Raises BackgroundJobFailure if the batch cannot be built.
        """
        creator_ids = list(dict.fromkeys(creator_ids))
        now = now or utcnow()
        staged: List[FlagChange] = []

        try:
            computed = []
            for creator_id in creator_ids:
                metadata = self.content.get_creator_metadata(creator_id)
                if metadata is None:
                    continue
                computed.append(self.compute_record(metadata, now, staged))
            records = self._write(computed)
            self.detector.apply_changes(staged)
        except BackgroundJobFailure:
            raise
        except Exception as e:
            # Content store or index storage failure fails the whole batch
            raise BackgroundJobFailure(f"Recompute failed: {e}", creator_ids) from e

        if records:
            self.holder.publish_update(records)
        return records

    def _write(self, computed: List[CreatorRelevanceRecord]) -> Dict[str, CreatorRelevanceRecord]:
        if not computed:
            return {}

        records = {}
        with immediate_transaction(self.db_path) as conn:
            for record in computed:
                row = conn.execute(
                    "SELECT generation FROM relevance_records WHERE creator_id = ?", (record.creator_id,)
                ).fetchone()
                record = replace(record, generation=(row[0] if row else 0) + 1)
                conn.execute(
                    "INSERT INTO relevance_records (creator_id, generation, data, computed_at) VALUES (?, ?, ?, ?) "
                    "ON CONFLICT(creator_id) DO UPDATE SET generation = excluded.generation, "
                    "data = excluded.data, computed_at = excluded.computed_at",
                    (record.creator_id, record.generation, json.dumps(record.to_dict()),
                     format_ts(record.computed_at))
                )
                records[record.creator_id] = record

        logger.log_operation("index.recompute", "success", {"creators": len(records)})
        return records
