"""
Shadow Density Controller: rotation state per creator from rolling impression counts.

Creators above the density threshold become LIMITED: they get a density penalty in the
composite and a capped selection probability. Creators at or below the under-served
percentile compete for guaranteed slots.
"""

from datetime import datetime
from typing import Dict, Iterable, List, Optional

import numpy as np

from ..core.config import RankingConfig
from ..core.corrections import CorrectiveParameterStore
from ..core.impressions import ImpressionCounter
from ..core.schema import RotationEntry, RotationState, utcnow
from ..core.snapshot import Snapshot, SnapshotHolder
from ..util.logging import logger


class ShadowDensityController:

    def __init__(self, impressions: ImpressionCounter, corrections: CorrectiveParameterStore,
                 config: RankingConfig):
        self.impressions = impressions
        self.corrections = corrections
        self.config = config
        self.holder = SnapshotHolder("rotation")

    def effective_threshold(self, now: datetime = None) -> float:
        """Density threshold after any active auditor tightening."""
        factor = self.corrections.current(now).density_threshold_factor
        return self.config.density_threshold * factor

    def density_penalty(self, rolling_impressions: int, threshold: float) -> float:
        """Linear from 0 at the threshold to the max penalty at twice the threshold."""
        if rolling_impressions <= threshold or threshold <= 0:
            return 0.0
        excess = (rolling_impressions - threshold) / threshold
        return min(self.config.density_max_penalty, self.config.density_max_penalty * excess)

    def refresh(self, creator_ids: Iterable[str], now: datetime = None) -> Snapshot:
        """Rebuild and publish the full rotation table for `creator_ids`."""
        now = now or utcnow()
        counts = self.impressions.rolling_counts(list(creator_ids), now, self.config.density_window_days)
        threshold = self.effective_threshold(now)

        entries: Dict[str, RotationEntry] = {}
        if counts:
            values = np.array(list(counts.values()), dtype=float)
            ordered = np.sort(values)
            cutoff = float(np.percentile(values, self.config.under_served_percentile))

            for creator_id, count in counts.items():
                limited = count > threshold
                rank = 100.0 * np.searchsorted(ordered, count, side="right") / len(ordered)
                entries[creator_id] = RotationEntry(
                    creator_id=creator_id,
                    rolling_impressions=int(count),
                    state=RotationState.LIMITED if limited else RotationState.NORMAL,
                    density_penalty=self.density_penalty(count, threshold),
                    selection_cap=self.config.limited_selection_cap if limited else 1.0,
                    percentile_rank=float(rank),
                    under_served=(not limited) and count <= cutoff,
                )

        snapshot = self.holder.publish(entries)
        limited_count = sum(1 for e in entries.values() if e.state == RotationState.LIMITED)
        logger.log_operation("density.refresh", "success", {
            "creators": len(entries),
            "limited": limited_count,
            "threshold": threshold
        })
        return snapshot

    def snapshot(self) -> Optional[Snapshot]:
        return self.holder.current()

    def get_rotation_state(self, creator_id: str) -> RotationEntry:
        """Rotation entry for a creator; unseen creators are NORMAL with no impressions."""
        snapshot = self.holder.current()
        entry = snapshot.get(creator_id) if snapshot else None
        return entry or RotationEntry(creator_id=creator_id, rolling_impressions=0)

    def stats(self) -> Dict:
        """Per-creator rotation table for admins."""
        snapshot = self.holder.current()
        entries: List[RotationEntry] = sorted(
            snapshot.entries.values() if snapshot else [],
            key=lambda e: (-e.rolling_impressions, e.creator_id)
        )
        return {
            "version": snapshot.version if snapshot else 0,
            "threshold": self.effective_threshold(),
            "limited": sum(1 for e in entries if e.state == RotationState.LIMITED),
            "under_served": sum(1 for e in entries if e.under_served),
            "creators": [e.to_dict() for e in entries],
        }
