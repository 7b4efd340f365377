"""
Fairness Auditor: measures exposure concentration and issues corrective parameters.

The auditor never touches relevance records. It only appends reports and writes
corrective parameters with an expiry.
"""

import json
import math
import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import numpy as np

from ..core.config import RankingConfig
from ..core.corrections import CorrectiveParameterStore
from ..core.db import get_db
from ..core.errors import NotFound
from ..core.impressions import ImpressionCounter
from ..core.interfaces import ContentSource
from ..core.schema import (
    CorrectiveParameters, CreatorRelevanceRecord, FairnessAuditReport, format_ts, utcnow
)
from ..ranking.constants import NEW_CREATOR_TAG
from ..ranking.relevance_index import CreatorRelevanceIndex
from ..util.logging import logger

# Fewer creators than this and the correlation is noise
MIN_CORRELATION_SAMPLE = 3
# Fewer creators than this and the top decile share is trivially high
MIN_DECILE_SAMPLE = 10


class FairnessAuditor:

    def __init__(self, index: CreatorRelevanceIndex, impressions: ImpressionCounter,
                 content: ContentSource, corrections: CorrectiveParameterStore,
                 config: RankingConfig, db_path: str = None):
        self.index = index
        self.impressions = impressions
        self.content = content
        self.corrections = corrections
        self.config = config
        self.db_path = db_path

    def run_audit(self, now: datetime = None) -> FairnessAuditReport:
        """Compute fairness metrics, issue corrections on breach and append the report."""
        now = now or utcnow()
        audit_id = str(uuid.uuid4())

        snapshot = self.index.snapshot()
        records: Dict[str, CreatorRelevanceRecord] = dict(snapshot.entries) if snapshot else {}
        counts = self.impressions.rolling_counts(list(records), now, self.config.density_window_days)

        metrics = {
            "creators": len(records),
            "total_impressions": sum(counts.values()),
            "top_decile_share": self.top_decile_share(counts),
            "new_creator_share": self.new_creator_share(records, counts),
            "pay_correlation": self.pay_correlation(counts),
        }
        metrics.update(self.cohort_means(records))

        breaches = []
        if metrics["top_decile_share"] is not None and metrics["top_decile_share"] > self.config.audit_top_decile_max:
            breaches.append("top_decile_share")
        if metrics["new_creator_share"] is not None and metrics["new_creator_share"] < self.config.audit_new_creator_min_share:
            breaches.append("new_creator_share")
        if metrics["pay_correlation"] is not None and abs(metrics["pay_correlation"]) > self.config.audit_pay_correlation_max:
            breaches.append("pay_correlation")

        actions = self._issue_corrections(audit_id, breaches, now)

        report = FairnessAuditReport(
            audit_id=audit_id,
            metrics=metrics,
            breaches=tuple(breaches),
            passed=not breaches,
            corrective_actions=tuple(actions),
            created_at=now,
        )
        self._append(report)
        logger.log_audit_report(audit_id, report.passed, breaches, actions)
        return report

    def top_decile_share(self, counts: Dict[str, int]) -> Optional[float]:
        """Share of impressions taken by the top 10% of creators; None for small pools."""
        if len(counts) < MIN_DECILE_SAMPLE:
            return None
        total = sum(counts.values())
        if not total:
            return 0.0
        ordered = sorted(counts.values(), reverse=True)
        top = max(1, math.ceil(len(ordered) * 0.1))
        return sum(ordered[:top]) / total

    def new_creator_share(self, records: Dict[str, CreatorRelevanceRecord], counts: Dict[str, int]) -> Optional[float]:
        """Share of impressions going to new creators; None when there are none to measure."""
        new_ids = [c for c, r in records.items() if NEW_CREATOR_TAG in r.tags]
        total = sum(counts.values())
        if not new_ids or not total:
            return None
        return sum(counts.get(c, 0) for c in new_ids) / total

    def pay_correlation(self, counts: Dict[str, int]) -> Optional[float]:
        """Pearson correlation between paid spend and rolling impressions."""
        spend, exposure = [], []
        for creator_id, count in counts.items():
            try:
                metadata = self.content.get_creator_metadata(creator_id)
            except Exception as e:
                logger.warning(f"Metadata unavailable for audit of {creator_id}: {e}")
                continue
            if metadata is None:
                continue
            spend.append(float(metadata.paid_spend))
            exposure.append(float(count))

        if len(spend) < MIN_CORRELATION_SAMPLE:
            return None
        spend_arr, exposure_arr = np.array(spend), np.array(exposure)
        if np.std(spend_arr) == 0 or np.std(exposure_arr) == 0:
            return None
        return float(np.corrcoef(spend_arr, exposure_arr)[0, 1])

    def cohort_means(self, records: Dict[str, CreatorRelevanceRecord]) -> Dict[str, Optional[float]]:
        """Mean composite score for new and established creators (informational)."""
        new = [r.composite_score for r in records.values() if NEW_CREATOR_TAG in r.tags]
        established = [r.composite_score for r in records.values() if NEW_CREATOR_TAG not in r.tags]
        return {
            "mean_composite_new": float(np.mean(new)) if new else None,
            "mean_composite_established": float(np.mean(established)) if established else None,
        }

    def _issue_corrections(self, audit_id: str, breaches: List[str], now: datetime) -> List[str]:
        if not breaches:
            return []

        actions = []
        factor = 1.0
        boost = 0
        if "top_decile_share" in breaches or "pay_correlation" in breaches:
            factor = self.config.audit_density_tighten_factor
            actions.append(f"tighten_density_threshold x{factor}")
        if "new_creator_share" in breaches:
            boost = self.config.audit_slot_boost
            actions.append(f"guaranteed_slots +{boost}")

        self.corrections.write(CorrectiveParameters(
            guaranteed_slot_boost=boost,
            density_threshold_factor=factor,
            reason=",".join(breaches),
            issued_by_audit=audit_id,
            expires_at=now + timedelta(hours=self.config.corrective_ttl_hours),
        ))
        return actions

    def _append(self, report: FairnessAuditReport):
        with get_db(self.db_path) as conn:
            conn.execute(
                "INSERT INTO audit_reports (audit_id, passed, data, created_at) VALUES (?, ?, ?, ?)",
                (report.audit_id, report.passed, json.dumps(report.to_dict()), format_ts(report.created_at))
            )
            conn.commit()

    def latest_report(self) -> FairnessAuditReport:
        with get_db(self.db_path) as conn:
            row = conn.execute("SELECT data FROM audit_reports ORDER BY seq DESC LIMIT 1").fetchone()
        if row is None:
            raise NotFound("No fairness audit has run yet")
        return FairnessAuditReport.from_dict(json.loads(row[0]))

    def list_reports(self, limit: int = 20) -> List[FairnessAuditReport]:
        with get_db(self.db_path) as conn:
            rows = conn.execute(
                "SELECT data FROM audit_reports ORDER BY seq DESC LIMIT ?", (limit,)
            ).fetchall()
        return [FairnessAuditReport.from_dict(json.loads(r[0])) for r in rows]
