"""
Refresh Scheduler: periodic bounded-batch recomputation of the relevance index.

Trigger -> pick creators -> fixed-size batches -> density refresh -> CycleReport.
A failed batch is retried once and otherwise carried into the next cycle; it never
stops the other batches.
"""

import threading
import time
import uuid
from datetime import datetime
from typing import List, Set

from ..core.activity import ActivityIngestor
from ..core.config import RankingConfig
from ..core.errors import BackgroundJobFailure, UpstreamUnavailable
from ..core.interfaces import ContentSource
from ..core.schema import CycleReport, utcnow
from ..detection.detector import ManipulationDetector
from ..ranking.density import ShadowDensityController
from ..ranking.relevance_index import CreatorRelevanceIndex
from ..util.logging import logger


class RefreshScheduler:

    def __init__(self, index: CreatorRelevanceIndex, density: ShadowDensityController,
                 detector: ManipulationDetector, activity: ActivityIngestor,
                 content: ContentSource, config: RankingConfig):
        self.index = index
        self.density = density
        self.detector = detector
        self.activity = activity
        self.content = content
        self.config = config

        self.cycle_cap = config.max_creators_per_cycle
        self.last_report = None
        self._carried: Set[str] = set()
        self._cancel_event = threading.Event()
        self._run_lock = threading.Lock()

    def cancel(self):
        """Skip the remaining batches of the running cycle."""
        self._cancel_event.set()

    @property
    def carried_creators(self) -> List[str]:
        return sorted(self._carried)

    def select_creators(self, now: datetime = None) -> List[str]:
        """Creators due for recomputation this cycle, highest priority first, capped."""
        now = now or utcnow()
        ordered = []
        ordered.extend(sorted(self._carried))
        ordered.extend(self.detector.pending_retries())

        try:
            indexed = set(self.index.indexed_creator_ids())
            ordered.extend(c for c in self.content.list_creator_ids() if c not in indexed)
        except Exception as e:
            logger.warning(f"Content store unavailable while listing creators: {e}")

        ordered.extend(self.activity.creators_active_within(self.config.refresh_window_hours, now))

        selected = list(dict.fromkeys(ordered))
        if len(selected) > self.cycle_cap:
            logger.log_operation("refresh.select", "capped", {
                "due": len(selected),
                "cap": self.cycle_cap
            })
            selected = selected[:self.cycle_cap]
        return selected

    def run_cycle(self, now: datetime = None) -> CycleReport:
        """Run one refresh cycle and return its completion report."""
        now = now or utcnow()
        report = CycleReport(cycle_id=str(uuid.uuid4()), started_at=utcnow())

        if not self._run_lock.acquire(blocking=False):
            report.status = "skipped"
            report.finished_at = utcnow()
            logger.log_operation("refresh.cycle", "skipped", {"reason": "cycle already running"})
            return report

        try:
            self._cancel_event.clear()
            started = time.monotonic()

            try:
                self.activity.ingest_since()
            except UpstreamUnavailable as e:
                # Recompute from what is already ingested
                logger.warning(f"Activity ingestion skipped this cycle: {e}")

            creators = self.select_creators(now)
            report.requested = len(creators)
            size = self.config.refresh_batch_size
            batches = [creators[i:i + size] for i in range(0, len(creators), size)]

            for batch_index, batch in enumerate(batches):
                if self._cancel_event.is_set():
                    report.cancelled = True
                    logger.log_operation("refresh.cycle", "cancelled", {
                        "cycle_id": report.cycle_id,
                        "remaining_batches": len(batches) - batch_index
                    })
                    break
                self._run_batch(report, batch_index, batch, now)

            elapsed = time.monotonic() - started
            self._adjust_cap(elapsed)

            try:
                self.density.refresh(self.index.indexed_creator_ids(), now)
            except Exception as e:
                logger.error(f"Density refresh failed: {e}")

            self.detector.retry_pending_cases()

            if report.cancelled:
                report.status = "cancelled"
            elif report.failed_batches:
                report.status = "partial"
            else:
                report.status = "completed"
            report.finished_at = utcnow()
            self.last_report = report

            logger.log_operation("refresh.cycle", report.status, {
                "cycle_id": report.cycle_id,
                "requested": report.requested,
                "processed": report.processed,
                "failed_batches": report.failed_batches,
                "elapsed_sec": round(elapsed, 3)
            })
            return report
        finally:
            self._run_lock.release()

    def _run_batch(self, report: CycleReport, batch_index: int, batch: List[str], now: datetime):
        for attempt in (1, 2):
            try:
                records = self.index.recompute_generation(batch, now)
            except BackgroundJobFailure as e:
                logger.log_batch_result(report.cycle_id, batch_index, len(batch), "failed", str(e))
                if attempt == 1:
                    continue
                report.failed_batches += 1
                report.failed_creators.extend(batch)
                self._carried.update(batch)
                return

            if attempt == 2:
                report.retried_batches += 1
            report.processed += len(records)
            self._carried.difference_update(batch)
            logger.log_batch_result(report.cycle_id, batch_index, len(batch), "success")
            return

    def _adjust_cap(self, elapsed: float):
        if elapsed > self.config.refresh_time_budget_sec:
            self.cycle_cap = max(self.config.refresh_batch_size, self.cycle_cap // 2)
            logger.log_operation("refresh.budget", "exceeded", {
                "elapsed_sec": round(elapsed, 3),
                "next_cap": self.cycle_cap
            })
        elif self.cycle_cap < self.config.max_creators_per_cycle:
            self.cycle_cap = min(self.config.max_creators_per_cycle, self.cycle_cap * 2)
