"""
DiscoveryService: wires the stores, detector, index, controllers and jobs together and
exposes the operations used by the HTTP layer and the background runner.
"""

import uuid
from typing import Dict, List, Optional

from .core.activity import ActivityIngestor
from .core.config import RankingConfig, load_ranking_config
from .core.corrections import CorrectiveParameterStore
from .core.db import health_check, init_db
from .core.errors import UpstreamUnavailable, ValidationError
from .core.impressions import ImpressionCounter
from .core.interests import InterestProfileStore
from .core.interfaces import (
    ActivitySource, ContentSource, InMemoryActivityLog, InMemoryContentStore,
    InMemoryModerationIntake, ModerationIntake
)
from .core.schema import (
    ActivityEvent, CycleReport, EventType, FairnessAuditReport, FeedResult, FlagStatus,
    ManipulationFlag, ViewerInterestProfile, utcnow
)
from .core.writer import BackgroundWriter
from .detection.base import IManipulationScorer
from .detection.detector import ManipulationDetector
from .jobs.audit import FairnessAuditor
from .jobs.refresh import RefreshScheduler
from .ranking.density import ShadowDensityController
from .ranking.orchestrator import RankingOrchestrator, parse_mode
from .ranking.relevance_index import CreatorRelevanceIndex
from .util.logging import logger


class DiscoveryService:

    def __init__(self, activity_source: ActivitySource = None, content: ContentSource = None,
                 intake: ModerationIntake = None, config: RankingConfig = None, db_path: str = None,
                 scorer: IManipulationScorer = None, writer: BackgroundWriter = None):
        self.db_path = db_path
        self.config = config or load_ranking_config()
        init_db(db_path)

        self.activity_source = activity_source or InMemoryActivityLog()
        self.content = content or InMemoryContentStore()
        self.intake = intake or InMemoryModerationIntake()
        self.writer = writer or BackgroundWriter("discovery-writer")

        self.interests = InterestProfileStore(db_path, self.config.retention_target_ms)
        self.impressions = ImpressionCounter(db_path)
        self.activity = ActivityIngestor(self.activity_source, self.interests, self.impressions,
                                         db_path, self.config.retention_target_ms)
        self.corrections = CorrectiveParameterStore(db_path)

        self.detector = ManipulationDetector(self.content, self.intake, self.config, scorer=scorer, db_path=db_path)
        self.index = CreatorRelevanceIndex(self.content, self.activity, self.detector, self.config, db_path)
        self.density = ShadowDensityController(self.impressions, self.corrections, self.config)
        self.orchestrator = RankingOrchestrator(
            self.index, self.density, self.detector, self.interests,
            self.impressions, self.corrections, self.config, self.writer
        )
        self.scheduler = RefreshScheduler(self.index, self.density, self.detector,
                                          self.activity, self.content, self.config)
        self.auditor = FairnessAuditor(self.index, self.impressions, self.content,
                                       self.corrections, self.config, db_path)

    def start(self):
        """Load persisted state and start the background writer."""
        try:
            self.index.load()
        except UpstreamUnavailable as e:
            # Feeds report unavailable until a refresh publishes a generation
            logger.error(f"Relevance index not loaded: {e}")
        self.detector.load()
        self.density.refresh(self.index.indexed_creator_ids())
        self.writer.start()
        logger.log_operation("service.start", "success", {"creators": len(self.index.indexed_creator_ids())})

    def stop(self):
        self.writer.stop()

    # Viewer operations

    def get_feed(self, viewer_id: str, mode: str = None, cursor: str = None, limit: int = None,
                 session_id: str = None) -> FeedResult:
        return self.orchestrator.get_feed(viewer_id, mode, cursor, limit, session_id)

    def switch_mode(self, viewer_id: str, mode: str) -> ViewerInterestProfile:
        if not viewer_id:
            raise ValidationError("viewer_id is required", field="viewer_id")
        return self.interests.set_active_mode(viewer_id, parse_mode(mode))

    def record_content_view(self, viewer_id: str, creator_id: str, category: str = None,
                            duration_ms: int = 0, session_id: str = None, language: str = None,
                            region: str = None) -> Dict:
        """Accept a view; it is applied asynchronously and the caller is always acked."""
        if not viewer_id:
            raise ValidationError("viewer_id is required", field="viewer_id")
        if not creator_id:
            raise ValidationError("creator_id is required", field="creator_id")
        if duration_ms is None or duration_ms < 0:
            raise ValidationError("duration_ms must be >= 0", field="duration_ms")

        event = ActivityEvent(
            event_id=str(uuid.uuid4()),
            event_type=EventType.VIEW,
            viewer_id=viewer_id,
            creator_id=creator_id,
            occurred_at=utcnow(),
            category=category,
            duration_ms=duration_ms,
            session_id=session_id,
            language=language,
            region=region,
        )
        self.writer.submit(self.activity.ingest_event, event)
        return {"status": "accepted", "event_id": event.event_id}

    def erase_viewer(self, viewer_id: str) -> bool:
        return self.interests.erase(viewer_id)

    # Admin operations

    def admin_get_fairness_report(self) -> FairnessAuditReport:
        return self.auditor.latest_report()

    def admin_get_shadow_density_stats(self) -> Dict:
        return self.density.stats()

    def list_flags(self, status: str = None, creator_id: str = None) -> List[ManipulationFlag]:
        if status is not None:
            try:
                status = FlagStatus(status)
            except ValueError:
                raise ValidationError(f"Unknown flag status: {status}", field="status")
        return self.detector.list_flags(status, creator_id)

    def review_flag(self, flag_id: str, reviewer: str) -> ManipulationFlag:
        return self.detector.start_review(flag_id, reviewer)

    def confirm_flag(self, flag_id: str, reviewer: str, reason: str = None) -> ManipulationFlag:
        return self.detector.confirm(flag_id, reviewer, reason)

    def dismiss_flag(self, flag_id: str, reviewer: str, reason: str = None) -> ManipulationFlag:
        return self.detector.dismiss(flag_id, reviewer, reason)

    # Background jobs

    def ingest_activity(self) -> int:
        return self.activity.ingest_since()

    def run_refresh_cycle(self) -> CycleReport:
        return self.scheduler.run_cycle()

    def run_audit(self) -> FairnessAuditReport:
        return self.auditor.run_audit()

    def rollover_impressions(self) -> int:
        return self.impressions.purge_old_buckets()

    def health(self) -> Dict:
        snapshot = self.index.snapshot()
        return {
            "status": "ok" if snapshot is not None else "degraded",
            "db_ok": health_check(self.db_path),
            "index_version": snapshot.version if snapshot else None,
            "creators_indexed": len(snapshot) if snapshot else 0,
            "pending_writes": self.writer.pending(),
            "detector_retries": len(self.detector.pending_retries()),
        }
