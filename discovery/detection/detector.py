"""
Manipulation Detector: classifies creator content, keeps manipulation flags and runs the
reviewer workflow (NEW -> UNDER_REVIEW -> CONFIRMED | DISMISSED).

Confidence bands:
    < new threshold                no flag
    [new, demote)                  NEW, no score impact
    [demote, confirm)              NEW, demoted at next recomputation
    >= confirm                     CONFIRMED and a moderation case is opened
"""

import json
import threading
import uuid
from dataclasses import dataclass
from typing import Dict, List, Optional, Set

from .base import IManipulationScorer
from .composite import default_scorer
from ..core.config import RankingConfig
from ..core.db import get_db
from ..core.errors import NotFound, ValidationError
from ..core.interfaces import ContentSource, ModerationIntake
from ..core.schema import (
    Classification, ContentDescriptor, FlagStatus, ManipulationFlag, format_ts, utcnow
)
from ..core.snapshot import SnapshotHolder
from ..util.logging import logger, sanitize_evidence


@dataclass
class FlagChange:
    """A flag write produced by classification. `base_status` is None for a new flag."""
    flag: ManipulationFlag
    base_status: Optional[FlagStatus]
    target: Optional[FlagStatus] = None
    reason: Optional[str] = None

    @property
    def status(self) -> FlagStatus:
        return self.target or self.flag.status


class FlagStore:
    """SQLite persistence for manipulation flags."""

    def __init__(self, db_path: str = None):
        self.db_path = db_path

    def save(self, flag: ManipulationFlag):
        with get_db(self.db_path) as conn:
            conn.execute(
                "INSERT INTO manipulation_flags (flag_id, creator_id, descriptor_ref, fingerprint, status, "
                "data, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(flag_id) DO UPDATE SET fingerprint = excluded.fingerprint, "
                "status = excluded.status, data = excluded.data, updated_at = excluded.updated_at",
                (flag.flag_id, flag.creator_id, flag.descriptor_ref, flag.fingerprint, flag.status.value,
                 json.dumps(flag.to_dict()), format_ts(flag.created_at), format_ts(flag.updated_at))
            )
            conn.commit()

    def get(self, flag_id: str) -> Optional[ManipulationFlag]:
        with get_db(self.db_path) as conn:
            row = conn.execute("SELECT data FROM manipulation_flags WHERE flag_id = ?", (flag_id,)).fetchone()
        return ManipulationFlag.from_dict(json.loads(row[0])) if row else None

    def for_descriptor(self, creator_id: str, descriptor_ref: str) -> List[ManipulationFlag]:
        """Flags of one descriptor, oldest first."""
        with get_db(self.db_path) as conn:
            rows = conn.execute(
                "SELECT data FROM manipulation_flags WHERE creator_id = ? AND descriptor_ref = ? "
                "ORDER BY created_at, flag_id",
                (creator_id, descriptor_ref)
            ).fetchall()
        return [ManipulationFlag.from_dict(json.loads(r[0])) for r in rows]

    def list_flags(self, status: FlagStatus = None, creator_id: str = None) -> List[ManipulationFlag]:
        query = "SELECT data FROM manipulation_flags WHERE 1=1"
        params = []
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)
        if creator_id is not None:
            query += " AND creator_id = ?"
            params.append(creator_id)
        query += " ORDER BY created_at, flag_id"

        with get_db(self.db_path) as conn:
            rows = conn.execute(query, params).fetchall()
        return [ManipulationFlag.from_dict(json.loads(r[0])) for r in rows]


class ManipulationDetector:
    """Turns classifications into flags and per-creator confidence for ranking."""

    def __init__(self, content: ContentSource, intake: ModerationIntake, config: RankingConfig,
                 scorer: IManipulationScorer = None, flags: FlagStore = None, db_path: str = None):
        self.content = content
        self.intake = intake
        self.config = config
        self.scorer = scorer or default_scorer(config.detector_combine_mode)
        self.flags = flags or FlagStore(db_path)
        # Creator ids excluded from every candidate pool
        self.exclusions = SnapshotHolder("exclusions")
        self._retry_lock = threading.Lock()
        self._retry: Set[str] = set()
        self._flag_lock = threading.Lock()

    def load(self):
        """Rebuild the exclusion set from stored flags."""
        self._publish_exclusions()

    # Classification

    def classify(self, descriptor: ContentDescriptor) -> Classification:
        """Score a descriptor without touching flags."""
        return self.scorer.classify(descriptor)

    def evaluate(self, creator_id: str, staged: List[FlagChange] = None) -> Classification:
        """
        Classify the creator's current descriptor, update its flags and return the confidence
        the relevance index should apply. Never raises: any failure fails open at confidence 0.

        When `staged` is given, flag writes are appended to it instead of applied; the caller
        commits them with apply_changes() once its own batch has been written.
        """
        try:
            descriptor = self.content.get_content_descriptor(creator_id)
        except Exception as e:
            return self._fail_open(creator_id, f"content source: {e}")

        if descriptor is None:
            self._clear_retry(creator_id)
            return Classification(confidence=0.0, scorer=self.scorer.name)

        fingerprint = descriptor.fingerprint()
        known = self._flag_for_fingerprint(creator_id, descriptor.descriptor_ref, fingerprint)
        if known is not None:
            self._clear_retry(creator_id)
            return self._effective(known)

        try:
            classification = self.scorer.classify(descriptor)
        except Exception as e:
            return self._fail_open(creator_id, f"scorer: {e}")

        if classification.degraded:
            self._add_retry(creator_id)
        else:
            self._clear_retry(creator_id)

        change = self._record(descriptor, fingerprint, classification)
        if change is None:
            return classification

        if staged is None:
            self.apply_changes([change])
        else:
            staged.append(change)
        return self._effective(change.flag, change.status, degraded=classification.degraded)

    def _effective(self, flag: ManipulationFlag, status: FlagStatus = None, degraded: bool = False) -> Classification:
        status = status or flag.status
        if status == FlagStatus.DISMISSED:
            confidence = 0.0
        else:
            confidence = flag.confidence
        return Classification(
            confidence=confidence,
            matched_categories=frozenset(flag.matched_categories),
            scorer=self.scorer.name,
            details={"flag_id": flag.flag_id, "flag_status": status.value},
            degraded=degraded,
        )

    def _fail_open(self, creator_id: str, reason: str) -> Classification:
        logger.log_detector_fail_open(creator_id, reason)
        self._add_retry(creator_id)
        return Classification(confidence=0.0, scorer=self.scorer.name, details={"reason": reason}, degraded=True)

    def _flag_for_fingerprint(self, creator_id: str, descriptor_ref: str, fingerprint: str) -> Optional[ManipulationFlag]:
        for flag in reversed(self.flags.for_descriptor(creator_id, descriptor_ref)):
            if flag.fingerprint == fingerprint:
                return flag
        return None

    def _record(self, descriptor: ContentDescriptor, fingerprint: str,
                classification: Classification) -> Optional[FlagChange]:
        """Work out the flag write for a fresh classification without storing anything."""
        confidence = classification.confidence
        matched = sorted(classification.matched_categories)
        now = utcnow()

        existing = self.flags.for_descriptor(descriptor.creator_id, descriptor.descriptor_ref)
        open_flag = next((f for f in reversed(existing) if not f.is_terminal), None)

        if open_flag is None:
            if confidence < self.config.flag_new_threshold:
                return None
            flag = ManipulationFlag(
                flag_id=str(uuid.uuid4()),
                creator_id=descriptor.creator_id,
                descriptor_ref=descriptor.descriptor_ref,
                fingerprint=fingerprint,
                confidence=confidence,
                matched_categories=matched,
                status=FlagStatus.NEW,
                created_at=now,
                updated_at=now,
            )
            change = FlagChange(flag, base_status=None)
        else:
            change = FlagChange(open_flag, base_status=open_flag.status)
            change.flag.fingerprint = fingerprint
            change.flag.confidence = confidence
            change.flag.matched_categories = matched
            change.flag.updated_at = now

        # Only NEW flags follow the classifier; UNDER_REVIEW belongs to the reviewer
        if change.flag.status == FlagStatus.NEW:
            if confidence < self.config.flag_new_threshold:
                change.target = FlagStatus.DISMISSED
                change.reason = "superseded by clean content"
            elif confidence >= self.config.flag_confirm_threshold:
                change.target = FlagStatus.CONFIRMED
                change.reason = "confidence above confirm threshold"
        return change

    def apply_changes(self, changes: List[FlagChange]) -> int:
        """Store staged flag writes. Returns how many were applied."""
        applied = 0
        with self._flag_lock:
            for change in changes:
                if self._apply(change):
                    applied += 1
        return applied

    def _apply(self, change: FlagChange) -> bool:
        flag = change.flag
        if change.base_status is None:
            logger.log_flag_transition(flag.flag_id, flag.creator_id, "-", FlagStatus.NEW.value,
                                       confidence=flag.confidence)
        else:
            stored = self.flags.get(flag.flag_id)
            if stored is None or stored.is_terminal:
                return False
            if stored.status != change.base_status:
                # A reviewer moved the flag after it was classified; carry the evidence only
                stored.fingerprint = flag.fingerprint
                stored.confidence = flag.confidence
                stored.matched_categories = flag.matched_categories
                stored.updated_at = flag.updated_at
                self.flags.save(stored)
                return True

        if change.target is not None:
            self._transition(flag, change.target, "system", change.reason)
        else:
            self.flags.save(flag)
        return True

    # Reviewer workflow

    def get_flag(self, flag_id: str) -> ManipulationFlag:
        flag = self.flags.get(flag_id)
        if flag is None:
            raise NotFound(f"Flag {flag_id} not found")
        return flag

    def list_flags(self, status: FlagStatus = None, creator_id: str = None) -> List[ManipulationFlag]:
        return self.flags.list_flags(status, creator_id)

    def start_review(self, flag_id: str, reviewer: str) -> ManipulationFlag:
        """NEW -> UNDER_REVIEW."""
        with self._flag_lock:
            flag = self.get_flag(flag_id)
            self._require(flag, [FlagStatus.NEW], FlagStatus.UNDER_REVIEW)
            return self._transition(flag, FlagStatus.UNDER_REVIEW, reviewer)

    def confirm(self, flag_id: str, reviewer: str, reason: str = None) -> ManipulationFlag:
        """Reviewer confirmation; the flag is treated as at least confirm-threshold confident."""
        with self._flag_lock:
            flag = self.get_flag(flag_id)
            self._require(flag, [FlagStatus.NEW, FlagStatus.UNDER_REVIEW], FlagStatus.CONFIRMED)
            flag.confidence = max(flag.confidence, self.config.flag_confirm_threshold)
            return self._transition(flag, FlagStatus.CONFIRMED, reviewer, reason)

    def dismiss(self, flag_id: str, reviewer: str, reason: str = None) -> ManipulationFlag:
        """Reviewer dismissal; the dismissed fingerprint contributes confidence 0."""
        with self._flag_lock:
            flag = self.get_flag(flag_id)
            self._require(flag, [FlagStatus.NEW, FlagStatus.UNDER_REVIEW], FlagStatus.DISMISSED)
            return self._transition(flag, FlagStatus.DISMISSED, reviewer, reason)

    def _require(self, flag: ManipulationFlag, allowed: List[FlagStatus], target: FlagStatus):
        if flag.status not in allowed:
            raise ValidationError(
                f"Cannot move flag {flag.flag_id} from {flag.status.value} to {target.value}",
                field="status"
            )

    def _transition(self, flag: ManipulationFlag, status: FlagStatus, actor: str,
                    reason: str = None) -> ManipulationFlag:
        old_status = flag.status
        flag.status = status
        flag.updated_at = utcnow()
        if actor != "system":
            flag.reviewer = actor
        if reason:
            flag.review_reason = reason

        if status == FlagStatus.CONFIRMED:
            self._open_case(flag)

        self.flags.save(flag)
        logger.log_flag_transition(flag.flag_id, flag.creator_id, old_status.value, status.value,
                                   actor=actor, confidence=flag.confidence)

        if status in (FlagStatus.CONFIRMED, FlagStatus.DISMISSED):
            self._publish_exclusions()
        return flag

    # Moderation cases

    def _open_case(self, flag: ManipulationFlag):
        if flag.case_id:
            return
        evidence = sanitize_evidence({
            "flag_id": flag.flag_id,
            "descriptor_ref": flag.descriptor_ref,
            "confidence": flag.confidence,
            "matched_categories": flag.matched_categories,
        })
        try:
            flag.case_id = self.intake.open_moderation_case(flag.creator_id, evidence)
            logger.log_operation("moderation.case_opened", "success",
                                 {"flag_id": flag.flag_id, "case_id": flag.case_id})
        except Exception as e:
            # Flag stays CONFIRMED without a case; retried by retry_pending_cases()
            logger.log_operation("moderation.case_opened", "failed",
                                 {"flag_id": flag.flag_id, "error": str(e)[:200]})

    def retry_pending_cases(self) -> int:
        """Open cases for CONFIRMED flags whose intake failed earlier. Returns cases opened."""
        opened = 0
        with self._flag_lock:
            for flag in self.flags.list_flags(FlagStatus.CONFIRMED):
                if flag.case_id:
                    continue
                self._open_case(flag)
                if flag.case_id:
                    self.flags.save(flag)
                    opened += 1
        return opened

    # Exclusions and retries

    def is_excluded(self, creator_id: str) -> bool:
        snapshot = self.exclusions.current()
        return snapshot is not None and creator_id in snapshot

    def _publish_exclusions(self):
        excluded: Dict[str, float] = {}
        for flag in self.flags.list_flags(FlagStatus.CONFIRMED):
            if flag.confidence >= self.config.flag_exclusion_cutoff:
                excluded[flag.creator_id] = max(flag.confidence, excluded.get(flag.creator_id, 0.0))
        self.exclusions.publish(excluded)

    def pending_retries(self) -> List[str]:
        with self._retry_lock:
            return sorted(self._retry)

    def _add_retry(self, creator_id: str):
        with self._retry_lock:
            self._retry.add(creator_id)

    def _clear_retry(self, creator_id: str):
        with self._retry_lock:
            self._retry.discard(creator_id)
