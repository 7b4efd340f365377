"""
Ranking Orchestrator: builds a viewer's feed page from the current relevance and
rotation snapshots.

Per request the orchestrator binds one relevance snapshot and one rotation snapshot and
never re-reads shared state mid-request. Impression counting is handed to the background
writer and never blocks the response.
"""

import base64
import binascii
import hashlib
import json
import sqlite3
import threading
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from .constants import CURSOR_GENERATION, CURSOR_LIMIT, CURSOR_OFFSET, NEW_CREATOR_TAG, SHARED_VIEWER
from .density import ShadowDensityController
from .relevance_index import CreatorRelevanceIndex
from .scorers import PersonalMatchScorer, TopicalScorer, mode_accepts
from ..core.cache import SimpleCache
from ..core.config import RankingConfig
from ..core.corrections import CorrectiveParameterStore
from ..core.errors import UpstreamUnavailable, ValidationError
from ..core.impressions import ImpressionCounter
from ..core.interests import InterestProfileStore
from ..core.schema import (
    NEUTRAL_CORRECTIONS, CreatorRelevanceRecord, FeedItem, FeedMode, FeedResult, RotationEntry, RotationState,
    SubScores, ViewerInterestProfile, day_bucket, utcnow
)
from ..core.snapshot import Snapshot
from ..core.writer import BackgroundWriter
from ..detection.detector import ManipulationDetector
from ..util.logging import logger


def parse_mode(mode) -> FeedMode:
    """Validate a feed mode name."""
    if isinstance(mode, FeedMode):
        return mode
    try:
        return FeedMode(mode)
    except ValueError:
        raise ValidationError(
            f"Unknown feed mode: {mode}. Expected one of {[m.value for m in FeedMode]}",
            field="mode"
        )


def encode_cursor(offset: int, page_size: int, generation: int) -> str:
    payload = json.dumps({CURSOR_OFFSET: offset, CURSOR_LIMIT: page_size, CURSOR_GENERATION: generation})
    return base64.urlsafe_b64encode(payload.encode("utf-8")).decode("ascii")


def decode_cursor(cursor: str) -> Dict[str, int]:
    """Decode an opaque cursor. Raises ValidationError if it is malformed."""
    try:
        data = json.loads(base64.urlsafe_b64decode(cursor.encode("ascii")).decode("utf-8"))
        offset = int(data[CURSOR_OFFSET])
        page_size = int(data[CURSOR_LIMIT])
        generation = int(data[CURSOR_GENERATION])
    except (binascii.Error, UnicodeError, ValueError, KeyError, TypeError, AttributeError):
        raise ValidationError("Malformed cursor", field="cursor")

    if offset < 0 or page_size < 1:
        raise ValidationError("Malformed cursor", field="cursor")
    return {"offset": offset, "page_size": page_size, "generation": generation}


def selection_draw(viewer_id: str, creator_id: str, day: str) -> float:
    """Deterministic uniform draw in [0, 1) per (viewer, creator, day)."""
    digest = hashlib.sha256(f"{viewer_id}|{creator_id}|{day}".encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") / 2 ** 64


class RankingOrchestrator:

    def __init__(self, index: CreatorRelevanceIndex, density: ShadowDensityController,
                 detector: ManipulationDetector, interests: InterestProfileStore,
                 impressions: ImpressionCounter, corrections: CorrectiveParameterStore,
                 config: RankingConfig, writer: BackgroundWriter = None):
        self.index = index
        self.density = density
        self.detector = detector
        self.interests = interests
        self.impressions = impressions
        self.corrections = corrections
        self.config = config
        self.writer = writer or BackgroundWriter("impression-writer")

        self.topical = TopicalScorer()
        self.personal = PersonalMatchScorer()
        self.cache = SimpleCache(default_ttl=config.feed_cache_ttl_sec)
        self._inflight = threading.BoundedSemaphore(config.max_inflight_requests)
        self._shared_lock = threading.Lock()
        self._last_good: Optional[Snapshot] = None

    def get_feed(self, viewer_id: str, mode=None, cursor: str = None, limit: int = None,
                 session_id: str = None, now: datetime = None) -> FeedResult:
        """
        Build one feed page.

        Args:
            viewer_id: Requesting viewer
            mode: Feed mode name; None uses the viewer's active mode
            cursor: Opaque cursor from a previous page, None for page one
            limit: Page size, 1..FEED_MAX_LIMIT
            session_id: Client session, part of the impression idempotency key

        Raises:
            ValidationError: unknown mode, bad limit or malformed cursor
        """
        now = now or utcnow()

        if not viewer_id or not str(viewer_id).strip():
            raise ValidationError("viewer_id is required", field="viewer_id")

        limit = self._validate_limit(limit)
        position = decode_cursor(cursor) if cursor else None
        feed_mode = parse_mode(mode) if mode is not None else None

        profile = self._get_profile(viewer_id)
        if feed_mode is None:
            feed_mode = parse_mode(profile.active_mode if profile else FeedMode.SWIPE)

        snapshot, stale = self._bind_snapshot()
        if snapshot is None:
            logger.log_feed_served(viewer_id, feed_mode.value, 0, 0, status="unavailable")
            return FeedResult.unavailable()

        offset = position["offset"] if position else 0
        page_size = position["page_size"] if position else limit

        rotation = self.density.snapshot()
        cache_key = "|".join([
            viewer_id, feed_mode.value, str(snapshot.version),
            str(rotation.version if rotation else 0), str(page_size), day_bucket(now)
        ])

        # Later pages reuse the ranking page one was cut from while it is cached
        ranked = self.cache.get(cache_key) if position else None
        shared = False
        if ranked is None:
            if self._inflight.acquire(blocking=False):
                try:
                    ranked = self._rank(viewer_id, feed_mode, profile, snapshot, rotation, page_size, now)
                    self.cache.set(cache_key, ranked)
                finally:
                    self._inflight.release()
            else:
                ranked = self.cache.get(cache_key)
                if ranked is None:
                    # Saturated: serve the unpersonalized ranking every viewer shares
                    shared = True
                    ranked = [r for r in self._shared_ranking(feed_mode, snapshot, rotation, page_size, now)
                              if r[0] != viewer_id]

        page = ranked[offset:offset + limit]
        has_more = offset + limit < len(ranked)
        next_cursor = encode_cursor(offset + limit, page_size, snapshot.version) if has_more else None

        items = [FeedItem(creator_id=creator_id, explanation=explanation) for creator_id, explanation in page]
        for item in items:
            self.writer.submit(self.impressions.record, item.creator_id, viewer_id, session_id, now)

        logger.log_feed_served(viewer_id, feed_mode.value, len(items), snapshot.version,
                               status="overloaded" if shared else "success",
                               details={"offset": offset, "stale": stale, "shared": shared})
        return FeedResult(
            items=items,
            has_more=has_more,
            next_cursor=next_cursor,
            generation=snapshot.version,
            stale=stale or shared,
        )

    def _shared_ranking(self, mode: FeedMode, snapshot: Snapshot, rotation: Optional[Snapshot],
                        page_size: int, now: datetime) -> List[Tuple[str, Dict]]:
        """Unpersonalized ranking for one mode and generation, built once and cached."""
        key = "|".join([
            SHARED_VIEWER, mode.value, str(snapshot.version),
            str(rotation.version if rotation else 0), str(page_size), day_bucket(now)
        ])
        ranked = self.cache.get(key)
        if ranked is not None:
            return ranked

        with self._shared_lock:
            ranked = self.cache.get(key)
            if ranked is None:
                ranked = self._rank(SHARED_VIEWER, mode, None, snapshot, rotation, page_size, now)
                self.cache.set(key, ranked)
        return ranked

    def _validate_limit(self, limit) -> int:
        if limit is None:
            return self.config.feed_default_limit
        if isinstance(limit, bool) or not isinstance(limit, int):
            raise ValidationError("limit must be an integer", field="limit")
        if not 1 <= limit <= self.config.feed_max_limit:
            raise ValidationError(f"limit must be between 1 and {self.config.feed_max_limit}", field="limit")
        return limit

    def _get_profile(self, viewer_id: str) -> Optional[ViewerInterestProfile]:
        try:
            return self.interests.get_profile(viewer_id)
        except sqlite3.Error as e:
            # Rank unpersonalized rather than fail the page
            logger.warning(f"Interest profile unavailable for {viewer_id}: {e}")
            return None

    def _bind_snapshot(self) -> Tuple[Optional[Snapshot], bool]:
        """Current relevance snapshot, else the last good one (stale), else None."""
        try:
            snapshot = self.index.snapshot()
        except UpstreamUnavailable as e:
            logger.warning(f"Relevance index unavailable: {e}")
            snapshot = None

        if snapshot is not None:
            self._last_good = snapshot
            return snapshot, False
        if self._last_good is not None:
            return self._last_good, True
        return None, False

    def _rank(self, viewer_id: str, mode: FeedMode, profile: Optional[ViewerInterestProfile],
              snapshot: Snapshot, rotation: Optional[Snapshot], page_size: int,
              now: datetime) -> List[Tuple[str, Dict]]:
        day = day_bucket(now)
        affinities = profile.relative_affinities() if profile else {}

        scored = []
        for record in snapshot.entries.values():
            if record.creator_id == viewer_id:
                continue
            if not mode_accepts(mode, record.tags):
                continue
            if self.detector.is_excluded(record.creator_id):
                continue

            entry = rotation.get(record.creator_id) if rotation else None
            entry = entry or RotationEntry(creator_id=record.creator_id, rolling_impressions=0)
            if entry.state == RotationState.LIMITED and selection_draw(viewer_id, record.creator_id, day) >= entry.selection_cap:
                continue

            scored.append(self._score(record, entry, profile, affinities))

        cumulative = self._cumulative_counts([s["creator_id"] for s in scored], rotation)
        scored.sort(key=lambda s: (-s["composite"], cumulative.get(s["creator_id"], 0), s["creator_id"]))

        ranked = self._apply_guaranteed_slots(viewer_id, scored, page_size)
        return [(s["creator_id"], self._explain(s, snapshot.version)) for s in ranked]

    def _score(self, record: CreatorRelevanceRecord, entry: RotationEntry,
               profile: Optional[ViewerInterestProfile], affinities: Dict[str, float]) -> Dict:
        base = record.sub_scores
        if profile is not None:
            sub_scores = SubScores(
                topical=self.topical.calc_personalized(affinities, record.category_weights) if affinities else base.topical,
                language=self.personal.language(profile.language, record.languages, base.language),
                region=self.personal.region(profile.region, record.region, base.region),
                recency=base.recency,
                retention=base.retention,
                safety=base.safety,
            )
        else:
            sub_scores = base

        weighted_sum = sub_scores.weighted_sum(self.config.weights)
        relevance = weighted_sum * record.manipulation_multiplier
        penalty = entry.density_penalty
        if self.config.density_penalty_policy == "multiplicative":
            composite = relevance * (1.0 - penalty)
        else:
            composite = max(0.0, relevance - penalty)

        return {
            "creator_id": record.creator_id,
            "record": record,
            "entry": entry,
            "sub_scores": sub_scores,
            "weighted_sum": weighted_sum,
            "composite": composite,
            "affinity_match": bool(affinities),
            "guaranteed_slot": False,
        }

    def _cumulative_counts(self, creator_ids: List[str], rotation: Optional[Snapshot]) -> Dict[str, int]:
        try:
            return self.impressions.cumulative_counts(creator_ids)
        except sqlite3.Error as e:
            logger.warning(f"Cumulative impressions unavailable, using rolling counts: {e}")
            if rotation is None:
                return {}
            return {c: rotation.get(c).rolling_impressions for c in creator_ids if c in rotation}

    def _current_corrections(self):
        try:
            return self.corrections.current()
        except sqlite3.Error as e:
            logger.warning(f"Corrective parameters unavailable, using neutral values: {e}")
            return NEUTRAL_CORRECTIONS

    def _apply_guaranteed_slots(self, viewer_id: str, scored: List[Dict], page_size: int) -> List[Dict]:
        """Make sure page one carries at least N under-served creators."""
        corrections = self._current_corrections()
        required = min(self.config.guaranteed_slots + corrections.guaranteed_slot_boost, page_size)
        if required <= 0:
            return scored

        page = scored[:page_size]
        rest = scored[page_size:]
        present = sum(1 for s in page if s["entry"].under_served)
        if present >= required:
            return scored

        need = required - present
        waiting = [s for s in rest if s["entry"].under_served]
        qualified = [s for s in waiting if s["weighted_sum"] >= self.config.relevance_floor]
        promoted = qualified[:need]
        if len(promoted) < need:
            chosen = {s["creator_id"] for s in promoted}
            promoted += [s for s in waiting if s["creator_id"] not in chosen][:need - len(promoted)]

        if len(qualified) < need:
            logger.log_fairness_shortfall(viewer_id, required, present + len(qualified), present + len(promoted))

        if not promoted:
            return scored

        for s in promoted:
            s["guaranteed_slot"] = True

        # Lowest-ranked non-under-served page items make room
        overflow = max(0, len(page) + len(promoted) - page_size)
        demoted = []
        for s in reversed(page):
            if len(demoted) >= overflow:
                break
            if not s["entry"].under_served:
                demoted.append(s)

        demoted_ids = {s["creator_id"] for s in demoted}
        kept = [s for s in page if s["creator_id"] not in demoted_ids]
        promoted_ids = {s["creator_id"] for s in promoted}
        remaining = [s for s in rest if s["creator_id"] not in promoted_ids]
        return kept + promoted + list(reversed(demoted)) + remaining

    def _explain(self, scored: Dict, generation: int) -> Dict:
        record: CreatorRelevanceRecord = scored["record"]
        entry: RotationEntry = scored["entry"]
        sub_scores: SubScores = scored["sub_scores"]

        state = RotationState.DEMOTED if record.rotation_state == RotationState.DEMOTED else entry.state

        reasons = []
        if scored["affinity_match"] and sub_scores.topical >= 0.5:
            reasons.append("matches your interests")
        if sub_scores.language >= 1.0:
            reasons.append("speaks your language")
        if sub_scores.region >= 1.0:
            reasons.append("near you")
        if NEW_CREATOR_TAG in record.tags:
            reasons.append("new creator")
        if scored["guaranteed_slot"]:
            reasons.append("fair exposure slot")
        if state == RotationState.LIMITED:
            reasons.append("exposure limited by rotation")

        return {
            "display_score": round(max(0.0, min(100.0, 100.0 * scored["composite"])), 2),
            "sub_scores": {k: round(v, 4) for k, v in sub_scores.as_dict().items()},
            "weighted_sum": round(scored["weighted_sum"], 6),
            "density_penalty": round(entry.density_penalty, 6),
            "rotation_state": state.value,
            "manipulation_multiplier": round(record.manipulation_multiplier, 6),
            "guaranteed_slot": scored["guaranteed_slot"],
            "under_served": entry.under_served,
            "reasons": reasons,
            "record_generation": record.generation,
            "generation": generation,
        }
