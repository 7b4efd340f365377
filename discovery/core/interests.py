"""
Interest Profile Store: per-viewer category affinities derived from the activity log.
"""

import json
from typing import Callable, Optional

from .config import RETENTION_TARGET_MS
from .db import get_db, immediate_transaction
from .schema import ActivityEvent, EventType, FeedMode, ViewerInterestProfile, utcnow
from ..util.logging import logger

# Affinity added per event; views scale with watch time
VIEW_BASE_AFFINITY = 0.1
VIEW_WATCH_AFFINITY = 0.9
INTERACTION_AFFINITY = 1.0


class InterestProfileStore:
    """Reads and incrementally mutates viewer interest profiles."""

    def __init__(self, db_path: str = None, retention_target_ms: int = RETENTION_TARGET_MS):
        self.db_path = db_path
        self.retention_target_ms = retention_target_ms

    def get_profile(self, viewer_id: str) -> Optional[ViewerInterestProfile]:
        """Get a viewer's profile, or None if the viewer has no recorded activity."""
        if not viewer_id or not viewer_id.strip():
            return None

        with get_db(self.db_path) as conn:
            row = conn.execute(
                "SELECT data FROM interest_profiles WHERE viewer_id = ?",
                (viewer_id.strip(),)
            ).fetchone()

        return ViewerInterestProfile.from_dict(json.loads(row[0])) if row else None

    def affinity_increment(self, event: ActivityEvent) -> float:
        """Affinity gained by the event's category."""
        if event.event_type == EventType.INTERACTION:
            return INTERACTION_AFFINITY
        if event.event_type == EventType.VIEW:
            watched = min(1.0, max(0, event.duration_ms) / self.retention_target_ms)
            return VIEW_BASE_AFFINITY + VIEW_WATCH_AFFINITY * watched
        # Exposure alone is not interest
        return 0.0

    def apply_event(self, event: ActivityEvent) -> ViewerInterestProfile:
        """Fold one activity event into the viewer's profile, creating it on first activity."""
        increment = self.affinity_increment(event)

        def mutate(profile: ViewerInterestProfile):
            if event.category and increment > 0:
                profile.affinities[event.category] = profile.affinities.get(event.category, 0.0) + increment
            if event.language:
                profile.language = event.language
            if event.region:
                profile.region = event.region

        return self._mutate(event.viewer_id, mutate)

    def set_active_mode(self, viewer_id: str, mode: FeedMode) -> ViewerInterestProfile:
        """Record the viewer's active discovery mode."""
        def mutate(profile: ViewerInterestProfile):
            profile.active_mode = mode.value

        profile = self._mutate(viewer_id, mutate)
        logger.log_operation("interests.switch_mode", "success", {"viewer_id": viewer_id, "mode": mode.value})
        return profile

    def erase(self, viewer_id: str) -> bool:
        """Delete a viewer's profile (account erasure)."""
        with get_db(self.db_path) as conn:
            cursor = conn.execute("DELETE FROM interest_profiles WHERE viewer_id = ?", (viewer_id,))
            conn.commit()
            deleted = cursor.rowcount > 0

        logger.log_operation("interests.erase", "success" if deleted else "not_found", {"viewer_id": viewer_id})
        return deleted

    def count(self) -> int:
        with get_db(self.db_path) as conn:
            return conn.execute("SELECT COUNT(*) FROM interest_profiles").fetchone()[0]

    def _mutate(self, viewer_id: str, mutate: Callable[[ViewerInterestProfile], None]) -> ViewerInterestProfile:
        # BEGIN IMMEDIATE serializes concurrent writers to the same profile
        with immediate_transaction(self.db_path) as conn:
            row = conn.execute(
                "SELECT data FROM interest_profiles WHERE viewer_id = ?", (viewer_id,)
            ).fetchone()
            profile = (
                ViewerInterestProfile.from_dict(json.loads(row[0]))
                if row else ViewerInterestProfile(viewer_id=viewer_id)
            )

            mutate(profile)
            profile.updated_at = utcnow()

            conn.execute(
                "INSERT INTO interest_profiles (viewer_id, data, updated_at) VALUES (?, ?, ?) "
                "ON CONFLICT(viewer_id) DO UPDATE SET data = excluded.data, updated_at = excluded.updated_at",
                (viewer_id, json.dumps(profile.to_dict()), profile.updated_at.isoformat())
            )

        return profile
