"""
Sub-score calculators. Each returns a value in [0, 1].
"""

from datetime import datetime
from typing import Dict, Iterable, Optional

from .constants import (
    DECLARED_CATEGORY_BLEND,
    LANGUAGE_MISMATCH_SCORE,
    MATCH_SCORE,
    MODE_REQUIRED_TAGS,
    NO_AUDIENCE_SCORE,
    NO_VIEWS_RETENTION,
    RECENCY_DECAY_POINTS,
    RECENCY_FLOOR,
    REGION_MISMATCH_SCORE,
)
from ..core.config import RankingConfig
from ..core.schema import FeedMode, utcnow


def clamp01(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


def mode_accepts(mode: FeedMode, tags: Iterable[str]) -> bool:
    """Whether a creator with `tags` belongs in the candidate pool of `mode`."""
    required = MODE_REQUIRED_TAGS.get(mode)
    return required is None or required <= set(tags)


class RecencyScorer:
    """Piecewise-linear decay on the age of the creator's last activity.

    Decay curve:
        - <= 1 day:   1.00
        - 7 days:     0.30
        - 30 days:    0.05
        - > 30 days:  0.05
    """

    def __init__(self, points=None):
        self.points = points or RECENCY_DECAY_POINTS

    def calc(self, last_active_at: Optional[datetime], now: datetime = None) -> float:
        if last_active_at is None:
            return RECENCY_FLOOR
        age_days = max(0.0, ((now or utcnow()) - last_active_at).total_seconds() / 86400.0)

        for (x0, y0), (x1, y1) in zip(self.points, self.points[1:]):
            if age_days <= x1:
                if x1 == x0:
                    return y1
                return y0 + (y1 - y0) * (age_days - x0) / (x1 - x0)
        return self.points[-1][1]


class TopicalScorer:
    """Creator topical vectors and their match against viewer affinities."""

    def __init__(self, declared_blend: float = DECLARED_CATEGORY_BLEND):
        self.declared_blend = declared_blend

    def creator_weights(self, declared: Dict[str, float], audience_counts: Dict[str, int]) -> Dict[str, float]:
        """Blend declared category weights with the audience's watched-category mix."""
        declared = {k: clamp01(v) for k, v in (declared or {}).items()}
        total = sum(audience_counts.values()) if audience_counts else 0
        if not total:
            return declared
        if not declared:
            top = max(audience_counts.values())
            return {k: v / top for k, v in audience_counts.items()}

        top = max(audience_counts.values())
        observed = {k: v / top for k, v in audience_counts.items()}
        categories = set(declared) | set(observed)
        return {
            c: clamp01(self.declared_blend * declared.get(c, 0.0) + (1 - self.declared_blend) * observed.get(c, 0.0))
            for c in categories
        }

    def calc_creator(self, weights: Dict[str, float]) -> float:
        """Creator-level coherence: strength of its strongest category."""
        return max(weights.values()) if weights else 0.0

    def calc_personalized(self, affinities: Dict[str, float], weights: Dict[str, float]) -> float:
        """Affinity-weighted mean of the creator's category weights.

        `affinities` are relative (strongest viewer category = 1.0). Non-decreasing in
        each creator category weight.
        """
        total = sum(affinities.values())
        if total <= 0:
            return self.calc_creator(weights)
        return clamp01(sum(a * weights.get(c, 0.0) for c, a in affinities.items()) / total)


class AudienceShareScorer:
    """Share of a creator's audience matching a given language or region."""

    def calc(self, counts: Dict[str, int], value: Optional[str]) -> float:
        total = sum(counts.values()) if counts else 0
        if not total or value is None:
            return NO_AUDIENCE_SCORE
        return clamp01(counts.get(value, 0) / total)


class RetentionScorer:
    """Mean per-view retention, each view capped at 1.0 of the target watch time."""

    def calc(self, views: int, retention_sum: float) -> float:
        if views <= 0:
            return NO_VIEWS_RETENTION
        return clamp01(retention_sum / views)


class PersonalMatchScorer:
    """Viewer-relative language and region scores."""

    def language(self, viewer_language: Optional[str], creator_languages: Iterable[str], base: float) -> float:
        if not viewer_language:
            return base
        return MATCH_SCORE if viewer_language in set(creator_languages) else LANGUAGE_MISMATCH_SCORE

    def region(self, viewer_region: Optional[str], creator_region: Optional[str], base: float) -> float:
        if not viewer_region or not creator_region:
            return base
        return MATCH_SCORE if viewer_region == creator_region else REGION_MISMATCH_SCORE


class ManipulationPenalty:
    """Maps a manipulation confidence to a composite multiplier."""

    def __init__(self, config: RankingConfig):
        self.config = config

    def multiplier(self, confidence: float) -> float:
        if confidence >= self.config.flag_confirm_threshold:
            return clamp01(1.0 - confidence)
        if confidence >= self.config.flag_demote_threshold:
            return clamp01(1.0 - self.config.medium_band_demotion * confidence)
        return 1.0

    def demotes(self, confidence: float) -> bool:
        """Whether the confidence forces the DEMOTED rotation state."""
        return confidence >= self.config.flag_confirm_threshold
