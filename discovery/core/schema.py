"""
Record and value types shared across the engine.
Stored records round-trip through to_dict()/from_dict() as JSON-friendly dicts.
"""

import hashlib
import json
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def parse_ts(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp written by to_dict()."""
    if value is None:
        return None
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def format_ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def day_bucket(ts: datetime) -> str:
    """Impression bucket key (UTC day) for a timestamp."""
    return ts.astimezone(timezone.utc).strftime("%Y-%m-%d")


class FeedMode(str, Enum):
    SWIPE = "swipe"
    INFINITE = "infinite"
    AI_DISCOVERY = "ai_discovery"
    POPULAR_TODAY = "popular_today"
    RISING_STARS = "rising_stars"
    LOW_COMPETITION = "low_competition"
    LIVE_NOW = "live_now"
    PROMO_EVENTS = "promo_events"


class RotationState(str, Enum):
    NORMAL = "NORMAL"
    LIMITED = "LIMITED"
    DEMOTED = "DEMOTED"


class FlagStatus(str, Enum):
    NEW = "NEW"
    UNDER_REVIEW = "UNDER_REVIEW"
    CONFIRMED = "CONFIRMED"
    DISMISSED = "DISMISSED"


class EventType(str, Enum):
    VIEW = "view"
    INTERACTION = "interaction"
    IMPRESSION = "impression"


SUB_SCORE_FACTORS = ("topical", "language", "region", "recency", "retention", "safety")


@dataclass
class ActivityEvent:
    """One entry of the external activity log."""
    event_id: str
    event_type: EventType
    viewer_id: str
    creator_id: str
    occurred_at: datetime
    category: Optional[str] = None
    duration_ms: int = 0
    session_id: Optional[str] = None
    language: Optional[str] = None
    region: Optional[str] = None


@dataclass
class ContentDescriptor:
    """Caption/title/thumbnail metadata supplied by the content subsystem."""
    creator_id: str
    descriptor_ref: str
    title: str = ""
    caption: str = ""
    thumbnail: Dict[str, Any] = field(default_factory=dict)

    def fingerprint(self) -> str:
        """Stable hash of the descriptor content, used to make classification idempotent."""
        canonical = json.dumps(
            {"title": self.title, "caption": self.caption, "thumbnail": self.thumbnail},
            sort_keys=True,
            default=str,
        )
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    @property
    def text(self) -> str:
        return f"{self.title}\n{self.caption}".strip()


@dataclass
class CreatorMetadata:
    creator_id: str
    joined_at: datetime
    categories: Dict[str, float] = field(default_factory=dict)
    languages: List[str] = field(default_factory=list)
    region: Optional[str] = None
    last_active_at: Optional[datetime] = None
    paid_spend: float = 0.0
    tags: List[str] = field(default_factory=list)

    @property
    def primary_language(self) -> Optional[str]:
        return self.languages[0] if self.languages else None


@dataclass
class Classification:
    """Output of a manipulation scorer."""
    confidence: float
    matched_categories: FrozenSet[str] = frozenset()
    scorer: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    degraded: bool = False

    def __post_init__(self):
        self.confidence = max(0.0, min(1.0, float(self.confidence)))
        self.matched_categories = frozenset(self.matched_categories)


@dataclass
class ViewerInterestProfile:
    viewer_id: str
    affinities: Dict[str, float] = field(default_factory=dict)
    active_mode: str = FeedMode.SWIPE.value
    language: Optional[str] = None
    region: Optional[str] = None
    updated_at: datetime = field(default_factory=utcnow)

    def relative_affinities(self) -> Dict[str, float]:
        """Affinities scaled so the strongest category is 1.0."""
        positive = {k: v for k, v in self.affinities.items() if v > 0}
        if not positive:
            return {}
        top = max(positive.values())
        return {k: v / top for k, v in positive.items()}

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["updated_at"] = format_ts(self.updated_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> "ViewerInterestProfile":
        data = dict(data)
        data["updated_at"] = parse_ts(data["updated_at"])
        return cls(**data)


@dataclass(frozen=True)
class SubScores:
    """The six relevance factors, each within [0, 1]."""
    topical: float = 0.0
    language: float = 0.0
    region: float = 0.0
    recency: float = 0.0
    retention: float = 0.0
    safety: float = 1.0

    def __post_init__(self):
        for name in SUB_SCORE_FACTORS:
            value = float(getattr(self, name))
            object.__setattr__(self, name, max(0.0, min(1.0, value)))

    def as_dict(self) -> Dict[str, float]:
        return {name: getattr(self, name) for name in SUB_SCORE_FACTORS}

    def weighted_sum(self, weights: Dict[str, float]) -> float:
        return sum(weights[name] * getattr(self, name) for name in SUB_SCORE_FACTORS)


@dataclass(frozen=True)
class CreatorRelevanceRecord:
    creator_id: str
    sub_scores: SubScores
    weighted_sum: float
    composite_score: float
    generation: int
    manipulation_confidence: float = 0.0
    manipulation_multiplier: float = 1.0
    rotation_state: RotationState = RotationState.NORMAL
    category_weights: Dict[str, float] = field(default_factory=dict)
    tags: FrozenSet[str] = frozenset()
    languages: tuple = ()
    region: Optional[str] = None
    computed_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict:
        return {
            "creator_id": self.creator_id,
            "sub_scores": self.sub_scores.as_dict(),
            "weighted_sum": self.weighted_sum,
            "composite_score": self.composite_score,
            "generation": self.generation,
            "manipulation_confidence": self.manipulation_confidence,
            "manipulation_multiplier": self.manipulation_multiplier,
            "rotation_state": self.rotation_state.value,
            "category_weights": dict(self.category_weights),
            "tags": sorted(self.tags),
            "languages": list(self.languages),
            "region": self.region,
            "computed_at": format_ts(self.computed_at),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "CreatorRelevanceRecord":
        return cls(
            creator_id=data["creator_id"],
            sub_scores=SubScores(**data["sub_scores"]),
            weighted_sum=data["weighted_sum"],
            composite_score=data["composite_score"],
            generation=data["generation"],
            manipulation_confidence=data.get("manipulation_confidence", 0.0),
            manipulation_multiplier=data.get("manipulation_multiplier", 1.0),
            rotation_state=RotationState(data.get("rotation_state", RotationState.NORMAL.value)),
            category_weights=data.get("category_weights", {}),
            tags=frozenset(data.get("tags", [])),
            languages=tuple(data.get("languages", [])),
            region=data.get("region"),
            computed_at=parse_ts(data.get("computed_at")) or utcnow(),
        )


@dataclass(frozen=True)
class RotationEntry:
    creator_id: str
    rolling_impressions: int
    state: RotationState = RotationState.NORMAL
    density_penalty: float = 0.0
    selection_cap: float = 1.0
    percentile_rank: float = 0.0
    under_served: bool = False

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["state"] = self.state.value
        return data


@dataclass
class ManipulationFlag:
    flag_id: str
    creator_id: str
    descriptor_ref: str
    fingerprint: str
    confidence: float
    matched_categories: List[str]
    status: FlagStatus
    created_at: datetime
    updated_at: datetime
    case_id: Optional[str] = None
    reviewer: Optional[str] = None
    review_reason: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (FlagStatus.CONFIRMED, FlagStatus.DISMISSED)

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["status"] = self.status.value
        data["created_at"] = format_ts(self.created_at)
        data["updated_at"] = format_ts(self.updated_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> "ManipulationFlag":
        data = dict(data)
        data["status"] = FlagStatus(data["status"])
        data["created_at"] = parse_ts(data["created_at"])
        data["updated_at"] = parse_ts(data["updated_at"])
        return cls(**data)


@dataclass(frozen=True)
class CorrectiveParameters:
    """Adjustments written by the fairness auditor and read by the online path."""
    guaranteed_slot_boost: int = 0
    density_threshold_factor: float = 1.0
    reason: str = ""
    issued_by_audit: Optional[str] = None
    expires_at: Optional[datetime] = None

    def is_active(self, now: datetime = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) < self.expires_at

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["expires_at"] = format_ts(self.expires_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> "CorrectiveParameters":
        data = dict(data)
        data["expires_at"] = parse_ts(data.get("expires_at"))
        return cls(**data)


NEUTRAL_CORRECTIONS = CorrectiveParameters()


@dataclass(frozen=True)
class FairnessAuditReport:
    audit_id: str
    metrics: Dict[str, float]
    breaches: tuple
    passed: bool
    corrective_actions: tuple
    created_at: datetime

    def to_dict(self) -> Dict:
        return {
            "audit_id": self.audit_id,
            "metrics": dict(self.metrics),
            "breaches": list(self.breaches),
            "passed": self.passed,
            "corrective_actions": list(self.corrective_actions),
            "created_at": format_ts(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "FairnessAuditReport":
        return cls(
            audit_id=data["audit_id"],
            metrics=data["metrics"],
            breaches=tuple(data["breaches"]),
            passed=data["passed"],
            corrective_actions=tuple(data["corrective_actions"]),
            created_at=parse_ts(data["created_at"]),
        )


@dataclass
class FeedItem:
    creator_id: str
    explanation: Dict[str, Any]


@dataclass
class FeedResult:
    items: List[FeedItem] = field(default_factory=list)
    has_more: bool = False
    next_cursor: Optional[str] = None
    status: str = "ok"  # ok|unavailable
    generation: Optional[int] = None
    stale: bool = False

    @property
    def available(self) -> bool:
        return self.status == "ok"

    @classmethod
    def unavailable(cls) -> "FeedResult":
        return cls(status="unavailable")


@dataclass
class CycleReport:
    """Completion report for one background job run."""
    cycle_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    requested: int = 0
    processed: int = 0
    failed_batches: int = 0
    retried_batches: int = 0
    failed_creators: List[str] = field(default_factory=list)
    cancelled: bool = False
    status: str = "running"  # running|completed|partial|cancelled

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["started_at"] = format_ts(self.started_at)
        data["finished_at"] = format_ts(self.finished_at)
        return data
