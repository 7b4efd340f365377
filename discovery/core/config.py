"""
Engine configuration.
Every tunable threshold is read from the environment with a typed default; thresholds are
product-tunable constants, not hard invariants.
"""

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, List

# Database path configuration
DB_PATH = os.getenv("DISCOVERY_DB_PATH", "./data/discovery.db")

# Debug flag is now a function to be dynamic
DEBUG = os.getenv("DEBUG", "false").lower() == "true"

# Composite score weights (must sum to exactly 1.0)
WEIGHT_TOPICAL = float(os.getenv("WEIGHT_TOPICAL", "0.35"))
WEIGHT_LANGUAGE = float(os.getenv("WEIGHT_LANGUAGE", "0.15"))
WEIGHT_REGION = float(os.getenv("WEIGHT_REGION", "0.10"))
WEIGHT_RECENCY = float(os.getenv("WEIGHT_RECENCY", "0.15"))
WEIGHT_RETENTION = float(os.getenv("WEIGHT_RETENTION", "0.15"))
WEIGHT_SAFETY = float(os.getenv("WEIGHT_SAFETY", "0.10"))

# Shadow density (rotation) controls
DENSITY_THRESHOLD = int(os.getenv("DENSITY_THRESHOLD", "2000000"))
DENSITY_MAX_PENALTY = float(os.getenv("DENSITY_MAX_PENALTY", "0.10"))
DENSITY_PENALTY_POLICY = os.getenv("DENSITY_PENALTY_POLICY", "subtractive")  # subtractive|multiplicative
DENSITY_WINDOW_DAYS = int(os.getenv("DENSITY_WINDOW_DAYS", "7"))
LIMITED_SELECTION_CAP = float(os.getenv("LIMITED_SELECTION_CAP", "0.5"))
UNDER_SERVED_PERCENTILE = float(os.getenv("UNDER_SERVED_PERCENTILE", "20"))

# Guaranteed slots on page one
GUARANTEED_SLOTS = int(os.getenv("GUARANTEED_SLOTS", "3"))
RELEVANCE_FLOOR = float(os.getenv("RELEVANCE_FLOOR", "0.30"))

# Manipulation detector confidence bands
FLAG_NEW_THRESHOLD = float(os.getenv("FLAG_NEW_THRESHOLD", "0.25"))
FLAG_DEMOTE_THRESHOLD = float(os.getenv("FLAG_DEMOTE_THRESHOLD", "0.5"))
FLAG_CONFIRM_THRESHOLD = float(os.getenv("FLAG_CONFIRM_THRESHOLD", "0.75"))
FLAG_EXCLUSION_CUTOFF = float(os.getenv("FLAG_EXCLUSION_CUTOFF", "0.9"))
MEDIUM_BAND_DEMOTION = float(os.getenv("MEDIUM_BAND_DEMOTION", "0.5"))
DETECTOR_COMBINE_MODE = os.getenv("DETECTOR_COMBINE_MODE", "noisy_or")  # max|noisy_or

# Sub-score inputs
RETENTION_TARGET_MS = int(os.getenv("RETENTION_TARGET_MS", "30000"))
NEW_CREATOR_AGE_DAYS = int(os.getenv("NEW_CREATOR_AGE_DAYS", "30"))

# Refresh scheduler
REFRESH_INTERVAL_SEC = int(os.getenv("REFRESH_INTERVAL_SEC", "300"))
REFRESH_BATCH_SIZE = int(os.getenv("REFRESH_BATCH_SIZE", "200"))
REFRESH_WINDOW_HOURS = int(os.getenv("REFRESH_WINDOW_HOURS", "24"))
MAX_CREATORS_PER_CYCLE = int(os.getenv("MAX_CREATORS_PER_CYCLE", "20000"))
REFRESH_TIME_BUDGET_SEC = float(os.getenv("REFRESH_TIME_BUDGET_SEC", "120"))

# Fairness auditor
AUDIT_INTERVAL_SEC = int(os.getenv("AUDIT_INTERVAL_SEC", "3600"))
AUDIT_TOP_DECILE_MAX = float(os.getenv("AUDIT_TOP_DECILE_MAX", "0.6"))
AUDIT_NEW_CREATOR_MIN_SHARE = float(os.getenv("AUDIT_NEW_CREATOR_MIN_SHARE", "0.05"))
AUDIT_PAY_CORRELATION_MAX = float(os.getenv("AUDIT_PAY_CORRELATION_MAX", "0.1"))
AUDIT_DENSITY_TIGHTEN_FACTOR = float(os.getenv("AUDIT_DENSITY_TIGHTEN_FACTOR", "0.8"))
AUDIT_SLOT_BOOST = int(os.getenv("AUDIT_SLOT_BOOST", "2"))
CORRECTIVE_TTL_HOURS = int(os.getenv("CORRECTIVE_TTL_HOURS", "24"))

# Online path
FEED_DEFAULT_LIMIT = int(os.getenv("FEED_DEFAULT_LIMIT", "20"))
FEED_MAX_LIMIT = int(os.getenv("FEED_MAX_LIMIT", "100"))
MAX_INFLIGHT_REQUESTS = int(os.getenv("MAX_INFLIGHT_REQUESTS", "64"))
FEED_CACHE_TTL_SEC = int(os.getenv("FEED_CACHE_TTL_SEC", "60"))

# Heartbeat (periodic background jobs)
HEARTBEAT_ENABLED = os.getenv("HEARTBEAT_ENABLED", "false").lower() == "true"

# Version string
VERSION = "1.0.0"


@dataclass(frozen=True)
class RankingConfig:
    """Immutable view of the tunables, handed to components at construction."""
    weights: Dict[str, float] = field(default_factory=lambda: {
        "topical": WEIGHT_TOPICAL,
        "language": WEIGHT_LANGUAGE,
        "region": WEIGHT_REGION,
        "recency": WEIGHT_RECENCY,
        "retention": WEIGHT_RETENTION,
        "safety": WEIGHT_SAFETY,
    })
    density_threshold: int = DENSITY_THRESHOLD
    density_max_penalty: float = DENSITY_MAX_PENALTY
    density_penalty_policy: str = DENSITY_PENALTY_POLICY
    density_window_days: int = DENSITY_WINDOW_DAYS
    limited_selection_cap: float = LIMITED_SELECTION_CAP
    under_served_percentile: float = UNDER_SERVED_PERCENTILE
    guaranteed_slots: int = GUARANTEED_SLOTS
    relevance_floor: float = RELEVANCE_FLOOR
    flag_new_threshold: float = FLAG_NEW_THRESHOLD
    flag_demote_threshold: float = FLAG_DEMOTE_THRESHOLD
    flag_confirm_threshold: float = FLAG_CONFIRM_THRESHOLD
    flag_exclusion_cutoff: float = FLAG_EXCLUSION_CUTOFF
    medium_band_demotion: float = MEDIUM_BAND_DEMOTION
    detector_combine_mode: str = DETECTOR_COMBINE_MODE
    retention_target_ms: int = RETENTION_TARGET_MS
    new_creator_age_days: int = NEW_CREATOR_AGE_DAYS
    refresh_batch_size: int = REFRESH_BATCH_SIZE
    refresh_window_hours: int = REFRESH_WINDOW_HOURS
    max_creators_per_cycle: int = MAX_CREATORS_PER_CYCLE
    refresh_time_budget_sec: float = REFRESH_TIME_BUDGET_SEC
    audit_top_decile_max: float = AUDIT_TOP_DECILE_MAX
    audit_new_creator_min_share: float = AUDIT_NEW_CREATOR_MIN_SHARE
    audit_pay_correlation_max: float = AUDIT_PAY_CORRELATION_MAX
    audit_density_tighten_factor: float = AUDIT_DENSITY_TIGHTEN_FACTOR
    audit_slot_boost: int = AUDIT_SLOT_BOOST
    corrective_ttl_hours: int = CORRECTIVE_TTL_HOURS
    feed_default_limit: int = FEED_DEFAULT_LIMIT
    feed_max_limit: int = FEED_MAX_LIMIT
    max_inflight_requests: int = MAX_INFLIGHT_REQUESTS
    feed_cache_ttl_sec: int = FEED_CACHE_TTL_SEC

    def with_overrides(self, **overrides) -> "RankingConfig":
        """Return a copy with some fields replaced."""
        return replace(self, **overrides)


def load_ranking_config(**overrides) -> RankingConfig:
    """Build a validated ranking config from the environment plus explicit overrides."""
    config = RankingConfig(**overrides)
    issues = validate_ranking_config(config)
    if issues:
        raise ValueError(f"Ranking configuration invalid: {issues}")
    return config


def validate_ranking_config(config: RankingConfig) -> List[str]:
    """Validate ranking configuration and return any issues."""
    issues = []

    expected = {"topical", "language", "region", "recency", "retention", "safety"}
    if set(config.weights) != expected:
        issues.append(f"Weights must cover exactly {sorted(expected)}")

    if any(w < 0 for w in config.weights.values()):
        issues.append("Weights must be non-negative")

    # Rounded: float sums of decimal weights carry representation noise
    if round(sum(config.weights.values()), 9) != 1.0:
        issues.append(f"Weights must sum to 1.0, got {sum(config.weights.values())}")

    if not 0.0 <= config.density_max_penalty <= 0.10:
        issues.append("DENSITY_MAX_PENALTY must be within [0, 0.10]")

    if config.density_penalty_policy not in ["subtractive", "multiplicative"]:
        issues.append(f"Invalid DENSITY_PENALTY_POLICY: {config.density_penalty_policy}")

    if config.density_threshold < 1:
        issues.append("DENSITY_THRESHOLD must be >= 1")

    if not 0.0 < config.limited_selection_cap <= 1.0:
        issues.append("LIMITED_SELECTION_CAP must be within (0, 1]")

    if not 0.0 <= config.under_served_percentile <= 100.0:
        issues.append("UNDER_SERVED_PERCENTILE must be within [0, 100]")

    if not (0.0 < config.flag_new_threshold < config.flag_demote_threshold
            < config.flag_confirm_threshold <= config.flag_exclusion_cutoff <= 1.0):
        issues.append("Flag thresholds must be strictly increasing within (0, 1]")

    if config.detector_combine_mode not in ["max", "noisy_or"]:
        issues.append(f"Invalid DETECTOR_COMBINE_MODE: {config.detector_combine_mode}")

    if config.guaranteed_slots < 0:
        issues.append("GUARANTEED_SLOTS must be >= 0")

    if config.refresh_batch_size < 1:
        issues.append("REFRESH_BATCH_SIZE must be >= 1")

    if config.feed_max_limit < 1:
        issues.append("FEED_MAX_LIMIT must be >= 1")

    return issues


def debug_enabled():
    """Check if debug mode is enabled."""
    return os.getenv("DEBUG", "false").lower() == "true"


def get_db_path() -> str:
    """Get the database path, honouring late environment changes (tests)."""
    return os.getenv("DISCOVERY_DB_PATH", DB_PATH)


def ensure_db_directory(db_path: str = None):
    """Ensure the database directory exists."""
    Path(db_path or get_db_path()).parent.mkdir(parents=True, exist_ok=True)


def is_heartbeat_enabled():
    """Check if heartbeat system is enabled."""
    return HEARTBEAT_ENABLED


def get_refresh_interval():
    """Get refresh cycle interval in seconds."""
    return REFRESH_INTERVAL_SEC


def get_audit_interval():
    """Get fairness audit interval in seconds."""
    return AUDIT_INTERVAL_SEC


def validate_heartbeat_config():
    """Validate heartbeat configuration and return any issues."""
    issues = []

    if REFRESH_INTERVAL_SEC < 1:
        issues.append("REFRESH_INTERVAL_SEC must be >= 1")

    if AUDIT_INTERVAL_SEC < 1:
        issues.append("AUDIT_INTERVAL_SEC must be >= 1")

    return issues
