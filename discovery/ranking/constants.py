"""
Ranking Constants

Organization:
    1. Feed Modes - mode to required creator tags
    2. Recency Scoring - decay curve on last creator activity
    3. Audience Scoring - defaults when a creator has no audience yet
    4. Personal Match - language/region match against the viewer
    5. Cursor - pagination token fields
    6. Overload - shared unpersonalized ranking

Thresholds and weights that operators tune live in `discovery.core.config`.
"""

from ..core.schema import FeedMode

# =============================================================================
# Feed Modes
# =============================================================================

NEW_CREATOR_TAG = "new_creator"
LIVE_TAG = "live"
EVENTS_TAG = "events"

# A creator is a candidate for the mode only if it carries every required tag.
# Modes not listed accept every creator.
MODE_REQUIRED_TAGS = {
    FeedMode.RISING_STARS: frozenset({NEW_CREATOR_TAG}),
    FeedMode.LIVE_NOW: frozenset({LIVE_TAG}),
    FeedMode.PROMO_EVENTS: frozenset({EVENTS_TAG}),
}

# =============================================================================
# Recency Scoring
# =============================================================================

# (age in days, score); linear between points, flat after the last point
RECENCY_DECAY_POINTS = [
    (0.0, 1.0),
    (1.0, 1.0),
    (7.0, 0.3),
    (30.0, 0.05),
]
RECENCY_FLOOR = 0.05

# =============================================================================
# Audience Scoring
# =============================================================================

NO_AUDIENCE_SCORE = 0.5
NO_VIEWS_RETENTION = 0.5

# Share of the creator's topical vector taken from declared categories;
# the rest comes from what its audience actually watched
DECLARED_CATEGORY_BLEND = 0.6

# =============================================================================
# Personal Match
# =============================================================================

MATCH_SCORE = 1.0
LANGUAGE_MISMATCH_SCORE = 0.2
REGION_MISMATCH_SCORE = 0.4

# =============================================================================
# Cursor
# =============================================================================

CURSOR_OFFSET = "o"
CURSOR_LIMIT = "l"
CURSOR_GENERATION = "g"

# =============================================================================
# Overload
# =============================================================================

# Viewer id the shared ranking is drawn for; never a real viewer id
SHARED_VIEWER = "*"
