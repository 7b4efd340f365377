"""
Keyword and text-heuristic scorer for captions and titles.
"""

import re
from typing import Dict, List

from .base import IManipulationScorer, noisy_or
from ..core.schema import Classification, ContentDescriptor

BANNED_TERMS = [
    # Adult services
    "escort", "prostitute", "sex work", "happy ending",
    # Drugs
    "cocaine", "heroin", "meth", "mdma", "ecstasy",
    # Violence
    "murder", "self-harm",
]

# Off-platform payment lures
PAYMENT_LURES = [
    "western union", "bitcoin wallet", "send money", "wire transfer",
    "cashapp", "venmo me", "paypal me", "gift card",
]

ENGAGEMENT_BAIT = [
    "click here", "buy now", "limited offer", "follow for follow", "f4f",
    "like for like", "l4l", "dm me for", "link in bio",
]

URL_PATTERN = re.compile(r"(https?://|www\.)\S+|\b\S+\.(com|net|io|me|ly)\b", re.IGNORECASE)
REPEATED_CHARS_PATTERN = re.compile(r"(.)\1{10,}")

# Signal strengths
BANNED_TERM_SCORE = 0.85
PAYMENT_LURE_SCORE = 0.8
ENGAGEMENT_BAIT_SCORE = 0.3
EXCESSIVE_CAPS_SCORE = 0.3
REPEATED_CHARS_SCORE = 0.25
EXTERNAL_LINK_SCORE = 0.35

CAPS_RATIO_LIMIT = 0.5
CAPS_MIN_LENGTH = 20


def _term_pattern(term: str):
    return re.compile(r"\b" + re.escape(term) + r"\b", re.IGNORECASE)


class KeywordHeuristicScorer(IManipulationScorer):
    """Scores banned terms, payment lures, engagement bait, shouting, character spam and links."""

    name = "keyword"

    def __init__(self, banned_terms: List[str] = None, payment_lures: List[str] = None,
                 engagement_bait: List[str] = None):
        self.banned_terms = {t: _term_pattern(t) for t in (banned_terms or BANNED_TERMS)}
        self.payment_lures = {t: _term_pattern(t) for t in (payment_lures or PAYMENT_LURES)}
        self.engagement_bait = {t: _term_pattern(t) for t in (engagement_bait or ENGAGEMENT_BAIT)}

    def classify(self, descriptor: ContentDescriptor) -> Classification:
        text = descriptor.text
        signals: Dict[str, float] = {}
        details: Dict[str, object] = {}

        banned = [t for t, p in self.banned_terms.items() if p.search(text)]
        if banned:
            signals["banned_terms"] = min(0.95, BANNED_TERM_SCORE + 0.05 * (len(banned) - 1))
            details["banned_terms"] = banned

        lures = [t for t, p in self.payment_lures.items() if p.search(text)]
        if lures:
            signals["payment_lure"] = min(0.95, PAYMENT_LURE_SCORE + 0.05 * (len(lures) - 1))
            details["payment_lures"] = lures

        bait = [t for t, p in self.engagement_bait.items() if p.search(text)]
        if bait:
            signals["engagement_bait"] = min(0.6, ENGAGEMENT_BAIT_SCORE * len(bait))
            details["engagement_bait"] = bait

        letters = [c for c in text if c.isalpha()]
        if len(text) > CAPS_MIN_LENGTH and letters:
            caps_ratio = sum(1 for c in letters if c.isupper()) / len(letters)
            if caps_ratio > CAPS_RATIO_LIMIT:
                signals["excessive_caps"] = EXCESSIVE_CAPS_SCORE
                details["caps_ratio"] = round(caps_ratio, 3)

        if REPEATED_CHARS_PATTERN.search(text):
            signals["repeated_chars"] = REPEATED_CHARS_SCORE

        if URL_PATTERN.search(text):
            signals["external_link"] = EXTERNAL_LINK_SCORE

        return Classification(
            confidence=noisy_or(signals.values()),
            matched_categories=frozenset(signals),
            scorer=self.name,
            details={"signals": signals, **details},
        )
