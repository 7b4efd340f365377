"""
Thumbnail-metadata heuristics. Works on metadata supplied by the content subsystem;
no image decoding happens here.
"""

from typing import Dict

from .base import IManipulationScorer, noisy_or
from ..core.schema import Classification, ContentDescriptor

OVERLAY_TEXT_RATIO_LIMIT = 0.4
DUPLICATE_COUNT_LIMIT = 3
LABEL_MISMATCH_SCORE = 0.5
STOCK_IMAGE_SCORE = 0.3


class VisualHeuristicScorer(IManipulationScorer):
    """
    Reads thumbnail keys:
        overlay_text_ratio   share of the image covered by text
        duplicate_count      other creators using the same image hash
        declared_labels      labels claimed by the creator
        detected_labels      labels reported by the media pipeline
        stock_image          image matched a stock-photo catalogue
    """

    name = "visual"

    def classify(self, descriptor: ContentDescriptor) -> Classification:
        thumb = descriptor.thumbnail or {}
        signals: Dict[str, float] = {}

        overlay = float(thumb.get("overlay_text_ratio", 0.0) or 0.0)
        if overlay > OVERLAY_TEXT_RATIO_LIMIT:
            signals["text_overlay"] = min(1.0, overlay) * 0.6

        duplicates = int(thumb.get("duplicate_count", 0) or 0)
        if duplicates >= DUPLICATE_COUNT_LIMIT:
            signals["duplicate_thumbnail"] = min(0.7, 0.2 + 0.1 * duplicates)

        declared = {str(label).lower() for label in thumb.get("declared_labels", [])}
        detected = {str(label).lower() for label in thumb.get("detected_labels", [])}
        if declared and detected and not declared & detected:
            signals["label_mismatch"] = LABEL_MISMATCH_SCORE

        if thumb.get("stock_image"):
            signals["stock_image"] = STOCK_IMAGE_SCORE

        return Classification(
            confidence=noisy_or(signals.values()),
            matched_categories=frozenset(signals),
            scorer=self.name,
            details={"signals": signals},
        )
