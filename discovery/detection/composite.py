"""
Composite scorer: combines child scorers with max or noisy-or.
"""

from typing import List

from .base import IManipulationScorer, noisy_or
from .keyword import KeywordHeuristicScorer
from .visual import VisualHeuristicScorer
from ..core.errors import DetectorFailure
from ..core.schema import Classification, ContentDescriptor
from ..util.logging import logger


class CompositeScorer(IManipulationScorer):
    """Runs every child scorer; a failing child marks the result degraded."""

    name = "composite"

    def __init__(self, children: List[IManipulationScorer], mode: str = "noisy_or"):
        if not children:
            raise ValueError("CompositeScorer needs at least one child scorer")
        if mode not in ("max", "noisy_or"):
            raise ValueError(f"Invalid combine mode: {mode}")
        self.children = list(children)
        self.mode = mode

    def classify(self, descriptor: ContentDescriptor) -> Classification:
        results = []
        failures = []

        for child in self.children:
            try:
                results.append(child.classify(descriptor))
            except Exception as e:
                failures.append(child.name)
                logger.warning(f"Scorer '{child.name}' failed for {descriptor.creator_id}: {e}")

        if not results:
            raise DetectorFailure(f"All scorers failed: {failures}")

        confidences = [r.confidence for r in results]
        confidence = max(confidences) if self.mode == "max" else noisy_or(confidences)

        matched = frozenset()
        for r in results:
            matched = matched | r.matched_categories

        return Classification(
            confidence=confidence,
            matched_categories=matched,
            scorer=self.name,
            details={r.scorer: r.details for r in results},
            degraded=bool(failures) or any(r.degraded for r in results),
        )


def default_scorer(mode: str = "noisy_or") -> CompositeScorer:
    return CompositeScorer([KeywordHeuristicScorer(), VisualHeuristicScorer()], mode=mode)
