"""
Manipulation scorer interface. Callers depend only on IManipulationScorer.classify().
"""

from abc import ABC, abstractmethod
from typing import Iterable

from ..core.schema import Classification, ContentDescriptor


class IManipulationScorer(ABC):
    """Abstract interface for adversarial-content classification."""

    name = "scorer"

    @abstractmethod
    def classify(self, descriptor: ContentDescriptor) -> Classification:
        """Return a manipulation confidence in [0, 1] and the matched categories."""
        pass


def noisy_or(values: Iterable[float]) -> float:
    """Probability that at least one independent signal fires."""
    miss = 1.0
    for value in values:
        miss *= 1.0 - max(0.0, min(1.0, value))
    return 1.0 - miss
