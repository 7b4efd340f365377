from .base import IManipulationScorer
from .composite import CompositeScorer, default_scorer
from .detector import FlagChange, FlagStore, ManipulationDetector
from .keyword import KeywordHeuristicScorer
from .visual import VisualHeuristicScorer

__all__ = [
    "IManipulationScorer",
    "CompositeScorer",
    "default_scorer",
    "FlagChange",
    "FlagStore",
    "ManipulationDetector",
    "KeywordHeuristicScorer",
    "VisualHeuristicScorer",
]
