"""Discovery ranking, fairness and anti-manipulation engine."""

__version__ = "1.0.0"
