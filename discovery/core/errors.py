"""
Error taxonomy shared by the online path and the background jobs.
"""

from typing import Dict, List


class DiscoveryError(Exception):
    """Base class for engine errors."""


class ValidationError(DiscoveryError):
    """Bad input. Raised synchronously, never partially satisfied."""

    def __init__(self, message: str, field: str = None, errors: List[Dict] = None):
        super().__init__(message)
        self.message = message
        self.field = field
        self.errors = errors or ([{"field": field, "message": message}] if field else [])


class NotFound(DiscoveryError):
    """Referenced record (flag, report) does not exist."""


class UpstreamUnavailable(DiscoveryError):
    """Activity log, content store or index storage unreachable."""


class DetectorFailure(DiscoveryError):
    """A manipulation scorer could not classify a descriptor."""


class BackgroundJobFailure(DiscoveryError):
    """A refresh batch or audit run failed; isolated from the request path."""

    def __init__(self, message: str, creator_ids: List[str] = None):
        super().__init__(message)
        self.creator_ids = list(creator_ids or [])
