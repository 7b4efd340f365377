"""
Interfaces to the collaborating subsystems: activity log, content store, moderation intake.
The in-memory implementations back local development and the test suite.
"""

import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from .schema import ActivityEvent, ContentDescriptor, CreatorMetadata, utcnow


class ActivitySource(ABC):
    """Append-only stream of view/interaction events owned by the activity subsystem."""

    @abstractmethod
    def get_raw_activity_events(self, since: Optional[datetime]) -> List[ActivityEvent]:
        """Return events that occurred strictly after `since`, oldest first."""
        pass


class ContentSource(ABC):
    """Creator content and metadata owned by the content subsystem."""

    @abstractmethod
    def get_content_descriptor(self, creator_id: str) -> Optional[ContentDescriptor]:
        """Return the creator's current caption/title/thumbnail descriptor."""
        pass

    @abstractmethod
    def get_creator_metadata(self, creator_id: str) -> Optional[CreatorMetadata]:
        """Return profile metadata used by relevance scoring."""
        pass

    @abstractmethod
    def list_creator_ids(self) -> List[str]:
        """Return every discoverable creator id."""
        pass


class ModerationIntake(ABC):
    """Case intake of the moderation subsystem."""

    @abstractmethod
    def open_moderation_case(self, creator_id: str, evidence: Dict[str, Any]) -> str:
        """Open a case and return its id."""
        pass


class InMemoryActivityLog(ActivitySource):
    """Simple in-memory activity log."""

    def __init__(self):
        self._events: List[ActivityEvent] = []
        self._lock = threading.Lock()

    def append(self, event: ActivityEvent) -> None:
        with self._lock:
            self._events.append(event)

    def get_raw_activity_events(self, since: Optional[datetime]) -> List[ActivityEvent]:
        with self._lock:
            events = [e for e in self._events if since is None or e.occurred_at > since]
        return sorted(events, key=lambda e: e.occurred_at)


class InMemoryContentStore(ContentSource):
    """Simple in-memory content store."""

    def __init__(self):
        self._metadata: Dict[str, CreatorMetadata] = {}
        self._descriptors: Dict[str, ContentDescriptor] = {}

    def add_creator(self, metadata: CreatorMetadata, descriptor: ContentDescriptor = None) -> None:
        self._metadata[metadata.creator_id] = metadata
        if descriptor is not None:
            self._descriptors[metadata.creator_id] = descriptor

    def set_descriptor(self, descriptor: ContentDescriptor) -> None:
        self._descriptors[descriptor.creator_id] = descriptor

    def get_content_descriptor(self, creator_id: str) -> Optional[ContentDescriptor]:
        return self._descriptors.get(creator_id)

    def get_creator_metadata(self, creator_id: str) -> Optional[CreatorMetadata]:
        return self._metadata.get(creator_id)

    def list_creator_ids(self) -> List[str]:
        return sorted(self._metadata)


class InMemoryModerationIntake(ModerationIntake):
    """Records opened cases in memory."""

    def __init__(self):
        self.cases: List[Dict[str, Any]] = []

    def open_moderation_case(self, creator_id: str, evidence: Dict[str, Any]) -> str:
        case_id = str(uuid.uuid4())
        self.cases.append({
            "case_id": case_id,
            "creator_id": creator_id,
            "evidence": evidence,
            "opened_at": utcnow(),
        })
        return case_id
