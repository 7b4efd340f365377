"""
Shared fixtures: a temporary SQLite database, in-memory collaborators and a service
with a synchronous background writer so side effects are visible immediately.
"""

import pytest
from datetime import timedelta

from discovery.core.config import load_ranking_config
from discovery.core.db import init_db
from discovery.core.interfaces import InMemoryActivityLog, InMemoryContentStore, InMemoryModerationIntake
from discovery.core.schema import ContentDescriptor, CreatorMetadata, utcnow
from discovery.core.writer import BackgroundWriter
from discovery.service import DiscoveryService


@pytest.fixture
def db_path(tmp_path):
    """Initialized database in a temp directory."""
    path = str(tmp_path / "discovery.db")
    init_db(path)
    return path


@pytest.fixture
def config():
    return load_ranking_config()


@pytest.fixture
def content():
    return InMemoryContentStore()


@pytest.fixture
def activity_log():
    return InMemoryActivityLog()


@pytest.fixture
def intake():
    return InMemoryModerationIntake()


@pytest.fixture
def creator_factory(content):
    """Add a creator (and optionally a descriptor) to the content store."""
    def _add(creator_id, categories=None, languages=("en",), region="US", age_days=365,
             tags=(), paid_spend=0.0, caption=None, title="", thumbnail=None):
        now = utcnow()
        metadata = CreatorMetadata(
            creator_id=creator_id,
            joined_at=now - timedelta(days=age_days),
            categories=dict(categories or {"music": 0.5}),
            languages=list(languages),
            region=region,
            last_active_at=now - timedelta(hours=1),
            paid_spend=paid_spend,
            tags=list(tags),
        )
        descriptor = None
        if caption is not None or thumbnail is not None:
            descriptor = ContentDescriptor(
                creator_id=creator_id,
                descriptor_ref=f"{creator_id}-profile",
                title=title,
                caption=caption or "",
                thumbnail=dict(thumbnail or {}),
            )
        content.add_creator(metadata, descriptor)
        return metadata
    return _add


@pytest.fixture
def make_service(db_path, content, activity_log, intake):
    """Build a DiscoveryService over the shared fixtures with config overrides."""
    def _make(**overrides):
        return DiscoveryService(
            activity_source=activity_log,
            content=content,
            intake=intake,
            config=load_ranking_config(**overrides),
            db_path=db_path,
            writer=BackgroundWriter("test-writer", synchronous=True),
        )
    return _make


@pytest.fixture
def service(make_service):
    return make_service()
