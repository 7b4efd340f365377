"""
Request and response models for the discovery HTTP API.
"""

from pydantic import BaseModel, field_validator
from typing import Optional, List, Dict, Any
from datetime import datetime


class FeedItemResponse(BaseModel):
    creator_id: str
    explanation: Dict[str, Any]


class FeedResponse(BaseModel):
    status: str
    items: List[FeedItemResponse]
    has_more: bool
    next_cursor: Optional[str] = None
    generation: Optional[int] = None
    stale: bool = False


class ModeSwitchRequest(BaseModel):
    mode: str

    @field_validator('mode')
    @classmethod
    def mode_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('mode cannot be empty')
        return v.strip()


class ModeSwitchResponse(BaseModel):
    viewer_id: str
    active_mode: str
    updated_at: datetime


class ContentViewRequest(BaseModel):
    viewer_id: str
    creator_id: str
    category: Optional[str] = None
    duration_ms: int = 0
    session_id: Optional[str] = None
    language: Optional[str] = None
    region: Optional[str] = None

    @field_validator('viewer_id', 'creator_id')
    @classmethod
    def id_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('id cannot be empty')
        return v

    @field_validator('duration_ms')
    @classmethod
    def duration_must_not_be_negative(cls, v):
        if v < 0:
            raise ValueError('duration_ms must be >= 0')
        return v


class ContentViewResponse(BaseModel):
    status: str
    event_id: str


class FlagActionRequest(BaseModel):
    reviewer: str
    reason: Optional[str] = None

    @field_validator('reviewer')
    @classmethod
    def reviewer_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('reviewer cannot be empty')
        return v


class FlagResponse(BaseModel):
    flag_id: str
    creator_id: str
    descriptor_ref: str
    confidence: float
    matched_categories: List[str]
    status: str
    case_id: Optional[str] = None
    reviewer: Optional[str] = None
    review_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class FlagListResponse(BaseModel):
    flags: List[FlagResponse]


class FairnessReportResponse(BaseModel):
    audit_id: str
    metrics: Dict[str, Any]
    breaches: List[str]
    passed: bool
    corrective_actions: List[str]
    created_at: datetime


class RotationEntryResponse(BaseModel):
    creator_id: str
    rolling_impressions: int
    state: str
    density_penalty: float
    selection_cap: float
    percentile_rank: float
    under_served: bool


class ShadowDensityResponse(BaseModel):
    version: int
    threshold: float
    limited: int
    under_served: int
    creators: List[RotationEntryResponse]


class EraseResponse(BaseModel):
    viewer_id: str
    erased: bool


class HealthResponse(BaseModel):
    status: str
    version: str
    db_ok: bool
    index_version: Optional[int] = None
    creators_indexed: int
    pending_writes: int
    detector_retries: int
