"""
HTTP adapter for the discovery service.
"""

from typing import Optional

from fastapi import FastAPI, Depends, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .schemas import (
    FeedItemResponse,
    FeedResponse,
    ModeSwitchRequest,
    ModeSwitchResponse,
    ContentViewRequest,
    ContentViewResponse,
    FlagActionRequest,
    FlagResponse,
    FlagListResponse,
    FairnessReportResponse,
    ShadowDensityResponse,
    EraseResponse,
    HealthResponse
)
from ..core.config import VERSION, debug_enabled
from ..core.errors import NotFound, ValidationError
from ..core.schema import ManipulationFlag
from ..service import DiscoveryService
from ..util.logging import logger

app = FastAPI(
    title="Discovery Ranking API",
    version=VERSION,
    description="Creator discovery feeds with fairness rotation and anti-manipulation signals",
    docs_url="/docs" if debug_enabled() else None,
    redoc_url="/redoc" if debug_enabled() else None
)

_service: Optional[DiscoveryService] = None


def get_service() -> DiscoveryService:
    """Process-wide service, created and started on first use."""
    global _service
    if _service is None:
        _service = DiscoveryService()
        _service.start()
    return _service


def unavailable_response() -> JSONResponse:
    return JSONResponse(status_code=503, content={"status": "unavailable"})


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"detail": exc.message, "errors": exc.errors})


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [{"field": ".".join(str(p) for p in e["loc"]), "message": e["msg"]} for e in exc.errors()]
    return JSONResponse(status_code=400, content={"detail": "Invalid request", "errors": errors})


@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.get("/health", response_model=HealthResponse)
def health_endpoint(service: DiscoveryService = Depends(get_service)):
    """Check system health."""
    return HealthResponse(version=VERSION, **service.health())


@app.get("/feed", response_model=FeedResponse)
def get_feed_endpoint(
    viewer_id: str = Query(..., min_length=1),
    mode: Optional[str] = None,
    cursor: Optional[str] = None,
    limit: Optional[int] = None,
    session_id: Optional[str] = None,
    service: DiscoveryService = Depends(get_service)
):
    result = service.get_feed(viewer_id, mode, cursor, limit, session_id)
    if not result.available:
        return unavailable_response()

    return FeedResponse(
        status=result.status,
        items=[FeedItemResponse(creator_id=i.creator_id, explanation=i.explanation) for i in result.items],
        has_more=result.has_more,
        next_cursor=result.next_cursor,
        generation=result.generation,
        stale=result.stale
    )


@app.post("/viewers/{viewer_id}/mode", response_model=ModeSwitchResponse)
def switch_mode_endpoint(viewer_id: str, req: ModeSwitchRequest, service: DiscoveryService = Depends(get_service)):
    profile = service.switch_mode(viewer_id, req.mode)
    return ModeSwitchResponse(viewer_id=profile.viewer_id, active_mode=profile.active_mode, updated_at=profile.updated_at)


@app.delete("/viewers/{viewer_id}", response_model=EraseResponse)
def erase_viewer_endpoint(viewer_id: str, service: DiscoveryService = Depends(get_service)):
    erased = service.erase_viewer(viewer_id)
    return EraseResponse(viewer_id=viewer_id, erased=erased)


@app.post("/views", response_model=ContentViewResponse, status_code=202)
def record_view_endpoint(req: ContentViewRequest, service: DiscoveryService = Depends(get_service)):
    ack = service.record_content_view(
        req.viewer_id, req.creator_id, req.category, req.duration_ms,
        req.session_id, req.language, req.region
    )
    return ContentViewResponse(**ack)


@app.get("/admin/fairness/report", response_model=FairnessReportResponse)
def fairness_report_endpoint(service: DiscoveryService = Depends(get_service)):
    report = service.admin_get_fairness_report()
    return FairnessReportResponse(**report.to_dict())


@app.get("/admin/shadow-density", response_model=ShadowDensityResponse)
def shadow_density_endpoint(service: DiscoveryService = Depends(get_service)):
    return ShadowDensityResponse(**service.admin_get_shadow_density_stats())


def _flag_response(flag: ManipulationFlag) -> FlagResponse:
    data = flag.to_dict()
    data.pop("fingerprint")
    return FlagResponse(**data)


@app.get("/admin/flags", response_model=FlagListResponse)
def list_flags_endpoint(
    status: Optional[str] = None,
    creator_id: Optional[str] = None,
    service: DiscoveryService = Depends(get_service)
):
    return FlagListResponse(flags=[_flag_response(f) for f in service.list_flags(status, creator_id)])


@app.post("/admin/flags/{flag_id}/review", response_model=FlagResponse)
def review_flag_endpoint(flag_id: str, req: FlagActionRequest, service: DiscoveryService = Depends(get_service)):
    return _flag_response(service.review_flag(flag_id, req.reviewer))


@app.post("/admin/flags/{flag_id}/confirm", response_model=FlagResponse)
def confirm_flag_endpoint(flag_id: str, req: FlagActionRequest, service: DiscoveryService = Depends(get_service)):
    logger.log_operation("api.flag_confirm", "requested", {"flag_id": flag_id, "reviewer": req.reviewer})
    return _flag_response(service.confirm_flag(flag_id, req.reviewer, req.reason))


@app.post("/admin/flags/{flag_id}/dismiss", response_model=FlagResponse)
def dismiss_flag_endpoint(flag_id: str, req: FlagActionRequest, service: DiscoveryService = Depends(get_service)):
    logger.log_operation("api.flag_dismiss", "requested", {"flag_id": flag_id, "reviewer": req.reviewer})
    return _flag_response(service.dismiss_flag(flag_id, req.reviewer, req.reason))
