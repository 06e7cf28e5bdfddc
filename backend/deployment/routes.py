"""
Deployment API routes for CodeDrop

Provides REST endpoints for:
- Submitting a proposed file set
- Listing and inspecting deployments
- Approving, rejecting and rolling back deployments
- Health status and runtime settings

The handlers are thin: they build request models, call DeploymentService
and translate DeploymentError subclasses to HTTP responses.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from pydantic import BaseModel, ConfigDict, Field

from config.settings import AppConfig, DeploySettings, KNOWN_TARGET_TYPES
from security.api_keys import get_current_actor
from .exceptions import (
    AccessError,
    DeploymentError,
    FilesystemError,
    NotFoundError,
    RollbackIncomplete,
    StateError,
    ValidationFailed,
)
from .models import ActorContext, DeploymentRecord, FileSpec
from .service import DeploymentService, Submission

logger = logging.getLogger(__name__)

# Create routers
router = APIRouter(prefix="/api", tags=["deployments"])
settings_router = APIRouter(prefix="/api/settings", tags=["settings"])


# ==================== Request/Response Models ====================

class FilePayload(BaseModel):
    """One file in a submission."""
    path: str = Field(..., description="Path relative to the target directory, e.g. 'inc/banner.php'")
    content: str = Field("", description="UTF-8 text content")


class TargetPayload(BaseModel):
    """Where the files go."""
    type: str = Field(..., description="'theme', 'plugin' or 'mu-plugin'")
    slug: str = Field(..., description="Directory name of the theme or plugin")


class DeployRequest(BaseModel):
    """Submit deployment request."""
    name: str = Field(..., min_length=1, max_length=255, description="Human-readable name for the deployment")
    description: Optional[str] = Field("", description="What the change does")
    target: TargetPayload
    files: List[FilePayload] = Field(default_factory=list)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "name": "hero-banner",
                "description": "Adds a hero banner partial",
                "target": {"type": "theme", "slug": "storefront"},
                "files": [
                    {"path": "inc/banner.php", "content": "<?php\nfunction storefront_banner() { echo 'Hi'; }\n"}
                ]
            }
        }
    )


class TargetResponse(BaseModel):
    type: str
    slug: str


class DeploymentResponse(BaseModel):
    """Deployment response."""
    id: int
    name: str
    description: str
    target: TargetResponse
    status: str
    files_count: int
    validation: Dict[str, Any]
    created_by: str
    created_at: Optional[str]
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[str] = None
    deployed_at: Optional[str] = None
    rolled_back_at: Optional[str] = None
    files: Optional[List[Dict[str, str]]] = None
    links: Dict[str, str] = Field(..., alias="_links")

    model_config = ConfigDict(populate_by_name=True)


class SettingsUpdate(BaseModel):
    """Partial settings update. Omitted fields are left unchanged."""
    enabled: Optional[bool] = None
    allowed_targets: Optional[List[str]] = Field(None, description=f"Subset of {list(KNOWN_TARGET_TYPES)}")
    max_file_size: Optional[int] = Field(None, ge=1)
    max_deployment_size: Optional[int] = Field(None, ge=1)
    cleanup_days: Optional[int] = Field(None, ge=1, le=365)
    notify_on_submit: Optional[bool] = None


# ==================== Dependency Injection ====================

def get_deployment_service(request: Request) -> DeploymentService:
    """Get deployment service (dependency). Set by create_app() on app.state."""
    service = getattr(request.app.state, "deployment_service", None)
    if service is None:
        raise RuntimeError("DeploymentService not initialized")
    return service


# ==================== Helpers ====================

def _links(request: Request, deployment_id: int) -> Dict[str, str]:
    base = str(request.url_for("get_deployment", deployment_id=deployment_id))
    return {
        "self": base,
        "approve": f"{base}/approve",
        "reject": f"{base}/reject",
        "rollback": f"{base}/rollback",
    }


def _to_response(request: Request, record: DeploymentRecord, include_files: bool = False) -> DeploymentResponse:
    data = record.to_dict(include_files=include_files)
    data["_links"] = _links(request, record.id)
    return DeploymentResponse.model_validate(data)


def _to_http_exception(error: DeploymentError) -> HTTPException:
    """Map the deployment error taxonomy onto HTTP status codes"""
    detail: Dict[str, Any] = {"code": error.code, "message": error.message}

    if isinstance(error, AccessError):
        headers = {"Retry-After": str(error.retry_after)} if error.retry_after else None
        return HTTPException(status_code=error.status_code, detail=detail, headers=headers)

    if isinstance(error, ValidationFailed):
        detail.update(error.result.to_dict())
        return HTTPException(status_code=422, detail=detail)

    if isinstance(error, StateError):
        detail["current_status"] = error.current_status
        detail["requested_status"] = error.requested_status
        return HTTPException(status_code=409, detail=detail)

    if isinstance(error, NotFoundError):
        return HTTPException(status_code=404, detail=detail)

    if isinstance(error, RollbackIncomplete):
        detail["rollback"] = error.result.to_dict()
        return HTTPException(status_code=500, detail=detail)

    if isinstance(error, FilesystemError):
        detail["path"] = error.path
        return HTTPException(status_code=500, detail=detail)

    return HTTPException(status_code=500, detail=detail)


# ==================== Deployment Endpoints ====================

@router.post("/deploy", response_model=DeploymentResponse, status_code=201)
def submit_deployment(
    body: DeployRequest,
    request: Request,
    actor: ActorContext = Depends(get_current_actor),
    service: DeploymentService = Depends(get_deployment_service),
):
    """
    Submit a proposed deployment.

    The files are validated and staged; nothing touches the target tree
    until the deployment is approved.
    """
    submission = Submission(
        name=body.name,
        description=body.description or "",
        target_type=body.target.type,
        target_slug=body.target.slug,
        files=[FileSpec(path=f.path, content=f.content) for f in body.files],
    )
    try:
        record = service.submit(actor, submission)
    except DeploymentError as e:
        raise _to_http_exception(e)

    return _to_response(request, record)


@router.get("/deployments", response_model=List[DeploymentResponse])
def list_deployments(
    request: Request,
    response: Response,
    status: Optional[str] = Query(None, description="Filter by status"),
    target_type: Optional[str] = Query(None, description="Filter by target type"),
    page: int = Query(1, description="Page number (values below 1 are treated as 1)"),
    per_page: int = Query(20, description="Items per page (clamped to 1-100)"),
    orderby: str = Query("created_at", description="id, name, status, target_type, created_at or deployed_at"),
    order: str = Query("desc", description="asc or desc"),
    actor: ActorContext = Depends(get_current_actor),
    service: DeploymentService = Depends(get_deployment_service),
):
    """List deployments with filters. Totals are in X-Total-Count / X-Total-Pages."""
    try:
        result = service.list(
            actor,
            status=status,
            target_type=target_type,
            page=page,
            per_page=per_page,
            orderby=orderby,
            order=order,
        )
    except DeploymentError as e:
        raise _to_http_exception(e)

    response.headers["X-Total-Count"] = str(result.total)
    response.headers["X-Total-Pages"] = str(result.pages)
    return [_to_response(request, item) for item in result.items]


@router.get("/deployments/{deployment_id}", response_model=DeploymentResponse, name="get_deployment")
def get_deployment(
    deployment_id: int,
    request: Request,
    include_files: bool = Query(False, description="Include submitted file contents"),
    actor: ActorContext = Depends(get_current_actor),
    service: DeploymentService = Depends(get_deployment_service),
):
    """Get a single deployment. File contents only with include_files=true."""
    try:
        record = service.get(actor, deployment_id)
    except DeploymentError as e:
        raise _to_http_exception(e)
    return _to_response(request, record, include_files=include_files)


@router.post("/deployments/{deployment_id}/approve", response_model=DeploymentResponse)
def approve_deployment(
    deployment_id: int,
    request: Request,
    actor: ActorContext = Depends(get_current_actor),
    service: DeploymentService = Depends(get_deployment_service),
):
    """Apply a pending deployment to its target directory."""
    try:
        record = service.approve(actor, deployment_id)
    except DeploymentError as e:
        raise _to_http_exception(e)
    return _to_response(request, record)


@router.post("/deployments/{deployment_id}/reject", response_model=DeploymentResponse)
def reject_deployment(
    deployment_id: int,
    request: Request,
    actor: ActorContext = Depends(get_current_actor),
    service: DeploymentService = Depends(get_deployment_service),
):
    """Mark a pending deployment as rejected."""
    try:
        record = service.reject(actor, deployment_id)
    except DeploymentError as e:
        raise _to_http_exception(e)
    return _to_response(request, record)


@router.post("/deployments/{deployment_id}/rollback", response_model=DeploymentResponse)
def rollback_deployment(
    deployment_id: int,
    request: Request,
    actor: ActorContext = Depends(get_current_actor),
    service: DeploymentService = Depends(get_deployment_service),
):
    """Revert a deployed change from its backups."""
    try:
        record = service.rollback(actor, deployment_id)
    except DeploymentError as e:
        raise _to_http_exception(e)
    return _to_response(request, record)


@router.get("/status")
def get_status(
    actor: ActorContext = Depends(get_current_actor),
    service: DeploymentService = Depends(get_deployment_service),
):
    """Health check: kill switch, transport, writable directories and limits."""
    try:
        status = service.status(actor)
    except DeploymentError as e:
        raise _to_http_exception(e)
    status["version"] = AppConfig.VERSION
    return status


# ==================== Settings Endpoints ====================

def _settings_response(settings: DeploySettings) -> Dict[str, Any]:
    data = settings.to_dict()
    data["known_target_types"] = list(KNOWN_TARGET_TYPES)
    return data


@settings_router.get("")
def read_settings(
    actor: ActorContext = Depends(get_current_actor),
    service: DeploymentService = Depends(get_deployment_service),
):
    """Current runtime settings."""
    try:
        return _settings_response(service.get_settings(actor))
    except DeploymentError as e:
        raise _to_http_exception(e)


@settings_router.put("")
def update_settings(
    body: SettingsUpdate,
    actor: ActorContext = Depends(get_current_actor),
    service: DeploymentService = Depends(get_deployment_service),
):
    """Partially update runtime settings. Applies to the next request."""
    updates = body.model_dump(exclude_none=True)
    if not updates:
        raise HTTPException(status_code=400, detail={"code": "empty_update", "message": "No settings provided"})
    try:
        return _settings_response(service.update_settings(actor, updates))
    except DeploymentError as e:
        raise _to_http_exception(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail={"code": "invalid_setting", "message": str(e)})
