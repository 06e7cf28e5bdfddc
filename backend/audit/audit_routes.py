"""
Audit Log API Routes

Read-only view of the capped audit trail, newest entries first.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from pydantic import BaseModel

from deployment.exceptions import AccessError
from deployment.models import ActorContext
from security.access_guard import AccessGuard
from security.api_keys import get_current_actor
from audit.audit_logger import AuditAction, AuditTrail

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/audit", tags=["audit"])

MAX_PAGE_SIZE = 1000
DEFAULT_PAGE_SIZE = 50


class AuditLogEntry(BaseModel):
    """Single audit log entry"""
    id: int
    timestamp: Optional[str]
    actor_id: Optional[str]
    action: str
    details: Optional[dict]
    source_ip: Optional[str]


def get_audit_trail(request: Request) -> AuditTrail:
    """Get audit trail (dependency). Set by create_app() on app.state."""
    trail = getattr(request.app.state, "audit_trail", None)
    if trail is None:
        raise RuntimeError("AuditTrail not initialized")
    return trail


def _authorize(request: Request, actor: ActorContext) -> None:
    guard: Optional[AccessGuard] = getattr(request.app.state, "access_guard", None)
    if guard is None:
        raise RuntimeError("AccessGuard not initialized")
    try:
        guard.authorize_read(actor)
    except AccessError as e:
        raise HTTPException(status_code=e.status_code, detail={"code": e.code, "message": e.message})


@router.get("", response_model=List[AuditLogEntry])
def list_audit_log(
    request: Request,
    response: Response,
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE, description="Items per page"),
    offset: int = Query(0, ge=0, description="Entries to skip"),
    actor: ActorContext = Depends(get_current_actor),
    trail: AuditTrail = Depends(get_audit_trail),
):
    """List audit log entries, newest first. Total is in X-Total-Count."""
    _authorize(request, actor)
    entries = trail.entries(limit=limit, offset=offset)
    response.headers["X-Total-Count"] = str(trail.count())
    return [AuditLogEntry(**entry.to_dict()) for entry in entries]


@router.get("/actions", response_model=List[str])
def list_audit_actions(request: Request, actor: ActorContext = Depends(get_current_actor)):
    """List all audit action types."""
    _authorize(request, actor)
    return [action.value for action in AuditAction]
