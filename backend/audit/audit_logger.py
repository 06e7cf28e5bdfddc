"""
Audit trail for CodeDrop.

Records deployment and settings actions to the audit_log table. The
table is append-only from the application's point of view and capped:
once it grows past the configured maximum, the oldest entries are
evicted. Entries are always read newest first.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from sqlalchemy.orm import Session

from database import AuditLog, DatabaseManager, utcnow
from deployment.models import ActorContext, format_timestamp

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 1000


class AuditAction(str, Enum):
    """Audit action types"""
    # Deployment lifecycle
    DEPLOYMENT_SUBMITTED = 'deployment_submitted'
    DEPLOYMENT_APPROVED = 'deployment_approved'
    DEPLOYMENT_REJECTED = 'deployment_rejected'
    DEPLOYMENT_ROLLED_BACK = 'deployment_rolled_back'

    # Failures
    DEPLOYMENT_FAILED = 'deployment_failed'
    ROLLBACK_FAILED = 'rollback_failed'
    STAGING_FAILED = 'staging_failed'

    # Maintenance
    STAGING_CLEANUP = 'staging_cleanup'

    # Settings
    SETTINGS_CHANGE = 'settings_change'


@dataclass
class AuditEntry:
    """One row of the audit trail"""
    id: int
    timestamp: Optional[datetime]
    actor_id: Optional[str]
    action: str
    details: Dict[str, Any] = field(default_factory=dict)
    source_ip: Optional[str] = None

    @classmethod
    def from_model(cls, row: AuditLog) -> 'AuditEntry':
        return cls(
            id=row.id,
            timestamp=row.timestamp,
            actor_id=row.actor_id,
            action=row.action,
            details=dict(row.details or {}),
            source_ip=row.source_ip,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'timestamp': format_timestamp(self.timestamp),
            'actor_id': self.actor_id,
            'action': self.action,
            'details': self.details,
            'source_ip': self.source_ip,
        }


def log_audit(
    db: Session,
    actor_id: Optional[str],
    action: Union[AuditAction, str],
    details: Optional[Dict[str, Any]] = None,
    source_ip: Optional[str] = None,
    auto_commit: bool = False,
) -> AuditLog:
    """
    Add an entry to the audit log.

    IMPORTANT: This function does NOT commit by default. The caller is
    responsible for managing the transaction.

    Args:
        db: Database session
        actor_id: Actor performing the action (None for system jobs)
        action: Type of action being performed
        details: Additional context as JSON (optional)
        source_ip: Client IP address (optional)
        auto_commit: If True, commit after adding the audit entry

    Returns:
        Created AuditLog entry
    """
    audit_entry = AuditLog(
        timestamp=utcnow(),
        actor_id=actor_id,
        action=action.value if isinstance(action, AuditAction) else action,
        details=details or {},
        source_ip=source_ip,
    )

    db.add(audit_entry)

    if auto_commit:
        db.commit()

    logger.debug(f"Audit: {actor_id or 'system'} performed {audit_entry.action}")
    return audit_entry


class AuditTrail:
    """
    Capped audit trail backed by the audit_log table.

    Args:
        db: Database manager
        max_entries: Entries kept; older ones are evicted on write
    """

    def __init__(self, db: DatabaseManager, max_entries: int = DEFAULT_MAX_ENTRIES):
        self.db = db
        self.max_entries = max_entries

    def record(
        self,
        action: Union[AuditAction, str],
        actor: Optional[ActorContext] = None,
        details: Optional[Dict[str, Any]] = None,
        max_entries: Optional[int] = None,
    ) -> int:
        """
        Append one entry and evict anything beyond the cap.

        Args:
            action: What happened
            actor: Who did it (None for scheduled jobs)
            details: JSON-serializable context
            max_entries: Override the cap for this write (settings-driven)

        Returns:
            Id of the new entry
        """
        cap = max_entries if max_entries is not None else self.max_entries

        with self.db.get_session() as session:
            try:
                entry = log_audit(
                    session,
                    actor_id=actor.actor_id if actor else None,
                    action=action,
                    details=details,
                    source_ip=actor.source_ip if actor else None,
                )
                session.flush()
                entry_id = entry.id
                self._trim(session, cap)
                session.commit()
            except Exception:
                session.rollback()
                raise

        return entry_id

    @staticmethod
    def _trim(session: Session, cap: int) -> None:
        """Delete everything older than the newest `cap` entries"""
        if cap < 1:
            return
        boundary = (
            session.query(AuditLog.id)
            .order_by(AuditLog.id.desc())
            .offset(cap - 1)
            .limit(1)
            .scalar()
        )
        if boundary is None:
            return
        evicted = (
            session.query(AuditLog)
            .filter(AuditLog.id < boundary)
            .delete(synchronize_session=False)
        )
        if evicted:
            logger.debug(f"Evicted {evicted} audit entries beyond cap of {cap}")

    def entries(self, limit: int = 50, offset: int = 0) -> List[AuditEntry]:
        """Newest-first page of the trail"""
        limit = max(1, min(DEFAULT_MAX_ENTRIES, int(limit)))
        offset = max(0, int(offset))
        with self.db.get_session() as session:
            rows = (
                session.query(AuditLog)
                .order_by(AuditLog.id.desc())
                .offset(offset)
                .limit(limit)
                .all()
            )
            return [AuditEntry.from_model(row) for row in rows]

    def count(self) -> int:
        with self.db.get_session() as session:
            return session.query(AuditLog).count()
