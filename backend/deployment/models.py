"""
Domain types shared by the deployment pipeline.

These are plain dataclasses: the ORM rows in database.py never leave
the store, and the HTTP layer builds its pydantic models from these.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class DeploymentStatus(str, Enum):
    """Lifecycle status of a deployment record"""
    PENDING = 'pending'
    DEPLOYED = 'deployed'
    REJECTED = 'rejected'
    ROLLED_BACK = 'rolled_back'
    FAILED = 'failed'


@dataclass(frozen=True)
class FileSpec:
    """One submitted file: relative path and text content"""
    path: str
    content: str

    @property
    def size(self) -> int:
        """Content size in bytes (UTF-8)"""
        return len(self.content.encode('utf-8'))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FileSpec':
        return cls(path=data.get('path') or '', content=data.get('content') or '')

    def to_dict(self) -> Dict[str, str]:
        return {'path': self.path, 'content': self.content}


@dataclass(frozen=True)
class ActorContext:
    """
    Capability token supplied by the caller.

    The core trusts these values; authentication happens in the layer
    that builds the context.

    Attributes:
        actor_id: Stable identifier used for auditing and rate limiting
        is_privileged: Caller may manage deployments
        source_ip: Client address for the audit trail
        is_secure: Request arrived over an encrypted channel
    """
    actor_id: str
    is_privileged: bool = False
    source_ip: Optional[str] = None
    is_secure: bool = False


def format_timestamp(dt: Optional[datetime]) -> Optional[str]:
    """
    Format datetime as ISO 8601 with 'Z' suffix.

    SQLite hands back naive datetimes; those are treated as UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.isoformat() + 'Z'
    iso_str = dt.astimezone(timezone.utc).isoformat()
    if iso_str.endswith('+00:00'):
        return iso_str[:-6] + 'Z'
    return iso_str


@dataclass
class DeploymentRecord:
    """Read-only snapshot of a deployment row"""
    id: int
    name: str
    description: str
    target_type: str
    target_slug: str
    status: str
    files_manifest: List[Dict[str, str]]
    validation_result: Dict[str, Any]
    created_by: str
    created_at: Optional[datetime]
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    deployed_at: Optional[datetime] = None
    rolled_back_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, row) -> 'DeploymentRecord':
        return cls(
            id=row.id,
            name=row.name,
            description=row.description or '',
            target_type=row.target_type,
            target_slug=row.target_slug,
            status=row.status,
            files_manifest=list(row.files_manifest or []),
            validation_result=dict(row.validation_result or {}),
            created_by=row.created_by,
            created_at=row.created_at,
            reviewed_by=row.reviewed_by,
            reviewed_at=row.reviewed_at,
            deployed_at=row.deployed_at,
            rolled_back_at=row.rolled_back_at,
        )

    @property
    def files(self) -> List[FileSpec]:
        return [FileSpec.from_dict(f) for f in self.files_manifest]

    @property
    def files_count(self) -> int:
        return len(self.files_manifest)

    def to_dict(self, include_files: bool = False) -> Dict[str, Any]:
        data = {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'target': {'type': self.target_type, 'slug': self.target_slug},
            'status': self.status,
            'files_count': self.files_count,
            'validation': self.validation_result,
            'created_by': self.created_by,
            'created_at': format_timestamp(self.created_at),
            'reviewed_by': self.reviewed_by,
            'reviewed_at': format_timestamp(self.reviewed_at),
            'deployed_at': format_timestamp(self.deployed_at),
            'rolled_back_at': format_timestamp(self.rolled_back_at),
        }
        if include_files:
            data['files'] = list(self.files_manifest)
        return data


@dataclass
class DeploymentPage:
    """One page of a filtered deployment listing"""
    items: List[DeploymentRecord] = field(default_factory=list)
    total: int = 0
    pages: int = 0
    page: int = 1
    per_page: int = 20
