"""
Deployment module for CodeDrop

Validates, stages, applies and rolls back proposed file sets.

Components:
    - validator: Structural and security checks on a proposed file set
    - staging: Isolated staging area and content-addressed manifests
    - engine: Backup-then-apply execution, rollback and staging cleanup
    - state_machine: Deployment status transitions
    - store: Deployment record persistence with compare-and-swap transitions
    - service: Operation orchestration (imported directly, it depends on
      the security and audit packages)
    - routes: API endpoints
"""

from .exceptions import (
    AccessError,
    DeploymentError,
    FilesystemError,
    IntegrityError,
    NotFoundError,
    RollbackIncomplete,
    StateError,
    ValidationFailed,
)
from .models import ActorContext, DeploymentPage, DeploymentRecord, DeploymentStatus, FileSpec
from .state_machine import DeploymentStateMachine
from .validator import DeploymentValidator, ValidationIssue, ValidationResult
from .staging import StagingArea, StagedManifest, ManifestEntry
from .engine import DeploymentEngine, ExecuteResult, RollbackResult

__all__ = [
    "AccessError",
    "DeploymentError",
    "FilesystemError",
    "IntegrityError",
    "NotFoundError",
    "RollbackIncomplete",
    "StateError",
    "ValidationFailed",
    "ActorContext",
    "DeploymentPage",
    "DeploymentRecord",
    "DeploymentStatus",
    "FileSpec",
    "DeploymentStateMachine",
    "DeploymentValidator",
    "ValidationIssue",
    "ValidationResult",
    "StagingArea",
    "StagedManifest",
    "ManifestEntry",
    "DeploymentEngine",
    "ExecuteResult",
    "RollbackResult",
]
