"""
Deployment service for CodeDrop

Orchestrates one operation at a time across the guard, validator, store,
staging area, engine and audit trail. Everything is injected; nothing in
here reaches for module-level state.

Submit:
    guard -> validate -> create pending record -> stage -> audit -> notify

Approve:
    guard -> pending check -> execute -> deployed (CAS) -> audit
    execute failure -> failed (reviewed_by/at set) -> audit -> re-raise

Reject:
    guard -> pending check -> rejected (CAS) -> audit

Rollback:
    guard -> deployed check -> engine.rollback -> rolled_back (CAS) -> audit
    any per-file failure -> record stays deployed -> audit -> RollbackIncomplete
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

from audit.audit_logger import AuditAction, AuditTrail
from config.settings import DeploySettings
from database import utcnow
from security.access_guard import AccessGuard
from .engine import DeploymentEngine
from .exceptions import (
    FilesystemError,
    NotFoundError,
    RollbackIncomplete,
    ValidationFailed,
)
from .models import ActorContext, DeploymentPage, DeploymentRecord, FileSpec
from .staging import StagingArea
from .store import DeploymentStore
from .validator import DeploymentValidator, ValidationIssue, ValidationResult

logger = logging.getLogger(__name__)


@dataclass
class Submission:
    """A proposed deployment as received from the caller"""
    name: str
    target_type: str
    target_slug: str
    files: Sequence[FileSpec]
    description: str = ''


class DeploymentService:
    """
    Entry point for every deployment operation.

    Args:
        store: Record persistence
        validator: Submission gate
        staging: Staging area
        engine: Filesystem apply/rollback
        guard: Access checks
        audit: Audit trail
        settings_provider: Zero-argument callable returning current DeploySettings
        notifier: Optional object with notify_submission(record)
    """

    def __init__(
        self,
        store: DeploymentStore,
        validator: DeploymentValidator,
        staging: StagingArea,
        engine: DeploymentEngine,
        guard: AccessGuard,
        audit: AuditTrail,
        settings_provider: Callable[[], DeploySettings],
        notifier=None,
    ):
        self.store = store
        self.validator = validator
        self.staging = staging
        self.engine = engine
        self.guard = guard
        self.audit = audit
        self.settings_provider = settings_provider
        self.notifier = notifier

        # Serializes approve/reject/rollback of the same id within this process.
        # Entries live only while some caller holds or waits on the lock.
        self._id_locks: Dict[int, threading.Lock] = {}
        self._id_lock_users: Dict[int, int] = {}
        self._id_locks_guard = threading.Lock()

    @contextmanager
    def _locked(self, deployment_id: int) -> Iterator[None]:
        with self._id_locks_guard:
            lock = self._id_locks.setdefault(deployment_id, threading.Lock())
            self._id_lock_users[deployment_id] = self._id_lock_users.get(deployment_id, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._id_locks_guard:
                self._id_lock_users[deployment_id] -= 1
                if not self._id_lock_users[deployment_id]:
                    del self._id_lock_users[deployment_id]
                    del self._id_locks[deployment_id]

    def _audit(self, action: AuditAction, actor: Optional[ActorContext],
               settings: DeploySettings, **details: Any) -> None:
        self.audit.record(action, actor=actor, details=details, max_entries=settings.audit_log_max)

    def _require(self, deployment_id: int) -> DeploymentRecord:
        record = self.store.get(deployment_id)
        if record is None:
            raise NotFoundError(deployment_id)
        return record

    # ------------------------------------------------------------------
    # Submit
    # ------------------------------------------------------------------

    def submit(self, actor: ActorContext, submission: Submission) -> DeploymentRecord:
        """
        Validate and stage a proposed deployment.

        Returns:
            The new pending record

        Raises:
            AccessError: Refused by the guard
            ValidationFailed: Submission did not validate (no record created)
            FilesystemError: Staging failed (record exists with status 'failed')
        """
        settings = self.settings_provider()
        self.guard.authorize_mutation(actor, settings, 'submit')

        files = list(submission.files)
        result = self.validator.validate(files, submission.target_type, submission.target_slug, settings)
        if not result.valid:
            raise ValidationFailed(result)

        deployment_id = self.store.create({
            'name': submission.name,
            'description': submission.description,
            'target_type': submission.target_type,
            'target_slug': submission.target_slug,
            'files_manifest': [f.to_dict() for f in files],
            'validation_result': result.to_dict(),
            'created_by': actor.actor_id,
        })

        try:
            self.staging.stage(deployment_id, files, submission.target_type, submission.target_slug)
        except FilesystemError as e:
            logger.error(f"Staging failed for deployment {deployment_id}: {e.message}")
            failed_result = ValidationResult(
                errors=[ValidationIssue('staging_failed', e.message)],
                warnings=list(result.warnings),
            )
            self.store.transition(deployment_id, 'failed', {'validation_result': failed_result.to_dict()})
            self._audit(AuditAction.STAGING_FAILED, actor, settings,
                        deployment_id=deployment_id, code=e.code, error=e.message)
            raise

        self._audit(AuditAction.DEPLOYMENT_SUBMITTED, actor, settings,
                    deployment_id=deployment_id,
                    target=f"{submission.target_type}/{submission.target_slug}",
                    file_count=len(files))

        record = self.store.get(deployment_id)

        if settings.notify_on_submit and self.notifier is not None:
            self.notifier.notify_submission(record)

        return record

    # ------------------------------------------------------------------
    # Review
    # ------------------------------------------------------------------

    def approve(self, actor: ActorContext, deployment_id: int) -> DeploymentRecord:
        """
        Apply a pending deployment to the target tree.

        Raises:
            AccessError, NotFoundError, StateError: Before any filesystem effect
            FilesystemError: Apply failed; the record is now 'failed'
        """
        settings = self.settings_provider()
        self.guard.authorize_mutation(actor, settings, 'approve')

        with self._locked(deployment_id):
            record = self._require(deployment_id)
            self.store.state_machine.require_transition(deployment_id, record.status, 'deployed')

            try:
                execution = self.engine.execute(deployment_id)
            except FilesystemError as e:
                logger.error(f"Deployment {deployment_id} failed during apply: {e.message}")
                self.store.transition(deployment_id, 'failed', {
                    'reviewed_by': actor.actor_id,
                    'reviewed_at': utcnow(),
                })
                self._audit(AuditAction.DEPLOYMENT_FAILED, actor, settings,
                            deployment_id=deployment_id, code=e.code, path=e.path, error=e.message)
                raise

            now = utcnow()
            updated = self.store.transition(deployment_id, 'deployed', {
                'reviewed_by': actor.actor_id,
                'reviewed_at': now,
                'deployed_at': now,
            })

        self._audit(AuditAction.DEPLOYMENT_APPROVED, actor, settings,
                    deployment_id=deployment_id,
                    written=len(execution.written),
                    backed_up=len(execution.backed_up))
        return updated

    def reject(self, actor: ActorContext, deployment_id: int) -> DeploymentRecord:
        settings = self.settings_provider()
        self.guard.authorize_mutation(actor, settings, 'reject')

        with self._locked(deployment_id):
            self._require(deployment_id)
            updated = self.store.transition(deployment_id, 'rejected', {
                'reviewed_by': actor.actor_id,
                'reviewed_at': utcnow(),
            })

        self._audit(AuditAction.DEPLOYMENT_REJECTED, actor, settings, deployment_id=deployment_id)
        return updated

    def rollback(self, actor: ActorContext, deployment_id: int) -> DeploymentRecord:
        """
        Revert a deployed change.

        Raises:
            AccessError, NotFoundError, StateError: Before any filesystem effect
            FilesystemError: Manifest missing or unreadable (nothing touched)
            RollbackIncomplete: Some files could not be restored; the record
                stays 'deployed' so the rollback can be retried
        """
        settings = self.settings_provider()
        self.guard.authorize_mutation(actor, settings, 'rollback')

        with self._locked(deployment_id):
            record = self._require(deployment_id)
            self.store.state_machine.require_transition(deployment_id, record.status, 'rolled_back')

            try:
                result = self.engine.rollback(deployment_id)
            except FilesystemError as e:
                self._audit(AuditAction.ROLLBACK_FAILED, actor, settings,
                            deployment_id=deployment_id, code=e.code, error=e.message)
                raise

            if not result.ok:
                self._audit(AuditAction.ROLLBACK_FAILED, actor, settings,
                            deployment_id=deployment_id,
                            failures=[f.to_dict() for f in result.failures])
                raise RollbackIncomplete(deployment_id, result)

            updated = self.store.transition(deployment_id, 'rolled_back', {'rolled_back_at': utcnow()})

        self._audit(AuditAction.DEPLOYMENT_ROLLED_BACK, actor, settings,
                    deployment_id=deployment_id,
                    restored=len(result.restored),
                    deleted=len(result.deleted))
        return updated

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, actor: ActorContext, deployment_id: int) -> DeploymentRecord:
        self.guard.authorize_read(actor)
        return self._require(deployment_id)

    def list(self, actor: ActorContext, **filters: Any) -> DeploymentPage:
        self.guard.authorize_read(actor)
        return self.store.list(**filters)

    def status(self, actor: ActorContext) -> Dict[str, Any]:
        """Health summary: kill switch, transport, writability, limits"""
        self.guard.authorize_read(actor)
        settings = self.settings_provider()
        return {
            'enabled': settings.enabled,
            'https': actor.is_secure,
            'writable': {
                'staging': self.staging.is_writable(),
                'themes': self.engine.is_target_writable('theme'),
                'plugins': self.engine.is_target_writable('plugin'),
                'mu_plugins': self.engine.is_target_writable('mu-plugin'),
            },
            'limits': {
                'max_file_size': settings.max_file_size,
                'max_deployment_size': settings.max_deployment_size,
            },
            'counts': self.store.count_by_status(),
        }

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def run_cleanup(self, older_than_days: Optional[int] = None, dry_run: bool = False) -> List[str]:
        """
        Sweep stale staging directories.

        Runs without an actor: it is scheduled, not requested.
        """
        settings = self.settings_provider()
        days = older_than_days if older_than_days is not None else settings.cleanup_days
        removed = self.engine.cleanup(days, dry_run=dry_run)
        if removed and not dry_run:
            self._audit(AuditAction.STAGING_CLEANUP, None, settings,
                        older_than_days=days, removed=removed)
        return removed

    def update_settings(self, actor: ActorContext, updates: Dict[str, Any]) -> DeploySettings:
        """
        Apply a partial settings change.

        Raises:
            AccessError: Refused by the guard
            ValueError: Unknown field or out-of-range value
        """
        settings = self.settings_provider()
        self.guard.authorize_mutation(actor, settings, 'settings')

        update = getattr(self.settings_provider, 'update', None)
        if update is None:
            raise ValueError("Settings are read-only in this configuration")
        new_settings = update(updates)

        self._audit(AuditAction.SETTINGS_CHANGE, actor, new_settings, changes=dict(updates))
        logger.info(f"Settings updated by {actor.actor_id}: {', '.join(sorted(updates))}")
        return new_settings

    def get_settings(self, actor: ActorContext) -> DeploySettings:
        self.guard.authorize_read(actor)
        return self.settings_provider()
