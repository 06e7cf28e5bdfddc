"""
Deployment engine for CodeDrop

Performs the filesystem effects of a deployment; the status bookkeeping
lives in the store and the state machine.

Execute:
    1. Load the staged manifest
    2. Resolve the target directory from type + slug
    3. Backup phase: copy every file about to be overwritten into backups/
    4. Apply phase: write staged content, re-read, verify sha-256

Rollback:
    For every manifest entry, restore the backup if there is one,
    otherwise delete the file (it was created by execute).

Neither operation is transactional across files. A failure partway
through leaves already-written files in place; there is no retry and
no automatic rollback. Callers decide what to do with the record.
"""

import json
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from .exceptions import FilesystemError, IntegrityError
from .staging import MANIFEST_FILENAME, StagingArea, StagedManifest, safe_join, sha256_bytes

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400


@dataclass
class ExecuteResult:
    """Outcome of a successful execute()"""
    deployment_id: int
    target_dir: str
    written: List[str] = field(default_factory=list)
    backed_up: List[str] = field(default_factory=list)


@dataclass
class FileFailure:
    """A file rollback could not restore or remove"""
    path: str
    error: str

    def to_dict(self) -> Dict[str, str]:
        return {'path': self.path, 'error': self.error}


@dataclass
class RollbackResult:
    """
    Per-file outcome of rollback().

    Attributes:
        restored: Paths whose pre-execute content was written back
        deleted: Paths created by execute and now removed
        unchanged: Paths with no backup and no file present (nothing to do)
        failures: Paths that could not be restored or removed
    """
    deployment_id: int
    restored: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    failures: List[FileFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def to_dict(self) -> Dict:
        return {
            'deployment_id': self.deployment_id,
            'ok': self.ok,
            'restored': list(self.restored),
            'deleted': list(self.deleted),
            'unchanged': list(self.unchanged),
            'failures': [f.to_dict() for f in self.failures],
        }


class DeploymentEngine:
    """
    Applies and reverts staged manifests against the managed content tree.

    Args:
        staging: Staging area owning manifests, staged files and backups
        target_roots: Map of target type -> root directory. Themes and
            plugins deploy into <root>/<slug>; must-use plugins deploy
            straight into their root.
    """

    # Target types that deploy into a per-slug subdirectory
    SLUGGED_TARGETS = frozenset({'theme', 'plugin'})

    def __init__(self, staging: StagingArea, target_roots: Dict[str, str]):
        self.staging = staging
        self.target_roots = {k: Path(v) for k, v in target_roots.items()}

    def resolve_target_directory(self, target_type: str, target_slug: str) -> Path:
        """
        Resolve the physical directory a deployment writes into.

        Raises:
            FilesystemError: invalid_target for an unknown type or unsafe slug
        """
        root = self.target_roots.get(target_type)
        if root is None:
            raise FilesystemError(f"Unknown target type: {target_type}", code='invalid_target')

        if target_type not in self.SLUGGED_TARGETS:
            return root

        if not target_slug or '/' in target_slug or '\\' in target_slug or target_slug in ('.', '..'):
            raise FilesystemError(f"Invalid target slug: {target_slug!r}", code='invalid_target')
        return safe_join(root, target_slug)

    # ------------------------------------------------------------------
    # Execute
    # ------------------------------------------------------------------

    def execute(self, deployment_id: int) -> ExecuteResult:
        """
        Back up and overwrite target files from the staged manifest.

        Args:
            deployment_id: Deployment whose manifest to apply

        Returns:
            ExecuteResult listing written and backed-up paths

        Raises:
            FilesystemError: Missing/invalid manifest, unknown target,
                or any read/write failure (operation aborts immediately)
            IntegrityError: Written content does not match the manifest hash
        """
        manifest = self.staging.load_manifest(deployment_id)
        target_dir = self.resolve_target_directory(manifest.target_type, manifest.target_slug)

        result = ExecuteResult(deployment_id=deployment_id, target_dir=str(target_dir))

        logger.info(
            f"Executing deployment {deployment_id}: {len(manifest.files)} file(s) -> {target_dir}"
        )

        # Phase 1: backup existing files
        for entry in manifest.files:
            target_file = safe_join(target_dir, entry.path)
            if not target_file.exists():
                continue

            backup_dest = self.staging.backup_file(deployment_id, entry.path)
            try:
                original = target_file.read_bytes()
            except OSError as e:
                raise FilesystemError(
                    f"Failed to read original file for backup: {entry.path}",
                    code='backup_failed',
                    path=entry.path,
                ) from e

            try:
                backup_dest.parent.mkdir(parents=True, exist_ok=True)
                backup_dest.write_bytes(original)
            except OSError as e:
                raise FilesystemError(
                    f"Failed to write backup: {entry.path}",
                    code='backup_failed',
                    path=entry.path,
                ) from e

            result.backed_up.append(entry.path)

        # Phase 2: deploy staged files
        for entry in manifest.files:
            source = self.staging.staged_file(deployment_id, entry.path)
            dest = safe_join(target_dir, entry.path)

            try:
                dest.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise FilesystemError(
                    f"Failed to create target directory for: {entry.path}",
                    code='deploy_failed',
                    path=entry.path,
                ) from e

            try:
                staged = source.read_bytes()
            except OSError as e:
                raise FilesystemError(
                    f"Failed to read staged file: {entry.path}",
                    code='deploy_failed',
                    path=entry.path,
                ) from e

            try:
                dest.write_bytes(staged)
                deployed_hash = sha256_bytes(dest.read_bytes())
            except OSError as e:
                raise FilesystemError(
                    f"Failed to deploy file: {entry.path}",
                    code='deploy_failed',
                    path=entry.path,
                ) from e

            if deployed_hash != entry.hash:
                raise IntegrityError(
                    f"Hash mismatch after deploying: {entry.path}",
                    path=entry.path,
                )

            result.written.append(entry.path)

        logger.info(
            f"Deployment {deployment_id} applied: {len(result.written)} written, "
            f"{len(result.backed_up)} backed up"
        )
        return result

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    def rollback(self, deployment_id: int) -> RollbackResult:
        """
        Revert an executed deployment file by file.

        A failure on one file is recorded and the loop continues with
        the rest. The caller inspects result.ok.

        Raises:
            FilesystemError: Missing/invalid manifest or unknown target
                (nothing has been touched in that case)
        """
        manifest = self.staging.load_manifest(deployment_id)
        target_dir = self.resolve_target_directory(manifest.target_type, manifest.target_slug)

        result = RollbackResult(deployment_id=deployment_id)

        for entry in manifest.files:
            try:
                target_file = safe_join(target_dir, entry.path)
                backup_file = self.staging.backup_file(deployment_id, entry.path)

                if backup_file.is_file():
                    target_file.parent.mkdir(parents=True, exist_ok=True)
                    target_file.write_bytes(backup_file.read_bytes())
                    result.restored.append(entry.path)
                elif target_file.exists():
                    # No backup means execute created this file
                    target_file.unlink()
                    result.deleted.append(entry.path)
                else:
                    result.unchanged.append(entry.path)
            except (OSError, FilesystemError) as e:
                logger.error(f"Rollback of deployment {deployment_id} failed for {entry.path}: {e}")
                result.failures.append(FileFailure(path=entry.path, error=str(e)))

        if result.ok:
            logger.info(
                f"Deployment {deployment_id} rolled back: {len(result.restored)} restored, "
                f"{len(result.deleted)} deleted"
            )
        else:
            logger.warning(
                f"Deployment {deployment_id} rollback incomplete: "
                f"{len(result.failures)} of {len(manifest.files)} file(s) failed"
            )
        return result

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def _staging_age_seconds(self, manifest_path: Path, now: float) -> Optional[float]:
        """
        Age of a staging directory from its manifest's staged_at,
        falling back to the manifest file's mtime.
        """
        staged_at = None
        try:
            data = json.loads(manifest_path.read_text(encoding='utf-8'))
            staged_at = StagedManifest.from_dict(data).staged_at
        except (OSError, ValueError, KeyError, TypeError):
            staged_at = None

        if staged_at is not None:
            return now - staged_at.timestamp()

        try:
            return now - manifest_path.stat().st_mtime
        except OSError:
            return None

    def cleanup(self, older_than_days: int, dry_run: bool = False) -> List[str]:
        """
        Remove staging directories whose manifest is older than the threshold.

        Directories without a manifest are skipped: they may be mid-staging
        or not ours.

        Args:
            older_than_days: Retention window in days
            dry_run: Report what would be removed without deleting

        Returns:
            Names of the removed staging directories
        """
        now = time.time()
        cutoff = older_than_days * SECONDS_PER_DAY
        removed: List[str] = []

        for name, path in self.staging.iter_staging_dirs():
            manifest_path = path / MANIFEST_FILENAME
            if not manifest_path.is_file():
                continue

            age = self._staging_age_seconds(manifest_path, now)
            if age is None or age <= cutoff:
                continue

            if dry_run:
                removed.append(name)
                continue

            try:
                self.staging.remove_dir(path)
                removed.append(name)
            except OSError as e:
                logger.error(f"Failed to remove staging directory {path}: {e}")

        if removed and not dry_run:
            logger.info(
                f"Staging cleanup removed {len(removed)} director(ies) older than {older_than_days} day(s)"
            )
        return removed

    def is_target_writable(self, target_type: str) -> bool:
        root = self.target_roots.get(target_type)
        if root is None:
            return False
        existing = root
        while not existing.exists() and existing != existing.parent:
            existing = existing.parent
        return os.access(existing, os.W_OK)
