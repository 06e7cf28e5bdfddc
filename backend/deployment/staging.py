"""
Filesystem staging area for proposed deployments.

Simple file I/O - no database interaction.

Layout (one directory per deployment id):

    <staging_root>/
        .htaccess            deny-all marker
        index.php            empty entrypoint marker
        <deployment_id>/
            .htaccess
            index.php
            manifest.json    content-addressed record of what will be applied
            files/           staged content, relative paths preserved
            backups/         originals copied aside by execute()

The manifest, not the submitted content in the database, is the source
of truth for execute and rollback. It is never modified after staging.
"""
import hashlib
import json
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from .exceptions import FilesystemError
from .models import FileSpec, format_timestamp

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = 'manifest.json'
FILES_SUBDIR = 'files'
BACKUPS_SUBDIR = 'backups'

# Inert markers that keep the staging tree opaque to casual web access
PROTECTION_FILES = {
    '.htaccess': "Deny from all\n",
    'index.php': "<?php\n// Silence is golden.\n",
}


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _parse_timestamp(value: str) -> Optional[datetime]:
    """Parse an ISO timestamp with optional 'Z' suffix as aware UTC"""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class ManifestEntry:
    """One staged file: relative path, sha-256 hex digest, size in bytes"""
    path: str
    hash: str
    size: int

    def to_dict(self) -> Dict[str, Any]:
        return {'path': self.path, 'hash': self.hash, 'size': self.size}


@dataclass
class StagedManifest:
    """Durable description of exactly which files a deployment will apply"""
    deployment_id: int
    target_type: str
    target_slug: str
    files: List[ManifestEntry] = field(default_factory=list)
    staged_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'deployment_id': self.deployment_id,
            'target_type': self.target_type,
            'target_slug': self.target_slug,
            'files': [entry.to_dict() for entry in self.files],
            'staged_at': format_timestamp(self.staged_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StagedManifest':
        """
        Build a manifest from parsed JSON.

        Raises:
            KeyError, TypeError, ValueError: If required fields are missing or malformed
        """
        return cls(
            deployment_id=int(data['deployment_id']),
            target_type=str(data['target_type']),
            target_slug=str(data['target_slug']),
            files=[
                ManifestEntry(path=str(f['path']), hash=str(f['hash']), size=int(f['size']))
                for f in data['files']
            ],
            staged_at=_parse_timestamp(data.get('staged_at') or ''),
        )


def safe_join(base: Path, relative: str) -> Path:
    """
    Join a relative path onto base, refusing anything that escapes it.

    Prevents path traversal attacks like "../../../etc/passwd" even if a
    path slipped past validation.

    Raises:
        FilesystemError: If the resolved path is outside base
    """
    candidate = base / relative
    resolved = candidate.resolve()
    base_resolved = base.resolve()
    if resolved != base_resolved and base_resolved not in resolved.parents:
        raise FilesystemError(
            f"Path escapes its base directory: {relative}",
            code='unsafe_path',
            path=relative,
        )
    return candidate


def _atomic_write_file(target_path: Path, content: bytes) -> None:
    """Write content atomically using temp file + rename pattern."""
    fd, temp_path = tempfile.mkstemp(dir=target_path.parent, suffix='.tmp')
    try:
        with os.fdopen(fd, 'wb') as f:
            f.write(content)
        os.replace(temp_path, target_path)
    except Exception:
        Path(temp_path).unlink(missing_ok=True)
        raise


class StagingArea:
    """
    Isolated holding area for submitted content.

    Each deployment id owns a disjoint subtree, so staging different ids
    never contends.
    """

    def __init__(self, staging_root):
        self.root = Path(staging_root)

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def deployment_dir(self, deployment_id: int) -> Path:
        """
        Directory for one deployment.

        Raises:
            FilesystemError: If the directory is a symlink (TOCTOU protection)
        """
        path = self.root / str(int(deployment_id))
        if path.is_symlink():
            raise FilesystemError(
                f"Symlinks not allowed in staging directory: {path}",
                code='unsafe_path',
                path=str(path),
            )
        return path

    def files_dir(self, deployment_id: int) -> Path:
        return self.deployment_dir(deployment_id) / FILES_SUBDIR

    def backups_dir(self, deployment_id: int) -> Path:
        return self.deployment_dir(deployment_id) / BACKUPS_SUBDIR

    def manifest_path(self, deployment_id: int) -> Path:
        return self.deployment_dir(deployment_id) / MANIFEST_FILENAME

    def staged_file(self, deployment_id: int, relative: str) -> Path:
        return safe_join(self.files_dir(deployment_id), relative)

    def backup_file(self, deployment_id: int, relative: str) -> Path:
        return safe_join(self.backups_dir(deployment_id), relative)

    # ------------------------------------------------------------------
    # Staging
    # ------------------------------------------------------------------

    def ensure_root(self) -> None:
        """Create the staging root with its protection markers"""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            self._write_protection_files(self.root)
        except OSError as e:
            raise FilesystemError(
                f"Failed to create staging root {self.root}: {e}",
                code='mkdir_failed',
                path=str(self.root),
            ) from e

    def stage(
        self,
        deployment_id: int,
        files: Sequence[FileSpec],
        target_type: str,
        target_slug: str,
    ) -> StagedManifest:
        """
        Write a validated file set into the staging area.

        Re-staging the same id overwrites the previously staged content.
        No cleanup is attempted on failure; the caller may retry.

        Args:
            deployment_id: Id of the pending deployment record
            files: Validated files to stage
            target_type: Target type recorded in the manifest
            target_slug: Target slug recorded in the manifest

        Returns:
            The manifest that was written

        Raises:
            FilesystemError: mkdir_failed, write_failed or manifest_failed
        """
        self.ensure_root()

        base = self.deployment_dir(deployment_id)
        files_dir = base / FILES_SUBDIR
        backups_dir = base / BACKUPS_SUBDIR

        for directory in (base, files_dir, backups_dir):
            try:
                directory.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise FilesystemError(
                    f"Failed to create directory: {directory}",
                    code='mkdir_failed',
                    path=str(directory),
                ) from e

        try:
            self._write_protection_files(base)
        except OSError as e:
            raise FilesystemError(
                f"Failed to write protection files in {base}: {e}",
                code='write_failed',
                path=str(base),
            ) from e

        manifest = StagedManifest(
            deployment_id=int(deployment_id),
            target_type=target_type,
            target_slug=target_slug,
            staged_at=datetime.now(timezone.utc),
        )

        for file in files:
            dest = safe_join(files_dir, file.path)
            data = file.content.encode('utf-8')

            try:
                dest.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise FilesystemError(
                    f"Failed to create directory: {dest.parent}",
                    code='mkdir_failed',
                    path=file.path,
                ) from e

            try:
                dest.write_bytes(data)
            except OSError as e:
                raise FilesystemError(
                    f"Failed to write staged file: {file.path}",
                    code='write_failed',
                    path=file.path,
                ) from e

            manifest.files.append(ManifestEntry(path=file.path, hash=sha256_bytes(data), size=len(data)))

        try:
            payload = json.dumps(manifest.to_dict(), indent=2).encode('utf-8')
            _atomic_write_file(base / MANIFEST_FILENAME, payload)
        except (OSError, TypeError, ValueError) as e:
            raise FilesystemError(
                f"Failed to write manifest.json: {e}",
                code='manifest_failed',
                path=str(base / MANIFEST_FILENAME),
            ) from e

        logger.info(
            f"Staged deployment {deployment_id}: {len(manifest.files)} file(s) "
            f"for {target_type}/{target_slug}"
        )
        return manifest

    def load_manifest(self, deployment_id: int) -> StagedManifest:
        """
        Read the staged manifest for a deployment.

        Raises:
            FilesystemError: no_manifest if missing, invalid_manifest if unparsable
        """
        path = self.manifest_path(deployment_id)
        if not path.is_file():
            raise FilesystemError(
                'Deployment manifest not found.',
                code='no_manifest',
                path=str(path),
            )

        try:
            data = json.loads(path.read_text(encoding='utf-8'))
            return StagedManifest.from_dict(data)
        except OSError as e:
            raise FilesystemError(
                f"Failed to read deployment manifest: {e}",
                code='invalid_manifest',
                path=str(path),
            ) from e
        except (ValueError, KeyError, TypeError) as e:
            raise FilesystemError(
                'Failed to parse deployment manifest.',
                code='invalid_manifest',
                path=str(path),
            ) from e

    def has_manifest(self, deployment_id: int) -> bool:
        return self.manifest_path(deployment_id).is_file()

    # ------------------------------------------------------------------
    # Enumeration / removal (used by the cleanup sweep)
    # ------------------------------------------------------------------

    def iter_staging_dirs(self) -> Iterator[Tuple[str, Path]]:
        """Yield (name, path) for every real directory under the staging root"""
        if not self.root.is_dir():
            return
        for entry in sorted(self.root.iterdir()):
            if entry.is_dir() and not entry.is_symlink():
                yield entry.name, entry

    def remove_dir(self, path: Path) -> None:
        """Recursively delete one staging directory"""
        shutil.rmtree(path)
        logger.info(f"Removed staging directory {path}")

    def is_writable(self) -> bool:
        return self.root.is_dir() and os.access(self.root, os.W_OK)

    @staticmethod
    def _write_protection_files(directory: Path) -> None:
        for name, content in PROTECTION_FILES.items():
            marker = directory / name
            if not marker.exists():
                marker.write_text(content, encoding='utf-8')
