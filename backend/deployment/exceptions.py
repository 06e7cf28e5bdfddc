"""
Error taxonomy for the deployment pipeline.

    DeploymentError
    ├── ValidationFailed      submission rejected by the validator (full report attached)
    ├── StateError            transition not allowed from the current status
    ├── NotFoundError         unknown deployment id
    ├── AccessError           kill switch, transport, rate limit or privilege refusal
    └── FilesystemError       create/read/write/delete failure during staging, apply or rollback
        ├── IntegrityError    post-write hash mismatch
        └── RollbackIncomplete  one or more files could not be restored
"""

from typing import Optional


class DeploymentError(Exception):
    """Base class for all deployment pipeline errors."""

    code = "deployment_error"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class ValidationFailed(DeploymentError):
    """Submission did not pass validation. Carries the complete report."""

    code = "validation_failed"

    def __init__(self, result):
        super().__init__(
            f"Deployment validation failed with {len(result.errors)} error(s)"
        )
        self.result = result


class StateError(DeploymentError):
    """Requested status transition is not allowed from the current status."""

    code = "invalid_status"

    def __init__(self, deployment_id: int, current_status: str, requested_status: str):
        super().__init__(
            f"Deployment {deployment_id}: cannot transition from "
            f"'{current_status}' to '{requested_status}'"
        )
        self.deployment_id = deployment_id
        self.current_status = current_status
        self.requested_status = requested_status


class NotFoundError(DeploymentError):
    """Deployment id does not exist."""

    code = "not_found"

    def __init__(self, deployment_id: int):
        super().__init__(f"Deployment {deployment_id} not found")
        self.deployment_id = deployment_id


class AccessError(DeploymentError):
    """Request refused before any filesystem effect."""

    code = "forbidden"

    def __init__(
        self,
        message: str,
        code: str = "forbidden",
        status_code: int = 403,
        retry_after: Optional[int] = None,
    ):
        super().__init__(message, code)
        self.status_code = status_code
        self.retry_after = retry_after


class FilesystemError(DeploymentError):
    """Filesystem operation failed; the operation in progress is aborted."""

    code = "filesystem_error"

    def __init__(self, message: str, code: Optional[str] = None, path: Optional[str] = None):
        super().__init__(message, code)
        self.path = path


class IntegrityError(FilesystemError):
    """Written content does not hash to the manifest value."""

    code = "hash_mismatch"


class RollbackIncomplete(FilesystemError):
    """Rollback finished with per-file failures. Target tree needs manual attention."""

    code = "rollback_incomplete"

    def __init__(self, deployment_id: int, result):
        failed = ", ".join(f.path for f in result.failures)
        super().__init__(
            f"Rollback of deployment {deployment_id} failed for {len(result.failures)} "
            f"file(s): {failed}"
        )
        self.deployment_id = deployment_id
        self.result = result
