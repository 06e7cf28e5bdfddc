"""
Configuration Management for CodeDrop
Centralizes all environment-based configuration and settings
"""

import os
import logging
from dataclasses import dataclass, field, asdict, replace
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

# Target types the system knows how to resolve to a directory
KNOWN_TARGET_TYPES = ('theme', 'plugin', 'mu-plugin')


class HealthCheckFilter(logging.Filter):
    """Filter out health check and routine polling requests to reduce log noise"""
    def filter(self, record: logging.LogRecord) -> bool:
        # For uvicorn access logs, the message format is:
        # 'IP:PORT - "METHOD /path HTTP/1.1" STATUS'
        message = record.getMessage()
        if '200 OK' in message or '200' in str(getattr(record, 'args', '')):
            if '/api/status' in message:
                return False
        return True


def setup_logging(log_dir: Optional[str] = None, level: str = 'INFO'):
    """Configure application logging with rotation"""
    if log_dir is None:
        from .paths import LOG_DIR
        log_dir = LOG_DIR

    # Create logs directory with secure permissions
    os.makedirs(log_dir, mode=0o700, exist_ok=True)

    root_logger = logging.getLogger()

    # Close and clear any existing handlers to ensure our logging
    # configuration is used and prevent file descriptor leaks
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)

    log_level = getattr(logging, level.upper(), logging.INFO)
    root_logger.setLevel(log_level)

    # Console handler for stdout
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    console_handler.setFormatter(console_formatter)

    # File handler with rotation for application logs
    # Max 10MB per file, keep 14 backups
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, 'codedrop.log'),
        maxBytes=10*1024*1024,  # 10MB
        backupCount=14,
        encoding='utf-8'
    )
    file_handler.setLevel(log_level)
    file_handler.setFormatter(console_formatter)

    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)

    # Suppress noisy Uvicorn access logs for status polling
    uvicorn_access = logging.getLogger("uvicorn.access")
    uvicorn_access.addFilter(HealthCheckFilter())


def _get_int_env(key: str, default: int) -> int:
    """
    Safely parse integer from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid

    Returns:
        Parsed integer value or default
    """
    try:
        value = os.getenv(key)
        if value is not None:
            parsed = int(value)
            if parsed < 0:
                logger.warning(f"Invalid negative value for {key}={value}, using default {default}")
                return default
            return parsed
    except ValueError:
        logger.warning(f"Invalid integer for {key}={os.getenv(key)}, using default {default}")
    return default


def _get_bool_env(key: str, default: bool) -> bool:
    value = os.getenv(key)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


@dataclass(frozen=True)
class DeploySettings:
    """
    Runtime configuration for the deployment pipeline.

    Passed explicitly to the validator and access guard; the service
    asks its settings provider for a fresh instance on every operation
    so changes made through the settings endpoint apply immediately.

    Attributes:
        enabled: Kill switch. False refuses submit, approve and rollback.
        allowed_targets: Target types accepted by the validator.
        max_file_size: Per-file content limit in bytes.
        max_deployment_size: Limit on the sum of all file sizes in bytes.
        cleanup_days: Staging retention used by the cleanup sweep.
        notify_on_submit: Send a notification for each new submission.
        rate_limit_max: Mutating operations allowed per actor per window.
        rate_limit_window: Window length in seconds.
        audit_log_max: Audit entries kept before the oldest are evicted.
    """
    enabled: bool = True
    allowed_targets: Tuple[str, ...] = field(default=KNOWN_TARGET_TYPES)
    max_file_size: int = 512000
    max_deployment_size: int = 5242880
    cleanup_days: int = 30
    notify_on_submit: bool = False
    rate_limit_max: int = 10
    rate_limit_window: int = 60
    audit_log_max: int = 1000

    # Fields that can be changed through the settings endpoint
    EDITABLE_FIELDS = (
        'enabled', 'allowed_targets', 'max_file_size', 'max_deployment_size',
        'cleanup_days', 'notify_on_submit',
    )

    @classmethod
    def from_env(cls) -> 'DeploySettings':
        """Build settings from CODEDROP_* environment variables"""
        defaults = cls()
        targets_env = os.getenv('CODEDROP_ALLOWED_TARGETS')
        if targets_env:
            allowed = tuple(t.strip() for t in targets_env.split(',') if t.strip())
        else:
            allowed = defaults.allowed_targets

        return cls(
            enabled=_get_bool_env('CODEDROP_ENABLED', defaults.enabled),
            allowed_targets=allowed,
            max_file_size=_get_int_env('CODEDROP_MAX_FILE_SIZE', defaults.max_file_size),
            max_deployment_size=_get_int_env('CODEDROP_MAX_DEPLOYMENT_SIZE', defaults.max_deployment_size),
            cleanup_days=_get_int_env('CODEDROP_CLEANUP_DAYS', defaults.cleanup_days),
            notify_on_submit=_get_bool_env('CODEDROP_NOTIFY_ON_SUBMIT', defaults.notify_on_submit),
            rate_limit_max=_get_int_env('CODEDROP_RATE_LIMIT_MAX', defaults.rate_limit_max),
            rate_limit_window=_get_int_env('CODEDROP_RATE_LIMIT_WINDOW', defaults.rate_limit_window),
            audit_log_max=_get_int_env('CODEDROP_AUDIT_LOG_MAX', defaults.audit_log_max),
        )

    @classmethod
    def from_row(cls, row, base: Optional['DeploySettings'] = None) -> 'DeploySettings':
        """Overlay the persisted global_settings row on top of base settings"""
        base = base or cls()
        allowed = row.allowed_targets if row.allowed_targets else list(base.allowed_targets)
        return replace(
            base,
            enabled=bool(row.enabled),
            allowed_targets=tuple(allowed),
            max_file_size=int(row.max_file_size),
            max_deployment_size=int(row.max_deployment_size),
            cleanup_days=int(row.cleanup_days),
            notify_on_submit=bool(row.notify_on_submit),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['allowed_targets'] = list(self.allowed_targets)
        return data

    def to_row_values(self) -> Dict[str, Any]:
        """Values for the persisted global_settings row"""
        data = self.to_dict()
        return {key: data[key] for key in self.EDITABLE_FIELDS}


def validate_settings_update(updates: Dict[str, Any]) -> Dict[str, Any]:
    """
    Validate a partial settings update.

    Args:
        updates: Field name -> new value

    Returns:
        Cleaned updates dict

    Raises:
        ValueError: If a field is unknown or a value is out of range
    """
    cleaned: Dict[str, Any] = {}
    for key, value in updates.items():
        if key not in DeploySettings.EDITABLE_FIELDS:
            raise ValueError(f"Unknown or read-only setting: {key}")

        if key in ('enabled', 'notify_on_submit'):
            cleaned[key] = bool(value)
        elif key == 'allowed_targets':
            targets = list(value or [])
            unknown = [t for t in targets if t not in KNOWN_TARGET_TYPES]
            if unknown:
                raise ValueError(f"Unknown target types: {', '.join(unknown)}")
            cleaned[key] = targets
        elif key in ('max_file_size', 'max_deployment_size'):
            if int(value) < 1:
                raise ValueError(f"{key} must be a positive number of bytes")
            cleaned[key] = int(value)
        elif key == 'cleanup_days':
            if not 1 <= int(value) <= 365:
                raise ValueError("cleanup_days must be between 1 and 365")
            cleaned[key] = int(value)
    return cleaned


class AppConfig:
    """Main application configuration"""

    VERSION = "1.0.0"

    # Server settings
    HOST = os.getenv('CODEDROP_HOST', '0.0.0.0')
    PORT = int(os.getenv('CODEDROP_PORT', 8080))

    from .paths import DATABASE_PATH as DEFAULT_DATABASE_PATH

    # Database settings
    DATABASE_PATH = os.getenv('CODEDROP_DATABASE_PATH', DEFAULT_DATABASE_PATH)

    # Logging
    LOG_LEVEL = os.getenv('CODEDROP_LOG_LEVEL', 'INFO')

    # Trust X-Forwarded-* headers (only when behind a reverse proxy you control)
    REVERSE_PROXY_MODE = _get_bool_env('CODEDROP_REVERSE_PROXY_MODE', False)

    # Host the site is served on; plain HTTP is only accepted for local development hosts
    SITE_HOST = os.getenv('CODEDROP_SITE_HOST', '')

    # API keys as comma-separated "actor:key" pairs
    API_KEYS = os.getenv('CODEDROP_API_KEYS', '')

    # Optional webhook for submission notifications
    NOTIFY_WEBHOOK_URL = os.getenv('CODEDROP_NOTIFY_WEBHOOK_URL', '')

    @classmethod
    def validate(cls):
        """Validate configuration"""
        if cls.PORT < 1 or cls.PORT > 65535:
            raise ValueError(f"Invalid port: {cls.PORT}")

        if not cls.API_KEYS:
            logger.warning("CODEDROP_API_KEYS is empty - all API requests will be rejected")

        return True


class SettingsProvider:
    """
    Source of the current DeploySettings.

    Environment values are the base; the persisted global_settings row
    overlays the editable fields. Called once per operation, so an update
    through the settings endpoint applies to the next request.
    """

    def __init__(self, db, base: Optional[DeploySettings] = None):
        self.db = db
        self.base = base or DeploySettings()

    def __call__(self) -> DeploySettings:
        return DeploySettings.from_row(self.db.get_settings(), base=self.base)

    def update(self, updates: Dict[str, Any]) -> DeploySettings:
        """
        Validate and persist a partial update.

        Raises:
            ValueError: If a field is unknown or a value is out of range
        """
        cleaned = validate_settings_update(updates)
        if cleaned:
            self.db.update_settings(cleaned)
        return self()
