#!/usr/bin/env python3
"""
CodeDrop Backend - reviewed deployment of proposed source files

An external agent submits a set of files for a theme, plugin or must-use
plugin. Submissions are validated and staged in isolation, applied only
after explicit approval, and can be rolled back from automatic backups.

All components are built once in create_app() and handed to the routes
through app.state; nothing is constructed at import time.
"""

import logging
from contextlib import asynccontextmanager
from typing import Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from audit import audit_routes
from audit.audit_logger import AuditTrail
from config.paths import STAGING_DIR, ensure_data_dirs, get_target_roots
from config.settings import AppConfig, DeploySettings, HealthCheckFilter, SettingsProvider, setup_logging
from database import DatabaseManager
from deployment import routes as deployment_routes
from deployment.engine import DeploymentEngine
from deployment.service import DeploymentService
from deployment.staging import StagingArea
from deployment.state_machine import DeploymentStateMachine
from deployment.store import DeploymentStore
from deployment.validator import DeploymentValidator
from notifications import NotificationService
from security.access_guard import AccessGuard
from security.api_keys import ApiKeyAuthenticator, parse_api_keys
from security.audit import SecurityAuditLogger
from security.rate_limiting import RateLimiter

logger = logging.getLogger(__name__)


def build_service(
    db: DatabaseManager,
    staging_root: str,
    target_roots: Dict[str, str],
    base_settings: Optional[DeploySettings] = None,
    security_audit: Optional[SecurityAuditLogger] = None,
    notifier: Optional[NotificationService] = None,
    php_binary: Optional[str] = 'php',
    site_host: Optional[str] = None,
) -> DeploymentService:
    """Wire the deployment pipeline around one database and one content tree"""
    base_settings = base_settings or DeploySettings()
    staging = StagingArea(staging_root)
    return DeploymentService(
        store=DeploymentStore(db, DeploymentStateMachine()),
        validator=DeploymentValidator(php_binary=php_binary),
        staging=staging,
        engine=DeploymentEngine(staging, target_roots),
        guard=AccessGuard(
            RateLimiter(base_settings.rate_limit_max, base_settings.rate_limit_window),
            security_audit=security_audit,
            site_host=site_host,
        ),
        audit=AuditTrail(db, max_entries=base_settings.audit_log_max),
        settings_provider=SettingsProvider(db, base=base_settings),
        notifier=notifier,
    )


def create_app(
    service: Optional[DeploymentService] = None,
    authenticator: Optional[ApiKeyAuthenticator] = None,
    configure_logging: bool = True,
) -> FastAPI:
    """
    Build the FastAPI application.

    With no arguments everything comes from the environment (AppConfig,
    config.paths). Tests pass their own service and authenticator.
    """
    notifier: Optional[NotificationService] = None
    db: Optional[DatabaseManager] = None

    if service is None:
        AppConfig.validate()
        if configure_logging:
            setup_logging(level=AppConfig.LOG_LEVEL)
        ensure_data_dirs()

        base_settings = DeploySettings.from_env()
        security_audit = SecurityAuditLogger()
        db = DatabaseManager(AppConfig.DATABASE_PATH, initial_settings=base_settings.to_row_values())
        notifier = NotificationService(AppConfig.NOTIFY_WEBHOOK_URL)
        service = build_service(
            db,
            STAGING_DIR,
            get_target_roots(),
            base_settings=base_settings,
            security_audit=security_audit,
            notifier=notifier,
            site_host=AppConfig.SITE_HOST,
        )
        service.staging.ensure_root()

    if authenticator is None:
        authenticator = ApiKeyAuthenticator(
            parse_api_keys(AppConfig.API_KEYS),
            reverse_proxy_mode=AppConfig.REVERSE_PROXY_MODE,
            security_audit=service.guard.security_audit,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown"""
        # Reapply health check filter to uvicorn access logger (must be done after uvicorn starts)
        logging.getLogger("uvicorn.access").addFilter(HealthCheckFilter())
        logger.info(f"CodeDrop {AppConfig.VERSION} started")

        yield

        logger.info("Shutting down CodeDrop")
        if notifier is not None:
            try:
                notifier.close()
                logger.info("Notification service closed")
            except Exception as e:
                logger.error(f"Error closing notification service: {e}")
        if db is not None:
            try:
                db.engine.dispose()
                logger.info("SQLAlchemy engine disposed")
            except Exception as e:
                logger.error(f"Error disposing database engine: {e}")

    app = FastAPI(
        title="CodeDrop API",
        version=AppConfig.VERSION,
        lifespan=lifespan
    )

    app.state.deployment_service = service
    app.state.audit_trail = service.audit
    app.state.access_guard = service.guard
    app.state.authenticator = authenticator

    # Custom exception handler for Pydantic validation errors
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """
        Custom handler for Pydantic validation errors.
        Returns user-friendly error messages with field-level details.
        """
        errors = []
        for error in exc.errors():
            field = " -> ".join(str(x) for x in error['loc'])
            errors.append({
                "field": field,
                "message": error['msg'],
                "type": error['type']
            })

        logger.warning(f"Request validation failed for {request.url.path}: {errors}")

        return JSONResponse(
            status_code=422,
            content={
                "detail": "Invalid request data",
                "errors": errors
            }
        )

    app.include_router(deployment_routes.router)
    app.include_router(deployment_routes.settings_router)
    app.include_router(audit_routes.router)

    @app.get("/health")
    async def health_check():
        """Health check endpoint for container health checks - no authentication required"""
        return {"status": "healthy", "service": "codedrop-backend"}

    return app


def main():
    import uvicorn

    app = create_app()
    uvicorn.run(app, host=AppConfig.HOST, port=AppConfig.PORT, log_config=None)


if __name__ == "__main__":
    main()
