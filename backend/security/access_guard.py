"""
Access gate for deployment operations.

Every check raises AccessError before the caller touches the database or
the filesystem. The order for a mutating operation is:

    privilege -> kill switch -> transport -> rate limit

so a refused request never consumes a rate-limit slot.
"""

import logging
from typing import Optional

from config.settings import DeploySettings
from deployment.exceptions import AccessError
from deployment.models import ActorContext
from .audit import SecurityAuditLogger
from .rate_limiting import RateLimiter

logger = logging.getLogger(__name__)

# Hosts exempt from the HTTPS requirement
LOCAL_DEVELOPMENT_HOSTS = frozenset({'localhost', '127.0.0.1', '::1'})
LOCAL_DEVELOPMENT_SUFFIXES = ('.local', '.test')

# Operations gated by the kill switch and the rate limit
GATED_OPERATIONS = frozenset({'submit', 'approve', 'rollback'})


def _strip_port(host: str) -> str:
    """'example.test:8080' -> 'example.test', '[::1]:8080' -> '::1'"""
    host = host.strip().lower()
    if host.startswith('['):
        end = host.find(']')
        return host[1:end] if end != -1 else host[1:]
    if host.count(':') == 1:
        return host.split(':', 1)[0]
    return host


class AccessGuard:
    """
    Kill switch, transport, rate-limit and privilege checks.

    Args:
        rate_limiter: Per-actor fixed-window limiter (one is created if omitted)
        security_audit: Structured log for refusals; optional
        site_host: Host the site is configured to serve; plain HTTP is only
            accepted when this is a local development host
    """

    def __init__(self, rate_limiter: Optional[RateLimiter] = None,
                 security_audit: Optional[SecurityAuditLogger] = None,
                 site_host: Optional[str] = None):
        self.rate_limiter = rate_limiter or RateLimiter()
        self.security_audit = security_audit
        self.site_host = site_host

    def _refuse(self, actor: ActorContext, operation: str, error: AccessError) -> None:
        logger.warning(f"Refused {operation} for {actor.actor_id}: {error.code}")
        if self.security_audit is not None:
            if error.code == 'rate_limited':
                self.security_audit.log_rate_limit_violation(
                    client_ip=actor.source_ip,
                    actor_id=actor.actor_id,
                    operation=operation,
                    retry_after=error.retry_after,
                )
            else:
                self.security_audit.log_access_refused(
                    client_ip=actor.source_ip,
                    actor_id=actor.actor_id,
                    operation=operation,
                    reason=error.code,
                )
        raise error

    def require_privileged(self, actor: ActorContext, operation: str = 'read') -> None:
        if not actor.is_privileged:
            self._refuse(actor, operation, AccessError(
                'You do not have permission to manage deployments.',
                code='forbidden',
                status_code=403,
            ))

    def check_enabled(self, actor: ActorContext, settings: DeploySettings, operation: str) -> None:
        if not settings.enabled:
            self._refuse(actor, operation, AccessError(
                'CodeDrop is currently disabled.',
                code='disabled',
                status_code=503,
            ))

    @staticmethod
    def is_local_development_host(host: Optional[str]) -> bool:
        """
        Check whether a site host is exempt from the HTTPS requirement.

        Examples:
            >>> AccessGuard.is_local_development_host('localhost:8080')
            True
            >>> AccessGuard.is_local_development_host('shop.test')
            True
            >>> AccessGuard.is_local_development_host('example.com')
            False
        """
        if not host:
            return False
        name = _strip_port(host)
        return name in LOCAL_DEVELOPMENT_HOSTS or name.endswith(LOCAL_DEVELOPMENT_SUFFIXES)

    def check_transport(self, actor: ActorContext, operation: str) -> None:
        # The exemption follows the configured site host, never the request's Host header
        if actor.is_secure or self.is_local_development_host(self.site_host):
            return
        self._refuse(actor, operation, AccessError(
            'HTTPS is required for API access.',
            code='https_required',
            status_code=403,
        ))

    def check_rate_limit(self, actor: ActorContext, settings: DeploySettings, operation: str) -> None:
        self.rate_limiter.configure(settings.rate_limit_max, settings.rate_limit_window)
        allowed, retry_after = self.rate_limiter.is_allowed(actor.actor_id)
        if not allowed:
            self._refuse(actor, operation, AccessError(
                'Rate limit exceeded. Please wait before submitting again.',
                code='rate_limited',
                status_code=429,
                retry_after=retry_after,
            ))

    def authorize_mutation(self, actor: ActorContext, settings: DeploySettings, operation: str) -> None:
        """
        Run every check that applies to a state-changing operation.

        submit, approve and rollback pass through the kill switch and the
        rate limit; other mutations (reject, settings changes) only need
        privilege and a secure transport.

        Raises:
            AccessError: forbidden, disabled, https_required or rate_limited
        """
        self.require_privileged(actor, operation)
        if operation in GATED_OPERATIONS:
            self.check_enabled(actor, settings, operation)
        self.check_transport(actor, operation)
        if operation in GATED_OPERATIONS:
            self.check_rate_limit(actor, settings, operation)

    def authorize_read(self, actor: ActorContext) -> None:
        self.require_privileged(actor, 'read')
