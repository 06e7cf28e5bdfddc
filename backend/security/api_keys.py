"""
API Key Authentication for CodeDrop

Keys are configured as comma-separated "actor:key" pairs in
CODEDROP_API_KEYS and sent as "Authorization: Bearer <key>".

SECURITY FEATURES:
- Constant-time comparison against every configured key
- Keys are never logged; failures are written to the security audit log
- The resulting ActorContext carries the client IP and transport so the
  access guard can enforce HTTPS
"""

import hmac
import logging
from typing import Dict, Optional

from fastapi import HTTPException, Request

from deployment.models import ActorContext
from utils.client_ip import get_client_ip, is_secure_request
from .audit import SecurityAuditLogger

logger = logging.getLogger(__name__)

# Shortest key accepted from configuration
MIN_KEY_LENGTH = 16


def parse_api_keys(raw: str) -> Dict[str, str]:
    """
    Parse "actor:key,actor2:key2" into {actor: key}.

    Malformed or too-short entries are skipped with a warning.

    Examples:
        >>> parse_api_keys("ci-bot:0123456789abcdef0123")
        {'ci-bot': '0123456789abcdef0123'}
    """
    keys: Dict[str, str] = {}
    for item in (raw or '').split(','):
        item = item.strip()
        if not item:
            continue
        actor, sep, key = item.partition(':')
        actor, key = actor.strip(), key.strip()
        if not sep or not actor or not key:
            logger.warning("Ignoring malformed CODEDROP_API_KEYS entry (expected actor:key)")
            continue
        if len(key) < MIN_KEY_LENGTH:
            logger.warning(f"Ignoring API key for '{actor}': shorter than {MIN_KEY_LENGTH} characters")
            continue
        keys[actor] = key
    return keys


class ApiKeyAuthenticator:
    """
    Builds an ActorContext from a bearer token.

    Args:
        keys: {actor_id: key}
        reverse_proxy_mode: Trust X-Forwarded-* headers
        security_audit: Optional structured log for auth failures
    """

    def __init__(self, keys: Dict[str, str], reverse_proxy_mode: bool = False,
                 security_audit: Optional[SecurityAuditLogger] = None):
        self.keys = dict(keys)
        self.reverse_proxy_mode = reverse_proxy_mode
        self.security_audit = security_audit

    def match(self, presented: str) -> Optional[str]:
        """Return the actor owning the presented key, or None"""
        matched = None
        presented_bytes = presented.encode('utf-8')
        # No early exit: every key is compared
        for actor, key in self.keys.items():
            if hmac.compare_digest(presented_bytes, key.encode('utf-8')):
                matched = actor
        return matched

    def authenticate(self, request: Request) -> ActorContext:
        """
        Resolve the caller of a request.

        Raises:
            HTTPException: 401 if the header is missing or the key is unknown
        """
        client_ip = get_client_ip(request, self.reverse_proxy_mode)

        auth_header = request.headers.get('authorization', '')
        scheme, _, token = auth_header.partition(' ')
        token = token.strip()

        actor_id = self.match(token) if scheme.lower() == 'bearer' and token else None
        if actor_id is None:
            logger.warning(f"Rejected API request from {client_ip}: missing or invalid API key")
            if self.security_audit is not None:
                self.security_audit.log_authentication_attempt(
                    client_ip=client_ip, success=False, endpoint=request.url.path
                )
            raise HTTPException(
                status_code=401,
                detail={'code': 'unauthorized', 'message': 'A valid API key is required.'},
                headers={'WWW-Authenticate': 'Bearer'},
            )

        return ActorContext(
            actor_id=actor_id,
            is_privileged=True,
            source_ip=client_ip,
            is_secure=is_secure_request(request, self.reverse_proxy_mode),
        )


def get_current_actor(request: Request) -> ActorContext:
    """FastAPI dependency: authenticate the request with the app's authenticator"""
    authenticator = getattr(request.app.state, 'authenticator', None)
    if authenticator is None:
        raise RuntimeError("ApiKeyAuthenticator not initialized")
    return authenticator.authenticate(request)
