"""
Client address extraction with reverse proxy support.

SECURITY WARNING:
- Only trust X-Forwarded-* headers if you control the reverse proxy
- Enabling REVERSE_PROXY_MODE when directly exposed to internet is DANGEROUS
  (attackers can spoof X-Forwarded-For and X-Forwarded-Proto headers)
"""

import logging

from fastapi import Request

logger = logging.getLogger(__name__)


def get_client_ip(request: Request, reverse_proxy_mode: bool = False) -> str:
    """
    Get client IP address, handling reverse proxies correctly.

    Behavior:
    - reverse_proxy_mode=True: Trust X-Forwarded-For header (first IP)
    - reverse_proxy_mode=False: Use request.client.host

    Examples:
        Behind Traefik (reverse_proxy_mode=True):
        - X-Forwarded-For: "203.0.113.5, 192.168.1.1"
        - Returns: "203.0.113.5" (original client)

        Direct connection (reverse_proxy_mode=False):
        - request.client.host: "203.0.113.5"
        - Returns: "203.0.113.5"
    """
    if reverse_proxy_mode:
        # Format: "client, proxy1, proxy2"
        xff = request.headers.get("x-forwarded-for")
        if xff:
            return xff.split(",")[0].strip()

        # Fallback to X-Real-IP (nginx alternative)
        real_ip = request.headers.get("x-real-ip")
        if real_ip:
            return real_ip.strip()

        logger.warning(
            "REVERSE_PROXY_MODE enabled but no X-Forwarded-For or X-Real-IP header found. "
            "Falling back to request.client.host."
        )

    return request.client.host if request.client else "unknown"


def is_secure_request(request: Request, reverse_proxy_mode: bool = False) -> bool:
    """True if the request arrived over HTTPS (as seen by the client)"""
    if reverse_proxy_mode:
        proto = request.headers.get("x-forwarded-proto")
        if proto:
            return proto.split(",")[0].strip().lower() == "https"
    return request.url.scheme == "https"
