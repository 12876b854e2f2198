"""Request utility functions for resolving the source address of a request."""

import ipaddress
import logging

from fastapi import Request

from davgate.core.config import settings

logger = logging.getLogger(__name__)

LOOPBACK_HOSTS = ("127.0.0.1", "::1", "localhost")


def _is_valid_ip(ip_str: str) -> bool:
    """Check if a string is a valid IP address."""
    try:
        ipaddress.ip_address(ip_str)
        return True
    except ValueError:
        return False


def normalize_ip(ip_str: str) -> str:
    """Canonical text form so blocks and sessions key on one spelling.

    IPv4-mapped IPv6 addresses collapse to their IPv4 form.
    """
    ip = ipaddress.ip_address(ip_str)
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return str(ip.ipv4_mapped)
    return str(ip)


def _is_trusted_peer(host: str, trusted: set[str]) -> bool:
    return host in LOOPBACK_HOSTS or host in trusted


def get_client_ip(request: Request, trusted_proxies: set[str] | None = None) -> str | None:
    """Get the source address of a request.

    Forwarding headers are honoured only when the direct peer is loopback or a
    configured trusted proxy (TRUSTED_PROXY_IPS):
    1. X-Real-IP
    2. First hop of X-Forwarded-For
    Otherwise the direct peer address is used. Invalid header values are
    ignored and logged.

    Returns:
        Client IP address or None if not available
    """
    if request.client is None:
        return None

    peer = request.client.host
    trusted = settings.trusted_proxy_list if trusted_proxies is None else trusted_proxies

    if _is_trusted_peer(peer, trusted):
        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            ip = real_ip.strip()
            if _is_valid_ip(ip):
                return normalize_ip(ip)
            logger.warning(f"Invalid X-Real-IP: {real_ip}")

        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            ip = forwarded.split(",")[0].strip()
            if _is_valid_ip(ip):
                return normalize_ip(ip)
            logger.warning(f"Invalid X-Forwarded-For: {forwarded}")

    if _is_valid_ip(peer):
        return normalize_ip(peer)
    return peer
