"""SSRF guard applied by every entry point before an upstream fetch."""

import ipaddress
import logging
from urllib.parse import urlsplit

from .errors import InvalidURL, SSRFBlocked

logger = logging.getLogger(__name__)

BLOCKED_HOSTNAMES = {"localhost", "localhost.localdomain", "ip6-localhost", "ip6-loopback"}

# Prefix match on the hostname. "172." deliberately covers more than
# 172.16.0.0/12.
BLOCKED_PREFIXES = ("127.", "10.", "172.", "192.168.", "169.254.", "0.")


def _literal_address(host):
    try:
        return ipaddress.ip_address(host)
    except ValueError:
        pass
    if host.isdigit():
        try:
            return ipaddress.ip_address(int(host))
        except ValueError:
            return None
    return None


def is_blocked_host(host):
    host = host.lower().rstrip(".")
    if host in BLOCKED_HOSTNAMES or host.endswith(".localhost"):
        return True
    if host.startswith(BLOCKED_PREFIXES):
        return True
    address = _literal_address(host)
    if address is None:
        return False
    if getattr(address, "ipv4_mapped", None):
        address = address.ipv4_mapped
    return (
        address.is_loopback
        or address.is_private
        or address.is_link_local
        or address.is_unspecified
        or address.is_reserved
        or address.is_multicast
    )


def validate_target(url):
    """Parse ``url`` and refuse anything the gateway must not fetch.

    Raises ``InvalidURL`` for unparsable or non-http(s) targets and
    ``SSRFBlocked`` for loopback and private-range hosts. Hostnames are not
    resolved here; resolution happens at the upstream exit.
    """
    if not url or not isinstance(url, str):
        raise InvalidURL("No URL provided", url=url)
    try:
        parts = urlsplit(url.strip())
        parts.port
    except ValueError as exc:
        raise InvalidURL(f"Invalid URL: {exc}", url=url) from exc
    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise InvalidURL("Invalid URL provided", url=url)
    if is_blocked_host(parts.hostname):
        logger.warning("Blocked internal target %s", url[:100])
        raise SSRFBlocked("Cannot fetch internal addresses", url=url)
    return parts
