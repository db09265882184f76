"""Request classification and the relay envelope.

The browser-side interceptor (``templates/sw.js`` and ``templates/shim.js``)
only patches the runtime; every routing decision it makes is the one
``classify`` makes here. The lists below are rendered into those scripts so
both halves agree.
"""

import enum
import logging
import re
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import quote, urlsplit, urlunsplit

from .errors import RelayProtocolError
from .rewrite import external_path, navigate_path

logger = logging.getLogger(__name__)

RELAY_ENDPOINT = "/relay"

# Gateway paths the interceptor must never touch.
BYPASS_PREFIXES = (
    "/relay",
    "/browse",
    "/external",
    "/navigate",
    "/sw.js",
    "/classify.js",
    "/test-ip",
    "/proceed",
    "/reset",
    "/static/",
    "/favicon",
)

BYPASS_SCHEMES = ("data:", "blob:", "chrome-extension:", "about:", "javascript:")

# Entries with a slash match host substring + path prefix.
AD_DOMAINS = (
    "googleads.g.doubleclick.net",
    "ad.doubleclick.net",
    "doubleclick.net",
    "googleadservices.com",
    "googlesyndication.com",
    "pagead2.googlesyndication.com",
    "tpc.googlesyndication.com",
    "googletagservices.com",
    "securepubads.g.doubleclick.net",
    "google.com/aclk",
    "google.com/url",
    "adservice.google",
    "googleads.com",
    "adtrafficquality.google",
    "fundingchoicesmessages.google.com",
    "google.com/recaptcha",
    "gstatic.com/recaptcha",
)

AD_PATH_MARKERS = ("/aclk", "/pagead", "/adclick", "/click", "/sodar")

# Hosts whose requests carry the page origin for publisher verification.
AD_VERIFICATION_HOSTS = ("googlesyndication", "doubleclick", "googleads", "adtrafficquality")

NAVIGATION_DESTINATIONS = ("document", "iframe", "frame", "subframe")

FORWARDED_HEADERS = ("accept", "accept-language", "content-type", "referer", "origin", "user-agent")

ALLOWED_METHODS = ("GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS")


class Classification(enum.Enum):
    BYPASS = "bypass"
    AD = "ad"
    EXTERNAL_NAVIGATION = "external_navigation"
    EXTERNAL_RESOURCE = "external_resource"
    SAME_ORIGIN = "same_origin"


def _origin(url):
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}".lower()


def is_ad_url(url):
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    host = (parts.hostname or "").lower()
    path = parts.path.lower()
    if not host:
        return False
    for domain in AD_DOMAINS:
        if "/" in domain:
            domain_part, _, path_part = domain.partition("/")
            if domain_part in host and path.startswith("/" + path_part):
                return True
        elif domain in host:
            return True
    return any(marker in path for marker in AD_PATH_MARKERS)


def classify(url, gateway_origin, destination="", mode=""):
    """Decide how the interceptor routes one request.

    ``url`` is absolute (the browser has already resolved it against the
    gateway page). ``destination`` and ``mode`` are the Fetch API's
    ``Request.destination`` and ``Request.mode``.
    """
    if not url or url.lower().startswith(BYPASS_SCHEMES):
        return Classification.BYPASS
    try:
        parts = urlsplit(url)
    except ValueError:
        return Classification.BYPASS
    if parts.scheme not in ("http", "https"):
        return Classification.BYPASS

    if _origin(url) == gateway_origin.rstrip("/").lower():
        if parts.path.startswith(BYPASS_PREFIXES):
            return Classification.BYPASS
        return Classification.SAME_ORIGIN

    if mode == "navigate" or destination in NAVIGATION_DESTINATIONS:
        return Classification.EXTERNAL_NAVIGATION
    if is_ad_url(url):
        return Classification.AD
    return Classification.EXTERNAL_RESOURCE


def route_for(url, classification):
    """Gateway path a classified request is sent to, or None to leave it."""
    if classification is Classification.EXTERNAL_NAVIGATION:
        return navigate_path(url)
    if classification in (Classification.AD, Classification.EXTERNAL_RESOURCE):
        return RELAY_ENDPOINT + "?url=" + quote(url, safe="")
    return None


def _replace_gateway(text, gateway_origin, target_url):
    # <gateway>/browse/x is <target>/x, so the prefix goes first.
    gateway_origin = gateway_origin.rstrip("/")
    target_origin = _origin(target_url)
    replacements = (
        (quote(gateway_origin + "/browse", safe=""), quote(target_origin, safe="")),
        (quote(gateway_origin, safe=""), quote(target_origin, safe="")),
        (gateway_origin + "/browse", target_origin),
        (gateway_origin, target_origin),
    )
    for old, new in replacements:
        text = re.sub(re.escape(old), lambda _: new, text, flags=re.IGNORECASE)
    return text


def needs_disguise(url):
    host = (urlsplit(url).hostname or "").lower()
    return any(marker in host for marker in AD_VERIFICATION_HOSTS)


def disguise_ad_request(url, headers, gateway_origin, target_url):
    """Make an ad request look like it came from the target site.

    The gateway origin (and its ``/browse`` prefix) is replaced by the target
    in the query string, encoded and raw, and in the ``Referer``. Returns
    ``(url, headers)``; non-ad URLs come back unchanged apart from the
    ``Referer``.
    """
    headers = dict(headers)
    if needs_disguise(url):
        parts = urlsplit(url)
        query = _replace_gateway(parts.query, gateway_origin, target_url)
        new_url = urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))
        if new_url != url:
            logger.debug("Disguised ad URL %s -> %s", url[:60], new_url[:60])
        url = new_url
    for key in list(headers):
        if key.lower() == "referer" and headers[key]:
            headers[key] = _replace_gateway(headers[key], gateway_origin, target_url)
    return url, headers


@dataclass
class RelayEnvelope:
    """``{url, method, headers, body}`` as sent by the interceptor."""

    url: str
    method: str = "GET"
    headers: dict = field(default_factory=dict)
    body: Optional[str] = None

    @classmethod
    def from_payload(cls, payload, query_url=None):
        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            raise RelayProtocolError("Relay envelope must be a JSON object")

        url = query_url or payload.get("url")
        if not url or not isinstance(url, str):
            raise RelayProtocolError("URL parameter required")

        method = payload.get("method") or "GET"
        if not isinstance(method, str) or method.upper() not in ALLOWED_METHODS:
            raise RelayProtocolError(f"Unsupported method {method!r}")

        headers = payload.get("headers") or {}
        if not isinstance(headers, dict):
            raise RelayProtocolError("headers must be an object")
        forwarded = {}
        for name, value in headers.items():
            if not isinstance(name, str) or not isinstance(value, str):
                raise RelayProtocolError("header names and values must be strings")
            if name.lower() in FORWARDED_HEADERS:
                forwarded[name.lower()] = value

        body = payload.get("body")
        if body is not None and not isinstance(body, str):
            raise RelayProtocolError("body must be a string or null")

        return cls(url=url.strip(), method=method.upper(), headers=forwarded, body=body)

    def upstream_headers(self):
        """Headers for the upstream request, in canonical case."""
        headers = {"Accept": self.headers.get("accept", "*/*")}
        names = {
            "accept-language": "Accept-Language",
            "content-type": "Content-Type",
            "referer": "Referer",
            "origin": "Origin",
            "user-agent": "User-Agent",
        }
        for name, canonical in names.items():
            if self.headers.get(name):
                headers[canonical] = self.headers[name]
        return headers

    def body_bytes(self):
        if self.body is None or self.method in ("GET", "HEAD"):
            return None
        return self.body.encode("utf-8")


def browser_config(target_url):
    """Values the browser-side scripts are rendered with."""
    return {
        "relayEndpoint": RELAY_ENDPOINT,
        "bypassPrefixes": list(BYPASS_PREFIXES),
        "bypassSchemes": list(BYPASS_SCHEMES),
        "adDomains": list(AD_DOMAINS),
        "adPathMarkers": list(AD_PATH_MARKERS),
        "navigationDestinations": list(NAVIGATION_DESTINATIONS),
        "forwardedHeaders": list(FORWARDED_HEADERS),
        "targetUrl": target_url,
        "externalPrefix": external_path(""),
        "navigatePrefix": navigate_path(""),
    }
