"""Server-side redirect and interstitial resolution.

Ad networks and link trackers bounce visitors through chains of HTTP
redirects, meta refreshes, JavaScript location assignments and HTML "redirect
notice" pages. The resolver walks such a chain entirely on the server, through
the visitor's pinned upstream identity, so the browser only ever receives the
final page.
"""

import enum
import logging
import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urljoin, urlsplit

from bs4 import BeautifulSoup

from . import content_types
from .security import validate_target
from .upstream import FetchOptions

logger = logging.getLogger(__name__)

MAX_HOPS = 20

NOTICE_PHRASES = (
    "redirect notice",
    "the previous page is sending you to",
    "is sending you to",
    "you are being redirected",
    "you will be redirected",
    "you will now be redirected",
    "redirecting you to",
    "redirecting to",
    "if you are not redirected",
    "if you're not redirected",
    "you are now leaving",
    "you are leaving",
    "continue to external site",
    "this link will take you to",
)

# Hosts that only ever serve click trackers / redirect pages.
REDIRECTOR_HOSTS = (
    "google.com",
    "googleadservices.com",
    "doubleclick.net",
    "googlesyndication.com",
    "adclick.g.doubleclick.net",
    "l.facebook.com",
    "lm.facebook.com",
    "t.co",
    "out.reddit.com",
)

RETURN_LABELS = ("go back", "back to", "return to", "previous page", "cancel", "stay on", "stay here")

CONTINUE_LABELS = (
    "continue",
    "proceed",
    "click here",
    "go to site",
    "go to page",
    "visit site",
    "open link",
    "take me there",
    "skip ad",
    "get link",
)

STATIC_SUFFIXES = (
    ".js", ".css", ".png", ".jpg", ".jpeg", ".gif", ".svg", ".webp", ".ico",
    ".woff", ".woff2", ".ttf", ".json", ".xml",
)

NOISE_HOSTS = (
    "w3.org", "schema.org", "ogp.me", "purl.org", "xmlns.com",
    "fonts.googleapis.com", "fonts.gstatic.com", "gstatic.com", "googletagmanager.com",
)

META_URL_RE = re.compile(r"""url\s*=\s*['"]?([^'">]+)""", re.IGNORECASE)
JS_ASSIGN_RE = re.compile(
    r"""(?:(?:window|document|top|self)\s*\.\s*)?location(?:\s*\.\s*href)?\s*=\s*(['"])(?P<url>[^'"]+)\1"""
)
JS_CALL_RE = re.compile(
    r"""(?:(?:window|document|top|self)\s*\.\s*)?location\s*\.\s*(?:replace|assign)\s*\(\s*(['"])(?P<url>[^'"]+)\1"""
)
TIMER_WRAPPER_RE = re.compile(r"setTimeout\s*\(\s*(?:function\s*\(\s*\)|\(\s*\)\s*=>)\s*\{[^{}]*$")
ABSOLUTE_URL_RE = re.compile(r"""https?://[^\s"'<>()\\]+""")


class Strategy(enum.Enum):
    ANCHOR_HEURISTIC = "anchor_heuristic"
    META_REFRESH = "meta_refresh"
    JS_ASSIGNMENT = "js_assignment"
    LABELLED_LINK = "labelled_link"
    PATTERN_SCAN = "pattern_scan"
    HTTP_REDIRECT = "http_redirect"


@dataclass
class Document:
    """An HTML response prepared for the extraction strategies."""

    url: str
    html: str
    soup: BeautifulSoup

    @classmethod
    def parse(cls, url, html):
        return cls(url=url, html=html, soup=BeautifulSoup(html, "html.parser"))

    @property
    def host(self):
        return (urlsplit(self.url).hostname or "").lower()

    def text(self):
        return " ".join(self.soup.get_text(" ").split()).lower()


@dataclass
class Resolution:
    result: object
    final_url: str
    hops: int
    strategy: Optional[Strategy] = None
    unresolved: bool = False


def _is_foreign_http(url, host):
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    return parts.scheme in ("http", "https") and bool(parts.hostname) and parts.hostname.lower() != host


def _label(anchor):
    return " ".join(anchor.get_text(" ").split()).lower()


def _has_label(text, labels):
    return any(label in text for label in labels)


def is_redirect_notice(doc):
    text = doc.text()
    if any(phrase in text for phrase in NOTICE_PHRASES):
        return True
    host = doc.host
    on_redirector = any(host == h or host.endswith("." + h) for h in REDIRECTOR_HOSTS)
    return on_redirector and len(text) < 2000 and "http" in doc.html and doc.soup.find("a", href=True) is not None


# --- Extraction strategies ---


def anchor_heuristic(doc):
    """First off-site anchor that is not a "go back" link."""
    for anchor in doc.soup.find_all("a", href=True):
        href = urljoin(doc.url, anchor["href"].strip())
        if _is_foreign_http(href, doc.host) and not _has_label(_label(anchor), RETURN_LABELS):
            return href
    return None


def meta_refresh(doc):
    for tag in doc.soup.find_all("meta", content=True):
        if tag.get("http-equiv", "").lower() != "refresh":
            continue
        match = META_URL_RE.search(tag["content"])
        if match:
            return urljoin(doc.url, match.group(1).strip())
    return None


def _is_immediate(script, position):
    before = script[:position]
    depth = before.count("{") - before.count("}")
    if depth <= 0:
        return True
    return bool(TIMER_WRAPPER_RE.search(before))


def js_assignment(doc):
    """An unconditional ``location = "..."`` in an inline script.

    Assignments inside event handlers (``onclick`` attributes or function
    bodies) are ignored; a plain ``setTimeout`` wrapper still counts.
    """
    for script in doc.soup.find_all("script"):
        if script.get("src"):
            continue
        code = script.string or script.get_text()
        if not code:
            continue
        candidates = sorted(
            list(JS_ASSIGN_RE.finditer(code)) + list(JS_CALL_RE.finditer(code)),
            key=lambda m: m.start(),
        )
        for match in candidates:
            url = match.group("url").strip()
            if url.startswith(("#", "javascript:")):
                continue
            if _is_immediate(code, match.start()):
                return urljoin(doc.url, url)
    return None


def labelled_link(doc):
    """A link whose text reads like "continue" or "proceed"."""
    for anchor in doc.soup.find_all("a", href=True):
        href = anchor["href"].strip()
        if href.startswith(("#", "javascript:")):
            continue
        label = _label(anchor)
        if _has_label(label, CONTINUE_LABELS) and not _has_label(label, RETURN_LABELS):
            return urljoin(doc.url, href)
    return None


def pattern_scan(doc):
    """First off-site absolute URL anywhere in the markup that is not an asset."""
    for match in ABSOLUTE_URL_RE.finditer(doc.html):
        url = match.group(0).rstrip(".,;")
        if not _is_foreign_http(url, doc.host):
            continue
        parts = urlsplit(url)
        host = parts.hostname.lower()
        if any(host == h or host.endswith("." + h) for h in NOISE_HOSTS):
            continue
        if parts.path.lower().endswith(STATIC_SUFFIXES):
            continue
        return url
    return None


NOTICE_STRATEGIES = (
    (Strategy.ANCHOR_HEURISTIC, anchor_heuristic),
    (Strategy.META_REFRESH, meta_refresh),
    (Strategy.JS_ASSIGNMENT, js_assignment),
    (Strategy.LABELLED_LINK, labelled_link),
    (Strategy.PATTERN_SCAN, pattern_scan),
)


def extract_notice_destination(doc):
    """Try each strategy in order; ``(strategy, url)`` or ``(None, None)``."""
    for strategy, extract in NOTICE_STRATEGIES:
        url = extract(doc)
        if url:
            return strategy, url
    return None, None


class RedirectResolver:
    def __init__(self, fetcher, max_hops=MAX_HOPS):
        self.fetcher = fetcher
        self.max_hops = max_hops

    def next_hop(self, url, result):
        """Where ``result`` (fetched from ``url``) sends the visitor next.

        Returns ``(strategy, next_url, unresolved)``; ``next_url`` is None
        when ``result`` is terminal.
        """
        if result.is_redirect:
            return Strategy.HTTP_REDIRECT, urljoin(url, result.location.strip()), False
        if not (200 <= result.status < 300 and content_types.is_html(result.content_type)):
            return None, None, False

        doc = Document.parse(url, result.text())
        if result.status == 200 and is_redirect_notice(doc):
            strategy, destination = extract_notice_destination(doc)
            if destination is None:
                return None, None, True
            return strategy, destination, False

        destination = meta_refresh(doc)
        if destination:
            return Strategy.META_REFRESH, destination, False
        destination = js_assignment(doc)
        if destination:
            return Strategy.JS_ASSIGNMENT, destination, False
        return None, None, False

    def resolve(self, url, session, headers=None):
        """Follow ``url`` to its final destination.

        At most ``max_hops`` fetches are made; when the cap is reached the
        last fetched response is returned as terminal. Raises ``SSRFBlocked``
        before fetching a hop that points at an internal address.
        """
        current = url
        hops = 0
        last_strategy = None
        options = FetchOptions(headers=dict(headers or {}), follow_redirects=False)

        for fetch_count in range(1, self.max_hops + 1):
            result = self.fetcher.fetch_with_retry(current, session, options)
            strategy, destination, unresolved = self.next_hop(current, result)

            if unresolved:
                logger.warning("Unresolved redirect notice at %s after %d hops", current[:120], hops)
                return Resolution(result, current, hops, last_strategy, unresolved=True)
            if destination is None or destination == current:
                return Resolution(result, current, hops, last_strategy)
            if not destination.startswith(("http://", "https://")):
                logger.info("Redirect chain ended on non-http target %s", destination[:80])
                return Resolution(result, current, hops, last_strategy)

            if fetch_count == self.max_hops:
                logger.warning("Redirect hop cap %d reached at %s", self.max_hops, current[:120])
                return Resolution(result, current, hops, last_strategy)

            # Every hop gets the same guard as the entry URL.
            validate_target(destination)

            hops += 1
            last_strategy = strategy
            logger.info("Redirect hop %d via %s: %s", hops, strategy.value, destination[:120])
            current = destination

        return Resolution(result, current, hops, last_strategy)
