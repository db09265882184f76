"""URL rewriting for proxied HTML and CSS.

Same-host references become ``/browse<path>`` and everything else becomes
``/external/<percent-encoded absolute url>``, so every follow-up request the
page makes re-enters the gateway. References are always resolved against the
target, never against the gateway's own origin.
"""

import logging
import re
from urllib.parse import quote, urljoin, urlsplit

from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)

SKIP_PREFIXES = ("data:", "javascript:", "mailto:", "tel:", "#", "blob:", "about:")

REWRITTEN_RE = re.compile(r"^/(?:browse|external|navigate)(?:[/?#]|$)")

CSS_URL_RE = re.compile(r"""url\(\s*(['"]?)([^'")\s]+)\1\s*\)""", re.IGNORECASE)
CSS_IMPORT_RE = re.compile(r"""@import\s+(['"])([^'"]+)\1""", re.IGNORECASE)
META_REFRESH_RE = re.compile(r"""^\s*(\d+)\s*[;,]\s*url\s*=\s*['"]?(.+?)['"]?\s*$""", re.IGNORECASE)

# Attributes whose value is a navigation (link, form, frame) rather than a
# resource the page embeds.
NAVIGATION_ATTRS = {
    "a": ["href"],
    "area": ["href"],
    "form": ["action"],
    "iframe": ["src"],
    "frame": ["src"],
}

RESOURCE_ATTRS = {
    "link": ["href"],
    "script": ["src"],
    "img": ["src"],
    "input": ["src"],
    "video": ["src", "poster"],
    "audio": ["src"],
    "source": ["src"],
    "track": ["src"],
    "embed": ["src"],
    "object": ["data"],
    "base": ["href"],
}

SRCSET_ATTRS = ["srcset", "data-srcset", "data-lazy-srcset"]

LAZY_ATTRS = ["data-src", "data-lazy-src", "data-original", "data-bg", "data-background"]


def should_skip(url):
    if not url:
        return True
    lowered = url.strip().lower()
    return lowered.startswith(SKIP_PREFIXES) or bool(REWRITTEN_RE.match(url.strip()))


def absolutize(url, base):
    """Resolve ``url`` against the target ``base``; None if it is not http(s)."""
    url = url.strip()
    if url.startswith(("http://", "https://")):
        absolute = url
    else:
        absolute = urljoin(base, url)
    if not absolute.startswith(("http://", "https://")):
        return None
    return absolute


def external_path(absolute_url):
    return "/external/" + quote(absolute_url, safe="")


def navigate_path(absolute_url):
    return "/navigate?url=" + quote(absolute_url, safe="")


def rewrite_url(url, target_origin, base_url=None):
    """Map one reference onto the gateway, or return None to leave it alone.

    ``base_url`` is the document the reference appears in (defaults to the
    target origin); host matching is always against ``target_origin``.
    """
    if should_skip(url):
        return None
    absolute = absolutize(url, base_url or target_origin)
    if absolute is None:
        return None
    try:
        parts = urlsplit(absolute)
        target_host = urlsplit(target_origin).hostname
        host = parts.hostname
    except ValueError as exc:
        logger.warning("Failed to parse URL %r: %s", url[:100], exc)
        return None

    if host and target_host and host == target_host.lower():
        rewritten = "/browse" + (parts.path or "/")
        if parts.query:
            rewritten += "?" + parts.query
        if parts.fragment:
            rewritten += "#" + parts.fragment
        return rewritten
    return external_path(absolute)


def _map_srcset(srcset, mapper):
    rewritten = []
    for candidate in srcset.split(","):
        candidate = candidate.strip()
        if not candidate:
            continue
        url, _, descriptor = candidate.partition(" ")
        new_url = mapper(url)
        rewritten.append(f"{new_url} {descriptor.strip()}".strip() if new_url else candidate)
    return ", ".join(rewritten)


def _map_css(css, mapper):
    def replace_url(match):
        new_url = mapper(match.group(2))
        return f"url('{new_url}')" if new_url else match.group(0)

    def replace_import(match):
        new_url = mapper(match.group(2))
        return f"@import '{new_url}'" if new_url else match.group(0)

    return CSS_IMPORT_RE.sub(replace_import, CSS_URL_RE.sub(replace_url, css))


def _map_meta_refresh(content, mapper):
    match = META_REFRESH_RE.match(content or "")
    if not match:
        return None
    delay, url = match.groups()
    new_url = mapper(url.strip())
    return f"{delay}; url={new_url}" if new_url else None


def _as_text(body, encoding="utf-8"):
    if isinstance(body, (bytes, bytearray)):
        return bytes(body).decode(encoding or "utf-8", errors="replace")
    return body or ""


def rewrite_srcset(srcset, target_origin, base_url=None):
    return _map_srcset(srcset, lambda u: rewrite_url(u, target_origin, base_url))


def rewrite_inline_style(style, target_origin, base_url=None):
    return _map_css(style or "", lambda u: rewrite_url(u, target_origin, base_url))


def rewrite_meta_refresh(content, target_origin, base_url=None):
    return _map_meta_refresh(content, lambda u: rewrite_url(u, target_origin, base_url))


def rewrite_css(body, target_origin, base_url=None, encoding="utf-8"):
    """Rewrite every ``url()`` and ``@import`` in a stylesheet."""
    return _map_css(_as_text(body, encoding), lambda u: rewrite_url(u, target_origin, base_url))


def _rewrite_tree(soup, navigation, resource):
    tag_groups = ((NAVIGATION_ATTRS, navigation), (RESOURCE_ATTRS, resource))
    for tags_to_rewrite, mapper in tag_groups:
        for tag_name, attrs in tags_to_rewrite.items():
            for attr in attrs:
                for tag in soup.find_all(tag_name, **{attr: True}):
                    new_value = mapper(tag[attr])
                    if new_value:
                        tag[attr] = new_value

    for attr in SRCSET_ATTRS:
        for tag in soup.find_all(attrs={attr: True}):
            tag[attr] = _map_srcset(tag[attr], resource)

    for attr in LAZY_ATTRS:
        for tag in soup.find_all(attrs={attr: True}):
            new_value = resource(tag[attr])
            if new_value:
                tag[attr] = new_value

    for style_tag in soup.find_all("style"):
        if style_tag.string:
            style_tag.string = _map_css(style_tag.string, resource)

    for tag in soup.find_all(style=True):
        tag["style"] = _map_css(tag["style"], resource)

    for tag in soup.find_all("meta", content=True):
        if tag.get("http-equiv", "").lower() == "refresh":
            new_content = _map_meta_refresh(tag["content"], navigation)
            if new_content:
                tag["content"] = new_content


def _parse(body, encoding=None):
    if isinstance(body, (bytes, bytearray)):
        return BeautifulSoup(bytes(body), "html.parser", from_encoding=encoding)
    return BeautifulSoup(body or "", "html.parser")


def rewrite_html(body, target_origin, base_url=None, encoding=None):
    """Rewrite a target page so all of its references route through the gateway."""
    soup = _parse(body, encoding)

    def mapper(url):
        return rewrite_url(url, target_origin, base_url)

    _rewrite_tree(soup, mapper, mapper)
    return str(soup)


def rewrite_navigation_html(body, page_url, encoding=None):
    """Rewrite a page reached through ``/navigate``.

    Such pages live on arbitrary hosts, so there is no ``/browse`` mapping:
    links, forms and frames go back through ``/navigate`` and everything the
    page embeds goes through ``/external``. ``target`` attributes are dropped
    so clicks stay in the same proxied window.
    """
    soup = _parse(body, encoding)

    def to_navigate(url):
        if should_skip(url):
            return None
        absolute = absolutize(url, page_url)
        return navigate_path(absolute) if absolute else None

    def to_external(url):
        if should_skip(url):
            return None
        absolute = absolutize(url, page_url)
        return external_path(absolute) if absolute else None

    _rewrite_tree(soup, to_navigate, to_external)
    for tag in soup.find_all(["a", "form"], target=True):
        del tag["target"]
    return str(soup)


HEAD_OPEN_RE = re.compile(r"<head\b[^>]*>", re.IGNORECASE)
BODY_CLOSE_RE = re.compile(r"</body\s*>", re.IGNORECASE)


def inject_script(html, script, at="head"):
    """Insert a ``<script>`` block right after ``<head>`` or before ``</body>``.

    Falls back to prepending (head) or appending (body) when the tag is
    missing.
    """
    block = f"<script>{script}</script>"
    if at == "head":
        match = HEAD_OPEN_RE.search(html)
        if match:
            return html[:match.end()] + block + html[match.end():]
        return block + html
    matches = list(BODY_CLOSE_RE.finditer(html))
    if matches:
        last = matches[-1]
        return html[:last.start()] + block + html[last.start():]
    return html + block
