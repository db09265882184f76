"""MIME correction for proxied responses.

Upstreams regularly answer a stylesheet or script request with an HTML error
page labelled ``text/html``. Handing that to the browser as CSS/JS breaks the
embedding page, so the file extension wins over the declared type and such
error pages are replaced by an empty body of the expected type.
"""

import logging
import posixpath
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)

MIME_TYPES = {
    ".css": "text/css; charset=utf-8",
    ".js": "application/javascript; charset=utf-8",
    ".mjs": "application/javascript; charset=utf-8",
    ".json": "application/json; charset=utf-8",
    ".woff": "font/woff",
    ".woff2": "font/woff2",
    ".ttf": "font/ttf",
    ".otf": "font/otf",
    ".eot": "application/vnd.ms-fontobject",
    ".svg": "image/svg+xml",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".avif": "image/avif",
    ".ico": "image/x-icon",
    ".mp4": "video/mp4",
    ".webm": "video/webm",
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".pdf": "application/pdf",
    ".xml": "application/xml",
    ".txt": "text/plain",
    ".html": "text/html; charset=utf-8",
    ".htm": "text/html; charset=utf-8",
}

NON_HTML_EXTENSIONS = {".css", ".js", ".mjs", ".json", ".woff", ".woff2", ".ttf", ".otf", ".eot"}

ERROR_MARKERS = ("<!doctype", "<html", "404", "not found", "error")

DEFAULT_TYPE = "application/octet-stream"


def _path_of(url_or_path):
    return urlsplit(url_or_path).path if "://" in url_or_path else url_or_path.split("?", 1)[0]


def extension(url_or_path):
    return posixpath.splitext(_path_of(url_or_path))[1].lower()


def type_for_extension(url_or_path):
    return MIME_TYPES.get(extension(url_or_path))


def _from_accept(accept):
    if "text/css" in accept:
        return "text/css; charset=utf-8"
    if "application/javascript" in accept or "text/javascript" in accept:
        return "application/javascript; charset=utf-8"
    if "font/" in accept or "application/font" in accept:
        if "woff2" in accept:
            return "font/woff2"
        if "woff" in accept:
            return "font/woff"
        if "ttf" in accept:
            return "font/ttf"
        return "font/woff2"
    return None


def correct_mime_type(url_or_path, declared, accept=""):
    """Pick the content type to serve.

    Known extension first, then the request's ``Accept`` header, then CMS
    style URL patterns (only when the upstream said HTML or nothing), then
    the declared type.
    """
    declared = declared or ""
    by_extension = type_for_extension(url_or_path)
    if by_extension:
        if extension(url_or_path) in NON_HTML_EXTENSIONS and "text/html" in declared:
            logger.warning("HTML declared for %s, serving as %s", url_or_path[:100], by_extension)
        return by_extension

    by_accept = _from_accept(accept or "")
    if by_accept:
        return by_accept

    lowered = _path_of(url_or_path).lower()
    wants_document = "text/html" in (accept or "")
    if not wants_document and (not declared or "text/html" in declared):
        if "css" in lowered or "style" in lowered:
            logger.debug("Inferring CSS from URL pattern %s", lowered[:100])
            return "text/css; charset=utf-8"
        if ".js" in lowered or "script" in lowered or "/js/" in lowered:
            logger.debug("Inferring JavaScript from URL pattern %s", lowered[:100])
            return "application/javascript; charset=utf-8"

    return declared or DEFAULT_TYPE


def expects_non_html(url_or_path, accept=""):
    """True when the request is clearly for a stylesheet, script, data or font."""
    if extension(url_or_path) in NON_HTML_EXTENSIONS:
        return True
    accept = accept or ""
    if "text/html" in accept:
        return False
    lowered = _path_of(url_or_path).lower()
    if "css" in lowered or "/js/" in lowered or "style" in lowered:
        return True
    return "text/css" in accept or "javascript" in accept


def is_html_error_page(body, declared):
    if not declared or "text/html" not in declared:
        return False
    head = bytes(body[:500]).decode("utf-8", errors="replace").lower()
    return any(marker in head for marker in ERROR_MARKERS)


def correct_response(url_or_path, declared, body, accept=""):
    """Return ``(content_type, body)`` after MIME correction.

    An HTML error page served for a resource expected to be non-HTML comes
    back as an empty body of the expected type.
    """
    content_type = correct_mime_type(url_or_path, declared, accept)
    if expects_non_html(url_or_path, accept) and is_html_error_page(body, declared):
        logger.warning("HTML error page for %s, returning empty %s", url_or_path[:100], content_type)
        return content_type, b""
    return content_type, body


def empty_fallback_type(url_or_path):
    """Content type for the empty body sent when a sub-resource fetch fails."""
    return type_for_extension(url_or_path) or DEFAULT_TYPE


def is_html(content_type):
    return "text/html" in (content_type or "") or "application/xhtml" in (content_type or "")


def is_css(content_type):
    return "text/css" in (content_type or "")


def charset_of(content_type, default="utf-8"):
    for param in (content_type or "").split(";")[1:]:
        key, _, value = param.strip().partition("=")
        if key.lower() == "charset" and value:
            return value.strip("\"' ")
    return default
