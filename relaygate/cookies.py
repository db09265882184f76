"""Server-side cookie relay for the target site.

The target's cookies never reach the visitor's browser. They are collected
from upstream ``Set-Cookie`` headers into the visitor session and replayed as
a single ``Cookie`` header on the next request to the target.
"""

import logging

logger = logging.getLogger(__name__)


def parse_set_cookie(header):
    """Return ``(name, value)`` from one ``Set-Cookie`` value, or None.

    Attributes after the first ``;`` are ignored; ``=`` inside the value is
    kept.
    """
    name_value = header.split(";", 1)[0]
    name, _, value = name_value.partition("=")
    name = name.strip()
    if not name:
        return None
    return name, value.strip()


def _set_cookie_values(headers):
    for key in headers:
        if key.lower() == "set-cookie":
            value = headers[key]
            if isinstance(value, (list, tuple)):
                return list(value)
            return [value]
    return []


def absorb(headers, session):
    """Merge every ``Set-Cookie`` in ``headers`` into the session jar."""
    parsed = {}
    for raw in _set_cookie_values(headers):
        cookie = parse_set_cookie(raw)
        if cookie is None:
            logger.warning("Ignoring unparsable Set-Cookie %r", raw[:80])
            continue
        parsed[cookie[0]] = cookie[1]
    if parsed:
        session.merge_cookies(parsed)
        logger.debug("Stored cookies %s", ", ".join(sorted(parsed)))
    return parsed


def build_header(session):
    """Serialise the jar as one ``Cookie`` header value ('' when empty)."""
    return "; ".join(f"{name}={value}" for name, value in session.cookie_items())


def clear(session):
    session.clear_cookies()
    logger.debug("Cleared cookies for %s", session.session_id[:8])
