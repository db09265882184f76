"""Visitor sessions and their server-side store.

The browser only ever holds an opaque session id (in Flask's signed session
cookie). Everything tied to the upstream identity lives here: the current
credential id and the target site's cookies.
"""

import logging
import secrets
import threading
import time
import uuid
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


def generate_credential_id():
    """8 upper-case hex characters, embedded in the upstream username."""
    return uuid.uuid4().hex[:8].upper()


@dataclass
class VisitorSession:
    session_id: str
    credential_id: str
    created_at: float = field(default_factory=time.time)
    cookie_jar: dict = field(default_factory=dict)
    active: bool = True
    last_seen: float = field(default_factory=time.time)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def rotate_credential(self, expected, new_id=None):
        """Swap in a fresh credential if ``expected`` is still current.

        Returns ``(current_id, rotated)``. When another request already
        rotated away from ``expected`` nothing changes and ``rotated`` is
        False; the caller should simply use ``current_id``.
        """
        with self._lock:
            if self.credential_id != expected:
                return self.credential_id, False
            self.credential_id = new_id or generate_credential_id()
            return self.credential_id, True

    def merge_cookies(self, cookies):
        with self._lock:
            self.cookie_jar.update(cookies)

    def cookie_items(self):
        with self._lock:
            return sorted(self.cookie_jar.items())

    def clear_cookies(self):
        with self._lock:
            self.cookie_jar.clear()

    def touch(self):
        self.last_seen = time.time()


class SessionStore:
    """In-process session store with idle expiry.

    ``on_discard`` is called with every session that expires or is
    destroyed, so upstream resources bound to it can be released.
    """

    def __init__(self, ttl, on_discard=None, clock=time.time):
        self.ttl = ttl
        self._on_discard = on_discard
        self._clock = clock
        self._sessions = {}
        self._lock = threading.Lock()

    def __len__(self):
        with self._lock:
            return len(self._sessions)

    def create(self):
        now = self._clock()
        record = VisitorSession(
            session_id=secrets.token_urlsafe(16),
            credential_id=generate_credential_id(),
            created_at=now,
            last_seen=now,
        )
        with self._lock:
            self._sessions[record.session_id] = record
        logger.info("New visitor session %s (credential %s)", record.session_id[:8], record.credential_id)
        return record

    def get(self, session_id):
        if not session_id:
            return None
        with self._lock:
            record = self._sessions.get(session_id)
            if record is None:
                return None
            if self._clock() - record.last_seen > self.ttl:
                del self._sessions[session_id]
                expired = record
            else:
                record.last_seen = self._clock()
                return record
        self._discarded(expired, "expired")
        return None

    def discard(self, session_id):
        with self._lock:
            record = self._sessions.pop(session_id, None)
        if record is not None:
            self._discarded(record, "reset")
        return record

    def purge_expired(self):
        now = self._clock()
        with self._lock:
            stale = [s for s in self._sessions.values() if now - s.last_seen > self.ttl]
            for record in stale:
                del self._sessions[record.session_id]
        for record in stale:
            self._discarded(record, "expired")
        return len(stale)

    def _discarded(self, record, reason):
        record.active = False
        logger.info("Visitor session %s %s", record.session_id[:8], reason)
        if self._on_discard is not None:
            self._on_discard(record)
