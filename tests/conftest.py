"""Pytest configuration for relaygate.

No test talks to the network: the upstream is replaced by ``StubFetcher``,
which serves scripted responses keyed by URL and records every call.
"""
import os

import pytest
from requests.structures import CaseInsensitiveDict

from relaygate.app import create_app
from relaygate.config import Settings
from relaygate.errors import UpstreamTransientFailure
from relaygate.sessions import SessionStore
from relaygate.upstream import FetchResult

TARGET = "https://target.example"


def pytest_configure():
    # Keep a developer's .env from leaking into the settings under test.
    os.environ.setdefault("TARGET_URL", TARGET + "/")
    os.environ.setdefault("PROXY_PASSWORD", "test-secret")


def make_result(url, status=200, body=b"", content_type="text/html; charset=utf-8", headers=None):
    merged = CaseInsensitiveDict({"Content-Type": content_type})
    merged.update(headers or {})
    if isinstance(body, str):
        body = body.encode("utf-8")
    return FetchResult(url=url, status=status, headers=merged, body=body, content_type=content_type)


class StubFetcher:
    """Stands in for ``UpstreamFetcher``.

    ``routes`` maps a URL to a ``FetchResult`` or to an exception instance to
    raise. Unknown URLs raise ``UpstreamTransientFailure``.
    """

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.calls = []
        self.released = []

    def fetch_with_retry(self, url, session, options=None, max_retries=None):
        self.calls.append((url, options))
        outcome = self.routes.get(url)
        if outcome is None:
            raise UpstreamTransientFailure("no route", url=url)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    fetch = fetch_with_retry

    def probe_exit_ip(self, session):
        return {"ip": "203.0.113.7", "protocol": "https"}

    def release(self, session):
        self.released.append(session.session_id)

    def close(self):
        pass


@pytest.fixture
def settings():
    return Settings(
        target_url=TARGET + "/",
        proxy_password="test-secret",
        retry_backoff=0,
        use_tunnel=False,
        secret_key="test-key",
    )


@pytest.fixture
def fetcher():
    return StubFetcher()


@pytest.fixture
def store(settings, fetcher):
    return SessionStore(settings.session_ttl, on_discard=fetcher.release)


@pytest.fixture
def app(settings, fetcher, store):
    application = create_app(settings, fetcher=fetcher, store=store)
    application.config["TESTING"] = True
    return application


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def visitor_client(client):
    """A test client that already went through the landing page."""
    response = client.post("/proceed")
    assert response.status_code == 302
    return client
