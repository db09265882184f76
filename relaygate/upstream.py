"""Session-pinned upstream fetcher.

Every request for a visitor session goes out through the SOCKS5 credential
currently recorded on that session, so the target and everything it embeds
see a single exit IP for the whole visit. On failure the credential is
rotated (new sticky id, new exit IP) and the request retried.

Callers must read ``session.credential_id`` after a fetch, never cache it
across calls: ``fetch_with_retry`` mutates the session in place.
"""

import enum
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import quote

import requests
from requests.structures import CaseInsensitiveDict

from . import content_types
from .errors import InvalidURL, UpstreamError, UpstreamExhausted, UpstreamTransientFailure
from .security import validate_target
from .tunnel import RetiredCredential, TunnelError, TunnelRegistry

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,image/apng,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
}

IP_ECHO_URLS = ("https://api.ipify.org?format=json", "http://api.ipify.org?format=json")


@dataclass
class FetchOptions:
    method: str = "GET"
    headers: dict = field(default_factory=dict)
    body: Optional[bytes] = None
    cookies: str = ""
    follow_redirects: bool = True


@dataclass
class FetchResult:
    url: str
    status: int
    headers: CaseInsensitiveDict
    body: bytes
    content_type: str

    @classmethod
    def from_response(cls, response):
        headers = CaseInsensitiveDict(response.headers)
        raw_headers = getattr(response.raw, "headers", None)
        if raw_headers is not None and hasattr(raw_headers, "getlist"):
            set_cookies = raw_headers.getlist("Set-Cookie")
            if set_cookies:
                headers["Set-Cookie"] = set_cookies
        return cls(
            url=response.url,
            status=response.status_code,
            headers=headers,
            body=response.content,
            content_type=headers.get("Content-Type") or "text/html",
        )

    @property
    def is_redirect(self):
        return 300 <= self.status < 400 and bool(self.headers.get("Location"))

    @property
    def location(self):
        return self.headers.get("Location")

    def text(self):
        return self.body.decode(content_types.charset_of(self.content_type), errors="replace")


class GuardedSession(requests.Session):
    """``requests.Session`` that refuses to follow a redirect into an
    internal address. ``rebuild_auth`` runs once per hop, after the next URL
    is known and before it is sent."""

    def rebuild_auth(self, prepared_request, response):
        validate_target(prepared_request.url)
        super().rebuild_auth(prepared_request, response)


class RetryDecision(enum.Enum):
    RETRY = "retry"
    GIVE_UP = "give_up"


def retry_decision(attempt, error, max_retries):
    """Whether attempt number ``attempt`` (1-based) that failed with ``error``
    should be followed by another one."""
    if not getattr(error, "retryable", False):
        return RetryDecision.GIVE_UP
    if attempt >= max_retries:
        return RetryDecision.GIVE_UP
    return RetryDecision.RETRY


class UpstreamFetcher:
    def __init__(self, settings, tunnels=None, sleep=time.sleep):
        self.settings = settings
        self.tunnels = tunnels or TunnelRegistry(connect_timeout=settings.request_timeout)
        self._sleep = sleep

    # --- Credentials ---

    def socks_url(self, credential_id, remote_dns=None):
        """SOCKS5 URL for one sticky credential.

        ``socks5h`` makes requests resolve hostnames at the exit.
        """
        if remote_dns is None:
            remote_dns = self.settings.proxy_remote_dns
        scheme = "socks5h" if remote_dns else "socks5"
        username = quote(self.settings.proxy_username(credential_id), safe="")
        password = quote(self.settings.proxy_password, safe="")
        return f"{scheme}://{username}:{password}@{self.settings.proxy_host}:{self.settings.proxy_port}"

    def _proxies_for(self, url, credential_id):
        socks = self.socks_url(credential_id)
        if url.startswith("https://") and self.settings.use_tunnel:
            try:
                tunnel = self.tunnels.get(credential_id, self.socks_url(credential_id, remote_dns=False))
            except RetiredCredential as exc:
                raise UpstreamTransientFailure(str(exc), url=url, cause=exc) from exc
            except TunnelError as exc:
                logger.warning("Falling back to direct SOCKS5 handle: %s", exc)
            else:
                return {"http": tunnel.local_endpoint, "https": tunnel.local_endpoint}
        return {"http": socks, "https": socks}

    # --- Fetching ---

    def fetch(self, url, session, options=None):
        """One attempt through the session's current credential."""
        options = options or FetchOptions()
        credential_id = session.credential_id
        proxies = self._proxies_for(url, credential_id)

        headers = dict(DEFAULT_HEADERS)
        headers.update({k: v for k, v in options.headers.items() if v})
        if options.cookies:
            headers["Cookie"] = options.cookies

        logger.info("Fetching through proxy %s %s (credential %s)", options.method, url[:120], credential_id)
        with GuardedSession() as http:
            http.trust_env = False
            http.max_redirects = self.settings.max_redirect_hops
            try:
                response = http.request(
                    options.method,
                    url,
                    headers=headers,
                    data=options.body,
                    proxies=proxies,
                    timeout=self.settings.request_timeout,
                    allow_redirects=options.follow_redirects,
                )
            except (requests.exceptions.MissingSchema,
                    requests.exceptions.InvalidSchema,
                    requests.exceptions.InvalidURL) as exc:
                raise InvalidURL(str(exc), url=url) from exc
            except requests.exceptions.TooManyRedirects as exc:
                raise UpstreamError(f"Too many redirects: {exc}", url=url, cause=exc) from exc
            except requests.exceptions.RequestException as exc:
                logger.error("Proxy fetch failed for %s: %s", url[:120], self.settings.mask(str(exc)))
                raise UpstreamTransientFailure(self.settings.mask(str(exc)), url=url, cause=exc) from exc
            return FetchResult.from_response(response)

    def fetch_with_retry(self, url, session, options=None, max_retries=None):
        """Fetch, rotating the session credential after each transient failure."""
        if max_retries is None:
            max_retries = self.settings.max_retries
        # Zero still means one attempt, just no retries.
        max_retries = max(max_retries, 1)
        last_error = None
        for attempt in range(1, max_retries + 1):
            credential_id = session.credential_id
            try:
                return self.fetch(url, session, options)
            except UpstreamError as exc:
                last_error = exc
                logger.warning("Proxy attempt %d/%d failed for %s: %s", attempt, max_retries, url[:120], exc)
                if retry_decision(attempt, exc, max_retries) is RetryDecision.RETRY:
                    self.rotate(session, credential_id)
                    self._sleep(self.settings.retry_backoff)
                    continue
                if not exc.retryable:
                    raise
                self.tunnels.close(credential_id)
                break
        raise UpstreamExhausted(last_error, attempts=max_retries, url=url)

    def rotate(self, session, failed_credential):
        """Move ``session`` off ``failed_credential`` and retire its tunnel."""
        current, rotated = session.rotate_credential(failed_credential)
        if rotated:
            logger.info("Rotated upstream credential %s -> %s", failed_credential, current)
        self.tunnels.retire(failed_credential)
        return current

    def release(self, session):
        """Close upstream resources of a session that is going away."""
        self.tunnels.retire(session.credential_id)

    def close(self):
        self.tunnels.close_all()

    def probe_exit_ip(self, session):
        """Ask an IP echo service which address the target side sees."""
        last_error = None
        for url in IP_ECHO_URLS:
            try:
                result = self.fetch_with_retry(url, session, FetchOptions(headers={"Accept": "application/json"}))
                data = json.loads(result.text())
                return {"ip": data.get("ip"), "protocol": url.split(":", 1)[0]}
            except (UpstreamError, ValueError) as exc:
                logger.warning("IP probe over %s failed: %s", url.split(":", 1)[0], exc)
                last_error = exc
        raise last_error
