"""Runtime configuration.

Values come from the process environment; a ``.env`` file in the working
directory is loaded first so deployments can keep credentials out of the
shell history.
"""

import logging
import os
from dataclasses import dataclass
from urllib.parse import urlsplit

from dotenv import load_dotenv

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"


def _env_bool(value, default):
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    """Gateway settings.

    Attributes
    ----------
    target_url:
        The single site this gateway fronts. ``/browse/<path>`` maps onto it.
    proxy_username_base:
        Upstream account name. The sticky-session suffix
        (``-sessid-<id>-sessTime-<minutes>``) is appended per credential.
    proxy_session_time:
        Minutes the upstream keeps a credential pinned to one exit IP. This is
        the upstream's window and is unrelated to ``session_ttl``.
    proxy_remote_dns:
        Resolve target hostnames at the exit (``socks5h``) instead of locally.
    use_tunnel:
        Route HTTPS through a local CONNECT tunnel wrapping the SOCKS5
        credential. HTTP always uses the SOCKS5 handle directly.
    request_timeout:
        Per-attempt upstream timeout in seconds. A timeout counts as a
        connection failure and triggers rotation.
    retry_backoff:
        Fixed pause in seconds between attempts of ``fetch_with_retry``.
    max_redirect_hops:
        Hop cap for both transparent redirects and the redirect resolver.
    session_ttl:
        Seconds a visitor session lives on the gateway after its last request.
    """

    target_url: str = "https://example.com/"

    proxy_host: str = "127.0.0.1"
    proxy_port: int = 1080
    proxy_username_base: str = "user"
    proxy_password: str = ""
    proxy_session_time: int = 120
    proxy_remote_dns: bool = True
    use_tunnel: bool = True

    request_timeout: float = 60.0
    max_retries: int = 3
    retry_backoff: float = 2.0
    max_redirect_hops: int = 20

    session_ttl: int = 2 * 60 * 60
    secret_key: str = "change-this-secret"
    host: str = "0.0.0.0"
    port: int = 3000
    threads: int = 16
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ=None, dotenv=True):
        if dotenv:
            load_dotenv()
        env = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            target_url=env.get("TARGET_URL", defaults.target_url),
            proxy_host=env.get("PROXY_HOST", defaults.proxy_host),
            proxy_port=int(env.get("PROXY_PORT", defaults.proxy_port)),
            proxy_username_base=env.get("PROXY_USERNAME_BASE", defaults.proxy_username_base),
            proxy_password=env.get("PROXY_PASSWORD", defaults.proxy_password),
            proxy_session_time=int(env.get("PROXY_SESSION_TIME", defaults.proxy_session_time)),
            proxy_remote_dns=_env_bool(env.get("PROXY_REMOTE_DNS"), defaults.proxy_remote_dns),
            use_tunnel=_env_bool(env.get("USE_TUNNEL"), defaults.use_tunnel),
            request_timeout=float(env.get("REQUEST_TIMEOUT", defaults.request_timeout)),
            max_retries=int(env.get("MAX_RETRIES", defaults.max_retries)),
            retry_backoff=float(env.get("RETRY_BACKOFF", defaults.retry_backoff)),
            max_redirect_hops=int(env.get("MAX_REDIRECT_HOPS", defaults.max_redirect_hops)),
            session_ttl=int(env.get("SESSION_TTL", defaults.session_ttl)),
            secret_key=env.get("SECRET_KEY", defaults.secret_key),
            host=env.get("HOST", defaults.host),
            port=int(env.get("PORT", defaults.port)),
            threads=int(env.get("THREADS", defaults.threads)),
            log_level=env.get("LOG_LEVEL", defaults.log_level),
        )

    @property
    def target_origin(self):
        parts = urlsplit(self.target_url)
        return f"{parts.scheme}://{parts.netloc}"

    @property
    def target_host(self):
        return (urlsplit(self.target_url).hostname or "").lower()

    def proxy_username(self, credential_id):
        """Upstream username carrying the sticky-session identifier."""
        return f"{self.proxy_username_base}-sessid-{credential_id}-sessTime-{self.proxy_session_time}"

    def mask(self, text):
        """Hide the proxy password in anything about to be logged."""
        if self.proxy_password:
            return text.replace(self.proxy_password, "***")
        return text


def configure_logging(level="INFO"):
    logging.basicConfig(level=getattr(logging, str(level).upper(), logging.INFO), format=LOG_FORMAT)
