# Session-pinned reverse proxy gateway built on Flask.

import logging
import time
from urllib.parse import unquote, urlsplit

from flask import Flask, Response, jsonify, redirect, render_template, request, session

from . import content_types, cookies, rewrite
from .config import Settings
from .errors import (
    GatewayError,
    InvalidURL,
    RelayProtocolError,
    SSRFBlocked,
    UpstreamError,
    UpstreamExhausted,
)
from .interception import RELAY_ENDPOINT, RelayEnvelope, browser_config, disguise_ad_request
from .redirects import RedirectResolver
from .security import validate_target
from .sessions import SessionStore
from .upstream import FetchOptions, UpstreamFetcher

logger = logging.getLogger(__name__)

SUBRESOURCE_EXEMPT_DESTINATIONS = ("document", "iframe", "frame")

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "*",
    "Access-Control-Expose-Headers": "X-Original-Content-Type, X-Original-Cache-Control",
}

ERROR_TITLES = {
    InvalidURL: "Invalid URL",
    SSRFBlocked: "Navigation Blocked",
    RelayProtocolError: "Bad Relay Request",
    UpstreamExhausted: "Proxy Error",
    UpstreamError: "Proxy Error",
}

PURGE_INTERVAL = 60


def _cors(response):
    for name, value in CORS_HEADERS.items():
        response.headers[name] = value
    return response


def _preflight():
    response = _cors(Response(status=204))
    response.headers["Access-Control-Max-Age"] = "86400"
    return response


def _empty(url_or_path, status=404):
    """Typed empty body for a sub-resource the upstream could not deliver."""
    return Response(b"", status=status, content_type=content_types.empty_fallback_type(url_or_path))


def _is_subresource(url_or_path):
    """Whether a failure should be answered with an empty typed body."""
    destination = request.headers.get("Sec-Fetch-Dest", "")
    if destination:
        return destination not in SUBRESOURCE_EXEMPT_DESTINATIONS
    ext = content_types.extension(url_or_path)
    if ext and ext not in (".html", ".htm"):
        return True
    return content_types.expects_non_html(url_or_path, request.headers.get("Accept", ""))


def _wants_document():
    destination = request.headers.get("Sec-Fetch-Dest", "")
    if destination:
        return destination in SUBRESOURCE_EXEMPT_DESTINATIONS
    return "text/html" in request.headers.get("Accept", "")


def _error_title(exc):
    for cls in type(exc).__mro__:
        if cls in ERROR_TITLES:
            return ERROR_TITLES[cls]
    return "Error"


def _target_from_query():
    """The ``url`` parameter of /navigate and /relay, decoded once more if the
    client double-encoded it."""
    url = request.args.get("url") or request.form.get("url")
    if not url:
        raise InvalidURL("No URL provided")
    url = url.strip()
    if not url.startswith(("http://", "https://")) and "%" in url:
        url = unquote(url)
    return url


def create_app(settings=None, fetcher=None, store=None):
    """Build the gateway application.

    ``fetcher`` and ``store`` can be injected (tests use in-process stubs);
    otherwise they are built from ``settings``.
    """
    settings = settings or Settings.from_env()
    fetcher = fetcher or UpstreamFetcher(settings)
    store = store or SessionStore(settings.session_ttl, on_discard=fetcher.release)
    resolver = RedirectResolver(fetcher, max_hops=settings.max_redirect_hops)

    app = Flask(__name__)
    app.secret_key = settings.secret_key
    app.config.update(
        SESSION_COOKIE_HTTPONLY=True,
        SESSION_COOKIE_SAMESITE="Lax",
        PERMANENT_SESSION_LIFETIME=settings.session_ttl,
    )
    # /external/https://host/... must keep its double slash.
    app.url_map.merge_slashes = False
    app.extensions["relaygate"] = {
        "settings": settings,
        "fetcher": fetcher,
        "store": store,
        "resolver": resolver,
    }
    last_purge = [time.time()]

    # --- Visitor session helpers ---

    def current_visitor(create=False):
        record = store.get(session.get("sid"))
        if record is None and create:
            record = store.create()
            session["sid"] = record.session_id
            session.permanent = True
        return record

    def gateway_origin():
        return request.host_url.rstrip("/")

    def shim_script():
        return render_template("shim.js", config=browser_config(settings.target_url))

    @app.before_request
    def purge_expired_sessions():
        now = time.time()
        if now - last_purge[0] > PURGE_INTERVAL:
            last_purge[0] = now
            purged = store.purge_expired()
            if purged:
                logger.info("Purged %d expired visitor sessions", purged)

    # --- Response building ---

    def proxied_response(result, mime_path, base_url):
        """Turn an upstream result into the browser's response.

        MIME correction first (the extension of ``mime_path`` wins), then
        HTML and CSS are rewritten against the target origin.
        """
        accept = request.headers.get("Accept", "")
        content_type, body = content_types.correct_response(mime_path, result.content_type, result.body, accept)
        if not body and result.body:
            return Response(b"", status=200, content_type=content_type)

        charset = content_types.charset_of(result.content_type)
        if content_types.is_css(content_type):
            css = rewrite.rewrite_css(body, settings.target_origin, base_url=base_url, encoding=charset)
            return Response(css, status=result.status, content_type="text/css; charset=utf-8")
        if content_types.is_html(content_type):
            html = rewrite.rewrite_html(body, settings.target_origin, base_url=base_url, encoding=charset)
            html = rewrite.inject_script(html, shim_script(), at="head")
            return Response(html, status=result.status, content_type="text/html; charset=utf-8")
        return Response(body, status=result.status, content_type=content_type)

    def navigation_response(result, page_url):
        if content_types.is_html(result.content_type):
            charset = content_types.charset_of(result.content_type)
            html = rewrite.rewrite_navigation_html(result.body, page_url, encoding=charset)
            script = render_template("navigation_shim.js", config=browser_config(settings.target_url))
            html = rewrite.inject_script(html, script, at="body")
            return Response(html, status=result.status, content_type="text/html; charset=utf-8")
        return Response(result.body, status=result.status, content_type=result.content_type)

    # --- Landing ---

    @app.route("/")
    def index():
        """Landing page; visitors with a live session go straight to the target."""
        if current_visitor() is not None:
            return redirect("/browse/")
        return render_template("landing.html", target_url=settings.target_url)

    @app.route("/proceed", methods=["POST"])
    def proceed():
        """Start a new visit: fresh session, fresh upstream credential."""
        if session.get("sid"):
            store.discard(session["sid"])
        current_visitor(create=True)
        return redirect("/browse/")

    @app.route("/reset")
    def reset():
        if session.get("sid"):
            store.discard(session["sid"])
        session.clear()
        return redirect("/")

    # --- Target site ---

    @app.route("/browse", defaults={"path": ""}, methods=["GET", "POST", "OPTIONS"])
    @app.route("/browse/", defaults={"path": ""}, methods=["GET", "POST", "OPTIONS"])
    @app.route("/browse/<path:path>", methods=["GET", "POST", "OPTIONS"])
    def browse(path):
        """
        Same-origin proxied content. /browse/<path>?<query> maps onto the
        configured target; the target's cookies are replayed from the
        visitor session.
        """
        if request.method == "OPTIONS":
            return _preflight()
        visitor = current_visitor()
        if visitor is None:
            logger.warning("No valid visitor session for %s", request.path)
            return redirect("/")

        target_path = request.path[len("/browse"):] or "/"
        target_url = settings.target_origin + target_path
        query = request.query_string.decode("utf-8", errors="replace")
        if query:
            target_url += "?" + query
        validate_target(target_url)

        headers = {"Referer": settings.target_url}
        if request.headers.get("Accept"):
            headers["Accept"] = request.headers["Accept"]
        body = None
        if request.method == "POST":
            body = request.get_data()
            headers["Content-Type"] = request.headers.get("Content-Type", "application/x-www-form-urlencoded")
        options = FetchOptions(
            method=request.method,
            headers=headers,
            body=body,
            cookies=cookies.build_header(visitor),
        )

        try:
            result = fetcher.fetch_with_retry(target_url, visitor, options)
        except UpstreamError as exc:
            logger.error("Proxy request failed for %s: %s", target_path[:100], exc)
            if _is_subresource(target_path):
                return _cors(_empty(target_path))
            raise

        cookies.absorb(result.headers, visitor)
        return _cors(proxied_response(result, target_path, result.url))

    @app.route("/external/<path:encoded>", methods=["GET", "POST", "OPTIONS"])
    def external(encoded):
        """Cross-origin resources: /external/<percent-encoded absolute url>.

        Document and frame navigations are handed to /navigate so redirect
        chains get resolved there.
        """
        if request.method == "OPTIONS":
            return _preflight()
        target_url = encoded
        if not target_url.startswith(("http://", "https://")) and "%" in target_url:
            target_url = unquote(target_url)
        if request.query_string:
            target_url += ("&" if "?" in target_url else "?") + request.query_string.decode("utf-8", errors="replace")
        validate_target(target_url)
        if _wants_document():
            # Anchors and frames land here from rewritten pages; 307 keeps a
            # form POST intact.
            return redirect(rewrite.navigate_path(target_url), code=307)
        visitor = current_visitor(create=True)

        headers = {}
        if request.headers.get("Accept"):
            headers["Accept"] = request.headers["Accept"]
        body = None
        if request.method == "POST":
            body = request.get_data()
            headers["Content-Type"] = request.headers.get("Content-Type", "application/x-www-form-urlencoded")
        mime_path = urlsplit(target_url).path

        try:
            result = fetcher.fetch_with_retry(
                target_url, visitor, FetchOptions(method=request.method, headers=headers, body=body)
            )
        except UpstreamError as exc:
            logger.error("External resource fetch failed for %s: %s", target_url[:100], exc)
            return _cors(_empty(mime_path))

        accept = request.headers.get("Accept", "")
        content_type, body = content_types.correct_response(mime_path, result.content_type, result.body, accept)
        if content_types.is_css(content_type) and body:
            body = rewrite.rewrite_css(
                body,
                settings.target_origin,
                base_url=result.url,
                encoding=content_types.charset_of(result.content_type),
            )
            content_type = "text/css; charset=utf-8"
        status = 200 if not body and result.body else result.status
        return _cors(Response(body, status=status, content_type=content_type))

    @app.route("/navigate", methods=["GET", "POST"])
    def navigate():
        """
        Navigation to arbitrary sites (ad clicks, external links, iframes).
        Redirect chains and interstitials are resolved here before anything
        reaches the browser.
        """
        target_url = _target_from_query()
        validate_target(target_url)
        visitor = current_visitor(create=True)
        logger.info("Navigation request %s %s", request.method, target_url[:120])

        if request.method == "POST":
            options = FetchOptions(
                method="POST",
                headers={"Content-Type": request.headers.get("Content-Type", "application/x-www-form-urlencoded")},
                body=request.get_data(),
            )
            result = fetcher.fetch_with_retry(target_url, visitor, options)
            return navigation_response(result, result.url)

        headers = {"Accept-Language": request.headers.get("Accept-Language", "en-US,en;q=0.9")}
        resolution = resolver.resolve(target_url, visitor, headers=headers)
        if resolution.result.is_redirect:
            raise UpstreamError("Too many redirects", url=resolution.final_url)
        if resolution.unresolved:
            logger.warning("Serving unresolved interstitial %s", resolution.final_url[:120])
        return navigation_response(resolution.result, resolution.final_url)

    # --- Interception relay ---

    @app.route(RELAY_ENDPOINT, methods=["GET", "POST", "OPTIONS"])
    def relay():
        """
        Server half of the interceptor. Takes {url, method, headers, body}
        and answers with the raw upstream body; the real content type and
        cache policy travel in X-Original-* headers.
        """
        if request.method == "OPTIONS":
            return _preflight()
        if request.method == "POST":
            payload = request.get_json(silent=True)
            if payload is None and request.get_data():
                raise RelayProtocolError("Relay envelope must be JSON")
        else:
            payload = {}
        envelope = RelayEnvelope.from_payload(payload, query_url=request.args.get("url"))
        validate_target(envelope.url)
        visitor = current_visitor(create=True)

        url, headers = disguise_ad_request(
            envelope.url, envelope.upstream_headers(), gateway_origin(), settings.target_url
        )
        options = FetchOptions(method=envelope.method, headers=headers, body=envelope.body_bytes())
        started = time.time()
        result = fetcher.fetch_with_retry(url, visitor, options)
        logger.debug(
            "Relay response %s %d %s (%.0fms)",
            url[:60], result.status, result.content_type[:50], (time.time() - started) * 1000,
        )

        response = Response(result.body, status=result.status, content_type=result.content_type)
        response.headers["X-Original-Content-Type"] = result.content_type
        cache_control = result.headers.get("Cache-Control")
        if cache_control:
            response.headers["X-Original-Cache-Control"] = cache_control
        return _cors(response)

    @app.route("/sw.js")
    def service_worker():
        response = Response(
            render_template("sw.js", config=browser_config(settings.target_url)),
            content_type="application/javascript; charset=utf-8",
        )
        response.headers["Service-Worker-Allowed"] = "/"
        response.headers["Cache-Control"] = "no-cache"
        return response

    @app.route("/classify.js")
    def classify_script():
        return Response(
            render_template("classify.js", config=browser_config(settings.target_url)),
            content_type="application/javascript; charset=utf-8",
        )

    # --- Diagnostics ---

    @app.route("/test-ip")
    def test_ip():
        """Report the exit IP the target sees for this visitor."""
        visitor = current_visitor(create=True)
        try:
            probe = fetcher.probe_exit_ip(visitor)
        except (UpstreamError, ValueError) as exc:
            logger.error("IP test failed: %s", exc)
            return jsonify(success=False, error=str(exc)), 502
        return jsonify(success=True, credential=visitor.credential_id, **probe)

    # --- Errors ---

    @app.errorhandler(GatewayError)
    def gateway_error(exc):
        """JSON for the relay, an error page for everything a person looks at."""
        if request.path.startswith(RELAY_ENDPOINT):
            logger.error("Relay request failed: %s", exc)
            response = jsonify(error=_error_title(exc), message=exc.message)
            response.status_code = exc.status_code
            return _cors(response)
        logger.error("%s for %s: %s", type(exc).__name__, request.path[:100], exc)
        page = render_template("error.html", title=_error_title(exc), message=exc.message)
        return page, exc.status_code

    return app
