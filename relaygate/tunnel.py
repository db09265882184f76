"""Local anonymized HTTP tunnels wrapping an authenticated SOCKS5 credential.

``requests`` speaks HTTP CONNECT to a plain local proxy far more reliably
than it negotiates TLS through an authenticated SOCKS5 handle. Each tunnel
binds an ephemeral port on 127.0.0.1, accepts CONNECT (and absolute-form
plain HTTP) requests without authentication, and opens the target
connection through the upstream SOCKS5 credential.
"""

import logging
import selectors
import socket
import socketserver
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field

from python_socks import ProxyError, ProxyTimeoutError
from python_socks.sync import Proxy

logger = logging.getLogger(__name__)

MAX_HEAD_SIZE = 64 * 1024
BUFFER_SIZE = 65536


class TunnelError(Exception):
    pass


class RetiredCredential(TunnelError):
    """A tunnel was requested for a credential that has been rotated away."""


def parse_request_head(head):
    """Split a proxy request head into ``(method, host, port, path, rest)``.

    ``path`` is the origin-form path for plain HTTP requests and None for
    CONNECT. ``rest`` is the header block after the request line.
    """
    first_line, _, rest = head.partition(b"\r\n")
    parts = first_line.decode("latin-1").split()
    if len(parts) < 2:
        raise TunnelError(f"Malformed request line {first_line[:80]!r}")
    method, target = parts[0].upper(), parts[1]

    if method == "CONNECT":
        host, _, port = target.rpartition(":")
        if not host:
            host, port = target, "443"
        return method, host.strip("[]"), int(port), None, rest

    if not target.startswith("http://"):
        raise TunnelError(f"Unsupported proxy target {target[:80]!r}")
    authority, slash, path = target[len("http://"):].partition("/")
    path = slash + path if slash else "/"
    host, sep, port = authority.rpartition(":")
    if not sep or not port.isdigit():
        host, port = authority, "80"
    return method, host.strip("[]"), int(port), path, rest


def _read_head(sock):
    data = b""
    while b"\r\n\r\n" not in data:
        chunk = sock.recv(4096)
        if not chunk:
            break
        data += chunk
        if len(data) > MAX_HEAD_SIZE:
            raise TunnelError("Request head too large")
    head, sep, body = data.partition(b"\r\n\r\n")
    return head + sep, body


def _pipe(left, right, idle_timeout):
    selector = selectors.DefaultSelector()
    selector.register(left, selectors.EVENT_READ, right)
    selector.register(right, selectors.EVENT_READ, left)
    try:
        while True:
            events = selector.select(timeout=idle_timeout)
            if not events:
                return
            for key, _ in events:
                data = key.fileobj.recv(BUFFER_SIZE)
                if not data:
                    return
                key.data.sendall(data)
    except OSError:
        return
    finally:
        selector.close()


class _TunnelHandler(socketserver.BaseRequestHandler):
    def handle(self):
        client = self.request
        client.settimeout(self.server.connect_timeout)
        remote = None
        try:
            head, early = _read_head(client)
            if not head:
                return
            method, host, port, path, rest = parse_request_head(head)
            try:
                remote = self.server.open_upstream(host, port)
            except (ProxyError, ProxyTimeoutError, OSError) as exc:
                logger.warning("Tunnel %s could not reach %s:%s: %s", self.server.credential_id, host, port, exc)
                client.sendall(b"HTTP/1.1 502 Bad Gateway\r\nContent-Length: 0\r\nConnection: close\r\n\r\n")
                return

            if path is None:
                client.sendall(b"HTTP/1.1 200 Connection Established\r\n\r\n")
            else:
                remote.sendall(f"{method} {path} HTTP/1.1\r\n".encode("latin-1") + rest)
            if early:
                remote.sendall(early)
            client.settimeout(None)
            remote.settimeout(None)
            _pipe(client, remote, self.server.idle_timeout)
        except TunnelError as exc:
            logger.debug("Tunnel %s rejected request: %s", self.server.credential_id, exc)
        except OSError as exc:
            logger.debug("Tunnel %s connection dropped: %s", self.server.credential_id, exc)
        finally:
            if remote is not None:
                remote.close()


class _TunnelServer(socketserver.ThreadingTCPServer):
    daemon_threads = True
    allow_reuse_address = True

    def __init__(self, credential_id, socks_url, connect_timeout, idle_timeout):
        self.credential_id = credential_id
        self.socks_url = socks_url
        self.connect_timeout = connect_timeout
        self.idle_timeout = idle_timeout
        super().__init__(("127.0.0.1", 0), _TunnelHandler)

    def open_upstream(self, host, port):
        proxy = Proxy.from_url(self.socks_url, rdns=True)
        sock = proxy.connect(dest_host=host, dest_port=port, timeout=self.connect_timeout)
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        return sock


@dataclass
class UpstreamTunnel:
    credential_id: str
    local_endpoint: str
    created_at: float = field(default_factory=time.time)
    _server: object = field(default=None, repr=False)
    _thread: object = field(default=None, repr=False)

    def close(self):
        if self._server is None:
            return
        self._server.shutdown()
        self._server.server_close()
        self._server = None


def open_tunnel(credential_id, socks_url, connect_timeout=60.0, idle_timeout=120.0):
    """Start a local tunnel for one credential and return its handle."""
    try:
        server = _TunnelServer(credential_id, socks_url, connect_timeout, idle_timeout)
    except OSError as exc:
        raise TunnelError(f"Could not bind local tunnel: {exc}") from exc
    host, port = server.server_address[:2]
    thread = threading.Thread(
        target=server.serve_forever,
        name=f"tunnel-{credential_id}",
        daemon=True,
    )
    thread.start()
    return UpstreamTunnel(
        credential_id=credential_id,
        local_endpoint=f"http://{host}:{port}",
        _server=server,
        _thread=thread,
    )


class TunnelRegistry:
    """One live tunnel per credential id, created lazily.

    Retiring a credential closes its tunnel and refuses to build a new one
    for it, so a request that read the credential just before rotation
    cannot resurrect a listener nobody will close.
    """

    RETIRED_LIMIT = 4096

    def __init__(self, factory=open_tunnel, connect_timeout=60.0):
        self._factory = factory
        self._connect_timeout = connect_timeout
        self._tunnels = {}
        self._retired = OrderedDict()
        self._lock = threading.Lock()

    def __contains__(self, credential_id):
        with self._lock:
            return credential_id in self._tunnels

    def get(self, credential_id, socks_url):
        with self._lock:
            if credential_id in self._retired:
                raise RetiredCredential(f"Credential {credential_id} was rotated away")
            tunnel = self._tunnels.get(credential_id)
            if tunnel is None:
                tunnel = self._factory(credential_id, socks_url, connect_timeout=self._connect_timeout)
                self._tunnels[credential_id] = tunnel
                logger.info("Anonymous tunnel %s created for credential %s", tunnel.local_endpoint, credential_id)
            return tunnel

    def close(self, credential_id):
        with self._lock:
            tunnel = self._tunnels.pop(credential_id, None)
        if tunnel is not None:
            tunnel.close()
            logger.debug("Closed tunnel for credential %s", credential_id)

    def retire(self, credential_id):
        with self._lock:
            self._retired[credential_id] = time.time()
            while len(self._retired) > self.RETIRED_LIMIT:
                self._retired.popitem(last=False)
        self.close(credential_id)

    def close_all(self):
        with self._lock:
            tunnels = list(self._tunnels.values())
            self._tunnels.clear()
        for tunnel in tunnels:
            tunnel.close()
