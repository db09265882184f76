import socket
import socketserver
import threading

import pytest

from relaygate.tunnel import (
    RetiredCredential,
    TunnelError,
    TunnelRegistry,
    UpstreamTunnel,
    open_tunnel,
    parse_request_head,
)


class TestParseRequestHead:
    def test_connect(self):
        method, host, port, path, rest = parse_request_head(
            b"CONNECT target.example:443 HTTP/1.1\r\nHost: target.example:443\r\n\r\n"
        )
        assert (method, host, port, path) == ("CONNECT", "target.example", 443, None)
        assert rest.startswith(b"Host:")

    def test_connect_ipv6(self):
        _, host, port, _, _ = parse_request_head(b"CONNECT [2001:db8::1]:8443 HTTP/1.1\r\n\r\n")
        assert (host, port) == ("2001:db8::1", 8443)

    def test_absolute_form_http(self):
        method, host, port, path, _ = parse_request_head(b"GET http://plain.example:8080/a/b?c=1 HTTP/1.1\r\n\r\n")
        assert (method, host, port, path) == ("GET", "plain.example", 8080, "/a/b?c=1")

    def test_absolute_form_default_port_and_path(self):
        _, host, port, path, _ = parse_request_head(b"GET http://plain.example HTTP/1.1\r\n\r\n")
        assert (host, port, path) == ("plain.example", 80, "/")

    @pytest.mark.parametrize("head", [b"\r\n\r\n", b"GET /relative HTTP/1.1\r\n\r\n"])
    def test_rejects_what_a_proxy_cannot_serve(self, head):
        with pytest.raises(TunnelError):
            parse_request_head(head)


class ClosingTunnel(UpstreamTunnel):
    closed = False

    def close(self):
        self.closed = True


class TestTunnelRegistry:
    def _registry(self, created):
        def factory(credential_id, socks_url, connect_timeout=60.0):
            tunnel = ClosingTunnel(credential_id=credential_id, local_endpoint=f"http://127.0.0.1:{len(created) + 1}")
            created.append(tunnel)
            return tunnel

        return TunnelRegistry(factory=factory)

    def test_one_tunnel_per_credential(self):
        created = []
        registry = self._registry(created)
        assert registry.get("A", "socks5://x") is registry.get("A", "socks5://x")
        assert registry.get("B", "socks5://x") is not created[0]
        assert len(created) == 2

    def test_retire_closes_and_refuses_resurrection(self):
        created = []
        registry = self._registry(created)
        tunnel = registry.get("A", "socks5://x")

        registry.retire("A")

        assert tunnel.closed
        assert "A" not in registry
        with pytest.raises(RetiredCredential):
            registry.get("A", "socks5://x")

    def test_close_allows_reopen(self):
        created = []
        registry = self._registry(created)
        registry.get("A", "socks5://x")
        registry.close("A")
        registry.get("A", "socks5://x")
        assert len(created) == 2

    def test_close_all(self):
        created = []
        registry = self._registry(created)
        registry.get("A", "socks5://x")
        registry.get("B", "socks5://x")
        registry.close_all()
        assert all(t.closed for t in created)
        assert "A" not in registry and "B" not in registry


class _Echo(socketserver.BaseRequestHandler):
    def handle(self):
        while True:
            data = self.request.recv(4096)
            if not data:
                return
            self.request.sendall(data)


def _read_head(sock):
    data = b""
    while b"\r\n\r\n" not in data:
        chunk = sock.recv(1024)
        if not chunk:
            break
        data += chunk
    return data


@pytest.fixture
def echo_server():
    server = socketserver.ThreadingTCPServer(("127.0.0.1", 0), _Echo)
    server.daemon_threads = True
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server.server_address
    server.shutdown()
    server.server_close()


class TestLocalTunnel:
    """The local CONNECT listener, with the SOCKS5 hop replaced by a direct connection."""

    def test_connect_is_piped_to_upstream(self, echo_server):
        tunnel = open_tunnel("T1", "socks5://u:p@127.0.0.1:1", connect_timeout=5)
        tunnel._server.open_upstream = lambda host, port: socket.create_connection((host, port), timeout=5)
        host, port = tunnel.local_endpoint[len("http://"):].split(":")
        try:
            with socket.create_connection((host, int(port)), timeout=5) as client:
                client.sendall(f"CONNECT {echo_server[0]}:{echo_server[1]} HTTP/1.1\r\n\r\n".encode())
                assert _read_head(client).startswith(b"HTTP/1.1 200")
                client.sendall(b"ping")
                assert client.recv(4) == b"ping"
        finally:
            tunnel.close()

    def test_unreachable_upstream_answers_502(self):
        tunnel = open_tunnel("T2", "socks5://u:p@127.0.0.1:1", connect_timeout=5)

        def refuse(host, port):
            raise ConnectionRefusedError("refused")

        tunnel._server.open_upstream = refuse
        host, port = tunnel.local_endpoint[len("http://"):].split(":")
        try:
            with socket.create_connection((host, int(port)), timeout=5) as client:
                client.sendall(b"CONNECT target.example:443 HTTP/1.1\r\n\r\n")
                assert _read_head(client).startswith(b"HTTP/1.1 502")
        finally:
            tunnel.close()
