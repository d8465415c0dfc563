import socket
import socketserver
import ssl
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest
import trustme

from blocklist_proxy.config import ProxySettings
from blocklist_proxy.decision_log import DecisionLog
from blocklist_proxy.filter_engine import FilterEngine
from blocklist_proxy.logger import ProxyLogger
from blocklist_proxy.server import ProxyServer


def recv_all(sock, timeout=5.0):
    """Read from ``sock`` until the peer closes it."""
    sock.settimeout(timeout)
    chunks = []
    while True:
        data = sock.recv(4096)
        if not data:
            break
        chunks.append(data)
    return b"".join(chunks)


def recv_exactly(sock, size, timeout=5.0):
    sock.settimeout(timeout)
    data = b""
    while len(data) < size:
        chunk = sock.recv(size - len(data))
        if not chunk:
            break
        data += chunk
    return data


def read_decisions(path, expected=1, timeout=5.0):
    """Wait for ``expected`` decision records, then return all of them (banner lines excluded)."""
    deadline = time.monotonic() + timeout
    lines = []
    while time.monotonic() < deadline:
        if path.exists():
            lines = [
                line
                for line in path.read_text(encoding="utf-8").splitlines()
                if "  [" in line
            ]
            if len(lines) >= expected:
                break
        time.sleep(0.02)
    return lines


def unused_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def proxy_logger():
    return ProxyLogger()


@pytest.fixture
def log_path(tmp_path):
    return tmp_path / "log.txt"


@pytest.fixture
def decision_log(log_path):
    log = DecisionLog(str(log_path), console=False)
    yield log
    log.close()


class _UpstreamHandler(BaseHTTPRequestHandler):
    def do_GET(self):
        body = f"hello from upstream {self.path}".encode("utf-8")
        self.send_response(200)
        self.send_header("Content-Type", "text/plain")
        self.send_header("Content-Length", str(len(body)))
        self.send_header("X-Seen-Host", self.headers.get("Host", ""))
        self.send_header("X-Seen-Connection", self.headers.get("Connection", ""))
        self.send_header("X-Seen-Proxy-Connection", self.headers.get("Proxy-Connection", ""))
        self.end_headers()
        self.wfile.write(body)

    def do_POST(self):
        length = int(self.headers.get("Content-Length", 0))
        body = self.rfile.read(length)
        self.send_response(200)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):
        pass


@pytest.fixture
def upstream_http():
    """A plain HTTP origin server on the loopback interface."""
    server = ThreadingHTTPServer(("127.0.0.1", 0), _UpstreamHandler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.shutdown()
    server.server_close()


@pytest.fixture
def upstream_https():
    """The same origin server behind TLS, with a certificate no client trusts."""
    ca = trustme.CA()
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    ca.issue_cert("origin.test").configure_cert(context)

    server = ThreadingHTTPServer(("127.0.0.1", 0), _UpstreamHandler)
    server.socket = context.wrap_socket(server.socket, server_side=True)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.shutdown()
    server.server_close()


class EchoServer(socketserver.ThreadingTCPServer):
    daemon_threads = True
    allow_reuse_address = True

    def __init__(self):
        self.peer_closed = threading.Event()
        self.connections = 0
        super().__init__(("127.0.0.1", 0), _EchoHandler)


class _EchoHandler(socketserver.BaseRequestHandler):
    def handle(self):
        self.server.connections += 1
        try:
            while True:
                data = self.request.recv(4096)
                if not data:
                    break
                self.request.sendall(data)
        except OSError:
            pass
        finally:
            self.server.peer_closed.set()


@pytest.fixture
def echo_server():
    """A TCP echo server that notes when its peer goes away."""
    server = EchoServer()
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.shutdown()
    server.server_close()


@pytest.fixture
def start_proxy(tmp_path, proxy_logger):
    """Start a ProxyServer on an ephemeral port with the given blocklists."""
    running = []

    def _start(dns=(), web=(), **overrides):
        settings = ProxySettings(
            host="127.0.0.1",
            port=0,
            log_path=str(tmp_path / "log.txt"),
            **overrides,
        )
        log = DecisionLog(settings.log_path, console=False)
        server = ProxyServer(settings, FilterEngine(dns, web), log, proxy_logger)
        thread = threading.Thread(target=server.start, daemon=True)
        thread.start()
        assert server.ready.wait(5)
        running.append((server, thread, log))
        return server

    yield _start

    for server, thread, log in running:
        server.stop()
        thread.join(5)
        log.close()
