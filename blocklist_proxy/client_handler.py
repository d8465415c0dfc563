"""Handle a single client connection: classify, then block, forward or tunnel."""

import socket
from typing import Dict, Optional, Tuple

from blocklist_proxy.config import ProxySettings
from blocklist_proxy.decision_log import DecisionLog
from blocklist_proxy.filter_engine import FilterEngine, Verdict
from blocklist_proxy.forwarder import HttpForwarder
from blocklist_proxy.http_parser import (
    absolute_target,
    blocked_redirect_location,
    build_response,
    decode_chunked,
    dechunk_request,
    get_header,
    is_chunked,
    origin_form,
    parse_connect_target,
    parse_http_request,
    resolve_hostname,
    valid_port,
)
from blocklist_proxy.logger import ProxyLogger
from blocklist_proxy.tunnel import Tunnel

BAD_REQUEST_TAG = "[BAD REQUEST]"
MAX_HEADER_BYTES = 65536

CONNECT_FORBIDDEN = b"HTTP/1.1 403 Forbidden\r\n\r\n"
CONNECT_ESTABLISHED = b"HTTP/1.1 200 Connection Established\r\n\r\n"


class ClientHandler:
    """Handles an individual client connection in its own thread.

    Exactly one decision is recorded per connection, before the matching
    response reaches the client. No exception raised while handling the
    connection escapes ``handle``.
    """

    def __init__(
        self,
        client_socket: socket.socket,
        client_address: Tuple[str, int],
        filter_engine: FilterEngine,
        decision_log: DecisionLog,
        logger: ProxyLogger,
        forwarder: HttpForwarder,
        settings: Optional[ProxySettings] = None,
    ) -> None:
        self.client_socket = client_socket
        self.client_address = client_address
        self.filter_engine = filter_engine
        self.decision_log = decision_log
        self.logger = logger
        self.forwarder = forwarder
        self.settings = settings or ProxySettings()
        self._recorded = False
        self._headers_sent = False
        self._is_connect = False
        self._method = "-"
        self._host = ""
        self._path = ""

    def handle(self) -> None:
        """Main entry point for processing a client request."""
        try:
            self.client_socket.settimeout(self.settings.request_timeout)
            request_data = self._recv_http_request()
            request_line, headers, rest = parse_http_request(request_data)
            if not request_line:
                self._record(BAD_REQUEST_TAG)
                self._send_response(400, "Bad Request", b"Malformed request received by proxy.")
                return

            method, target, version = request_line
            self._method = method
            self.client_socket.settimeout(self.settings.idle_timeout)

            if method.upper() == "CONNECT":
                self._is_connect = True
                self._handle_connect(target, rest)
                return

            if is_chunked(headers):
                try:
                    headers, rest = dechunk_request(headers, rest)
                except ValueError as exc:
                    self.logger.error(
                        "Bad chunked body from %s: %s", self.client_address[0], exc
                    )
                    self._record(BAD_REQUEST_TAG)
                    self._send_response(400, "Bad Request", b"Malformed request received by proxy.")
                    return
            self._handle_http(method, target, version, headers, rest)
        except socket.timeout:
            self.logger.error("Timeout from client %s", self.client_address[0])
        except Exception as exc:
            self.logger.error(
                "Client handling error from %s: %s", self.client_address[0], exc
            )
            self._fail()
        finally:
            self._record(BAD_REQUEST_TAG)
            self.client_socket.close()

    def _recv_http_request(self) -> bytes:
        """Receive the request head plus any Content-Length or chunked body from the client."""
        buffer = bytearray()
        while b"\r\n\r\n" not in buffer:
            chunk = self.client_socket.recv(self.settings.buffer_size)
            if not chunk:
                return bytes(buffer)
            buffer.extend(chunk)
            if len(buffer) > MAX_HEADER_BYTES:
                break

        header_bytes, _, remaining = bytes(buffer).partition(b"\r\n\r\n")
        request_line, headers, _ = parse_http_request(header_bytes + b"\r\n\r\n")
        if request_line and request_line[0].upper() == "CONNECT":
            return header_bytes + b"\r\n\r\n" + remaining

        body = remaining
        if is_chunked(headers):
            while True:
                try:
                    if decode_chunked(body) is not None:
                        break
                except ValueError:
                    break
                chunk = self.client_socket.recv(self.settings.buffer_size)
                if not chunk:
                    break
                body += chunk
            return header_bytes + b"\r\n\r\n" + body

        try:
            content_length = int(get_header(headers, "Content-Length", "0"))
        except ValueError:
            content_length = 0
        while len(body) < content_length:
            chunk = self.client_socket.recv(self.settings.buffer_size)
            if not chunk:
                break
            body += chunk

        return header_bytes + b"\r\n\r\n" + body

    def _handle_http(
        self,
        method: str,
        target: str,
        version: str,
        headers: Dict[str, str],
        body: bytes,
    ) -> None:
        host = resolve_hostname(target, headers)
        path = origin_form(target)
        self._host, self._path = host, path
        verdict = self.filter_engine.classify(host) or Verdict.ALLOWED

        if verdict is Verdict.BLOCKED_WEB:
            self._record(verdict.tag)
            self._send_response(
                302, "Found", headers={"Location": blocked_redirect_location(path)}
            )
            return
        if verdict is Verdict.BLOCKED_DNS:
            self._record(verdict.tag)
            self._send_response(403, "Forbidden", b"Forbidden")
            return

        self._record(Verdict.ALLOWED.tag)
        url = absolute_target(target, headers, host)
        result = self.forwarder.forward(url, method, version, headers, body, self.client_socket)
        if result.response_started:
            self._headers_sent = True
        if not result.ok:
            self.logger.error("HTTP proxy error for %s: %s", url, result.error)
            self._send_response(500, "Internal Server Error", b"Internal Server Error")

    def _handle_connect(self, authority: str, head: bytes) -> None:
        """Handle HTTPS tunneling using HTTP CONNECT."""
        target_host, target_port = parse_connect_target(authority)
        self._method, self._host = "CONNECT", target_host
        verdict = self.filter_engine.classify(target_host) or Verdict.ALLOWED

        if verdict.blocked:
            self._record(verdict.tag)
            self._safe_send(CONNECT_FORBIDDEN)
            return

        self._record(Verdict.ALLOWED.tag)
        if not target_host:
            self.logger.error("CONNECT without a target host from %s", self.client_address[0])
            return
        if not valid_port(target_port):
            self.logger.error(
                "CONNECT upstream error for %s:%s: port out of range", target_host, target_port
            )
            return

        try:
            upstream_socket = socket.create_connection(
                (target_host, target_port), timeout=self.settings.connect_timeout
            )
        except OSError as exc:
            self.logger.error(
                "CONNECT upstream error for %s:%s: %s", target_host, target_port, exc
            )
            return

        self._safe_send(CONNECT_ESTABLISHED)
        tunnel = Tunnel(
            self.client_socket,
            upstream_socket,
            self.logger,
            name=f"{target_host}:{target_port}",
            buffer_size=self.settings.buffer_size,
            idle_timeout=self.settings.idle_timeout,
        )
        tunnel.run(head)

    def _record(self, prefix: str) -> None:
        """Write this connection's decision record unless one was already written."""
        if self._recorded:
            return
        self._recorded = True
        self.decision_log.record(prefix, self._method, self._host, self._path)

    def _fail(self) -> None:
        """Turn an unexpected fault into a terminal response."""
        self._record(BAD_REQUEST_TAG)
        if not self._is_connect:
            self._send_response(500, "Internal Server Error", b"Internal Server Error")

    def _send_response(
        self,
        status: int,
        reason: str,
        body: bytes = b"",
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        if self._headers_sent:
            return
        self._headers_sent = True
        self._safe_send(build_response(status, reason, headers, body))

    def _safe_send(self, data: bytes) -> bool:
        """Write to the client, ignoring a peer that has already gone away."""
        try:
            self.client_socket.sendall(data)
        except OSError:
            return False
        return True
