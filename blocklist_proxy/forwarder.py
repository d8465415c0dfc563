"""Forward a plain HTTP request upstream and stream the response back."""

import socket
import ssl
from dataclasses import dataclass
from typing import Dict, Optional
from urllib.parse import urlsplit

from blocklist_proxy.http_parser import build_forward_request


@dataclass
class ForwardResult:
    """What happened while forwarding one request.

    ``response_started`` is set as soon as any byte was handed to the client,
    after which the proxy must not send a response of its own.
    """

    response_started: bool = False
    bytes_relayed: int = 0
    client_gone: bool = False
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class HttpForwarder:
    """Connects to the upstream named by an absolute URL and relays its response.

    The Host header is rewritten to the upstream authority and HTTPS upstreams
    are contacted without certificate verification.
    """

    def __init__(
        self,
        connect_timeout: Optional[float] = 10.0,
        idle_timeout: Optional[float] = None,
        buffer_size: int = 4096,
    ) -> None:
        self.connect_timeout = connect_timeout
        self.idle_timeout = idle_timeout
        self.buffer_size = buffer_size
        self._tls_context = ssl.create_default_context()
        self._tls_context.check_hostname = False
        self._tls_context.verify_mode = ssl.CERT_NONE

    def forward(
        self,
        url: str,
        method: str,
        version: str,
        headers: Dict[str, str],
        body: bytes,
        client_socket: socket.socket,
    ) -> ForwardResult:
        result = ForwardResult()
        try:
            parsed = urlsplit(url)
            target_host = parsed.hostname
            is_https = parsed.scheme.lower() == "https"
            target_port = parsed.port or (443 if is_https else 80)
            if not target_host:
                raise ValueError(f"no upstream host in {url!r}")
            request_bytes = build_forward_request(method, url, version, headers, body)
        except ValueError as exc:
            result.error = exc
            return result

        try:
            upstream_socket = socket.create_connection(
                (target_host, target_port), timeout=self.connect_timeout
            )
        except OSError as exc:
            result.error = exc
            return result

        try:
            upstream_socket.settimeout(self.idle_timeout)
            if is_https:
                upstream_socket = self._tls_context.wrap_socket(
                    upstream_socket, server_hostname=target_host
                )
            upstream_socket.sendall(request_bytes)

            while True:
                data = upstream_socket.recv(self.buffer_size)
                if not data:
                    break
                result.response_started = True
                try:
                    client_socket.sendall(data)
                except OSError:
                    result.client_gone = True
                    break
                result.bytes_relayed += len(data)
        except OSError as exc:
            result.error = exc
        finally:
            upstream_socket.close()
        return result
