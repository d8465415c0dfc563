"""Opaque byte relay between a CONNECT client and its upstream."""

import socket
import threading
import time
from typing import Optional, Tuple

from blocklist_proxy.logger import ProxyLogger

# A peer resetting or hanging up is how tunnels normally end.
BENIGN_ERRORS = (ConnectionResetError, ConnectionAbortedError, BrokenPipeError)


class Tunnel:
    """Binds a client socket and an upstream socket for the life of a CONNECT session.

    Each direction is pumped by its own thread. Whichever pump stops first
    tears down both sockets, which unblocks the other pump. With an
    ``idle_timeout`` the tunnel is closed only after both directions have
    been quiet for that long.
    """

    def __init__(
        self,
        client_socket: socket.socket,
        upstream_socket: socket.socket,
        logger: ProxyLogger,
        name: str = "",
        buffer_size: int = 4096,
        idle_timeout: Optional[float] = None,
    ) -> None:
        self.client_socket = client_socket
        self.upstream_socket = upstream_socket
        self.logger = logger
        self.name = name
        self.buffer_size = buffer_size
        self.idle_timeout = idle_timeout
        self.bytes_from_client = 0
        self.bytes_from_upstream = 0
        self._lock = threading.Lock()
        self._closed = False
        self._last_activity = time.monotonic()

    @property
    def closed(self) -> bool:
        return self._closed

    def run(self, initial_data: bytes = b"") -> Tuple[int, int]:
        """Relay until either side closes; returns (bytes from client, bytes from upstream)."""
        self.client_socket.settimeout(self.idle_timeout)
        self.upstream_socket.settimeout(self.idle_timeout)
        self._touch()

        if initial_data:
            try:
                self.upstream_socket.sendall(initial_data)
                self.bytes_from_client += len(initial_data)
            except OSError as exc:
                self._report("server", exc)
                self.close()
                return self.bytes_from_client, self.bytes_from_upstream

        upstream_pump = threading.Thread(
            target=self._pump,
            args=(self.upstream_socket, self.client_socket, "server", "client"),
            daemon=True,
        )
        upstream_pump.start()
        self._pump(self.client_socket, self.upstream_socket, "client", "server")
        upstream_pump.join()
        return self.bytes_from_client, self.bytes_from_upstream

    def _pump(self, src: socket.socket, dst: socket.socket, src_label: str, dst_label: str) -> None:
        try:
            while True:
                try:
                    data = src.recv(self.buffer_size)
                except socket.timeout as exc:
                    if not self._idle():
                        continue
                    self._report(src_label, exc)
                    return
                except OSError as exc:
                    self._report(src_label, exc)
                    return
                if not data:
                    return
                self._touch()
                try:
                    dst.sendall(data)
                except OSError as exc:
                    self._report(dst_label, exc)
                    return
                if src is self.client_socket:
                    self.bytes_from_client += len(data)
                else:
                    self.bytes_from_upstream += len(data)
        finally:
            self.close()

    def _touch(self) -> None:
        with self._lock:
            self._last_activity = time.monotonic()

    def _idle(self) -> bool:
        """True once neither direction has carried a byte for ``idle_timeout`` seconds."""
        with self._lock:
            quiet_for = time.monotonic() - self._last_activity
        return quiet_for >= self.idle_timeout

    def _report(self, label: str, exc: OSError) -> None:
        if self._closed or isinstance(exc, BENIGN_ERRORS):
            return
        if isinstance(exc, socket.timeout):
            self.logger.info("Tunnel %s idle for %ss, closing", self.name, self.idle_timeout)
            return
        self.logger.error("Tunnel %s %s error: %s", self.name, label, exc)

    def close(self) -> None:
        """Shut down and close both sockets exactly once."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        for sock in (self.client_socket, self.upstream_socket):
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            sock.close()
