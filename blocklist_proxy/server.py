"""Proxy server that accepts connections and delegates to client handlers."""

import socket
import threading
from typing import Optional, Tuple

from blocklist_proxy.client_handler import ClientHandler
from blocklist_proxy.config import ProxySettings
from blocklist_proxy.decision_log import DecisionLog
from blocklist_proxy.filter_engine import FilterEngine
from blocklist_proxy.forwarder import HttpForwarder
from blocklist_proxy.logger import ProxyLogger


class ProxyServer:
    """TCP listener that spawns a thread per incoming client connection."""

    def __init__(
        self,
        settings: ProxySettings,
        filter_engine: FilterEngine,
        decision_log: DecisionLog,
        logger: ProxyLogger,
    ) -> None:
        self.settings = settings
        self.filter_engine = filter_engine
        self.decision_log = decision_log
        self.logger = logger
        self.forwarder = HttpForwarder(
            connect_timeout=settings.connect_timeout,
            idle_timeout=settings.idle_timeout,
            buffer_size=settings.buffer_size,
        )
        self.server_address: Optional[Tuple[str, int]] = None
        self.ready = threading.Event()
        self._shutdown_event = threading.Event()
        self._server_socket: Optional[socket.socket] = None

    def start(self) -> None:
        """Start the TCP listener and accept clients until stopped."""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as server_socket:
            server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            server_socket.bind((self.settings.host, self.settings.port))
            server_socket.listen(100)
            self._server_socket = server_socket
            self.server_address = server_socket.getsockname()[:2]
            self._announce()
            self.ready.set()

            while not self._shutdown_event.is_set():
                try:
                    client_socket, client_addr = server_socket.accept()
                except OSError as exc:
                    if self._shutdown_event.is_set():
                        break
                    self.logger.error("Accept failed: %s", exc)
                    continue

                handler = ClientHandler(
                    client_socket=client_socket,
                    client_address=client_addr,
                    filter_engine=self.filter_engine,
                    decision_log=self.decision_log,
                    logger=self.logger,
                    forwarder=self.forwarder,
                    settings=self.settings,
                )
                thread = threading.Thread(target=handler.handle, daemon=True)
                thread.start()

    def stop(self) -> None:
        """Stop accepting; a pending accept() returns once the listener is closed."""
        self._shutdown_event.set()
        server_socket = self._server_socket
        if server_socket is not None:
            try:
                server_socket.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            server_socket.close()

    def _announce(self) -> None:
        banner = [
            f"Proxy listening on port {self.server_address[1]}",
            f"   Site-block entries : {len(self.filter_engine.web_blocklist)}",
            f"   DNS-block entries  : {len(self.filter_engine.dns_blocklist)}",
            f"   Log file           : {self.decision_log.path.resolve()}",
        ]
        for line in banner:
            self.decision_log.note(line)
