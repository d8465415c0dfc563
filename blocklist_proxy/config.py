"""Process-wide proxy settings, fixed at startup."""

import os
from dataclasses import dataclass
from typing import Optional

DEFAULT_PORT = 8080


def default_port() -> int:
    try:
        return int(os.environ.get("PORT", DEFAULT_PORT))
    except ValueError:
        return DEFAULT_PORT


@dataclass(frozen=True)
class ProxySettings:
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    site_blocklist: str = "site-blocklist.txt"
    dns_blocklist: str = "dns-blocklist.txt"
    log_path: str = "log.txt"
    error_log: Optional[str] = None
    browser_only: bool = True
    # Seconds; None disables the timeout.
    connect_timeout: Optional[float] = 10.0
    request_timeout: Optional[float] = 10.0
    idle_timeout: Optional[float] = None
    buffer_size: int = 4096
