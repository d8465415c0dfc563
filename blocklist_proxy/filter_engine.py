"""Hostname blocklist loading and classification."""

import enum
import logging
from pathlib import Path
from typing import Iterable, Optional, Sequence, Tuple

logger = logging.getLogger("proxy")


class Verdict(enum.Enum):
    """Outcome of classifying a destination hostname."""

    ALLOWED = "[ALLOWED]"
    BLOCKED_DNS = "[DNS BLOCKED]"
    BLOCKED_WEB = "[WEB BLOCKED]"

    @property
    def tag(self) -> str:
        return self.value

    @property
    def blocked(self) -> bool:
        return self is not Verdict.ALLOWED


def load_blocklist(path: str) -> Tuple[str, ...]:
    """Read one domain per line, ignoring blanks and ``#`` comments.

    A missing or unreadable file yields an empty list so that the proxy can
    still start.
    """
    blocklist_path = Path(path)
    try:
        text = blocklist_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        logger.warning("Could not read %s: %s (using empty list)", blocklist_path, exc)
        return ()
    return tuple(
        line.strip().lower()
        for line in text.splitlines()
        if line.strip() and not line.strip().startswith("#")
    )


def matches(host: str, domain: str) -> bool:
    """True when ``host`` is ``domain`` or one of its subdomains."""
    return host == domain or host.endswith(f".{domain}")


class FilterEngine:
    """Classifies hostnames against the DNS-over-HTTPS and content blocklists."""

    def __init__(self, dns_blocklist: Iterable[str], web_blocklist: Iterable[str]) -> None:
        self.dns_blocklist: Tuple[str, ...] = tuple(d.strip().lower() for d in dns_blocklist)
        self.web_blocklist: Tuple[str, ...] = tuple(d.strip().lower() for d in web_blocklist)

    @classmethod
    def from_files(cls, dns_path: str, web_path: str) -> "FilterEngine":
        return cls(load_blocklist(dns_path), load_blocklist(web_path))

    @staticmethod
    def _listed(host: str, blocklist: Sequence[str]) -> bool:
        return any(matches(host, domain) for domain in blocklist if domain)

    def classify(self, host: Optional[str]) -> Optional[Verdict]:
        """Return the verdict for ``host``, or None when there is no host to judge.

        The DNS list wins when a host appears on both lists.
        """
        if not host:
            return None
        host_lower = host.lower()
        if self._listed(host_lower, self.dns_blocklist):
            return Verdict.BLOCKED_DNS
        if self._listed(host_lower, self.web_blocklist):
            return Verdict.BLOCKED_WEB
        return Verdict.ALLOWED
