"""Minimal HTTP parsing utilities for a raw TCP proxy."""

from typing import Dict, Mapping, Optional, Tuple
from urllib.parse import quote, urlsplit

BLOCKED_REDIRECT_BASE = "https://www.google.com/search?q=site+blocked&u="
DEFAULT_TUNNEL_PORT = 443

# Headers that describe the client-to-proxy hop and must not reach the upstream.
HOP_BY_HOP_HEADERS = {"proxy-connection", "proxy-authorization", "connection", "keep-alive"}


def parse_http_request(request_bytes: bytes) -> Tuple[Tuple[str, str, str], Dict[str, str], bytes]:
    """Parse the request line and headers from raw bytes.

    The third element holds whatever followed the header block: the request
    body, or for CONNECT the bytes the client sent ahead of the tunnel.
    """
    try:
        header_part, _, body = request_bytes.partition(b"\r\n\r\n")
        lines = header_part.decode("iso-8859-1", errors="replace").split("\r\n")
        request_line = lines[0].split(" ")
        if len(request_line) != 3 or not all(request_line):
            return (), {}, b""
        method, url, version = request_line
        headers = {}
        for line in lines[1:]:
            if ":" in line:
                key, value = line.split(":", 1)
                headers[key.strip()] = value.strip()
        return (method, url, version), headers, body
    except Exception:
        return (), {}, b""


def get_header(headers: Mapping[str, str], name: str, default: str = "") -> str:
    """Case-insensitive header lookup."""
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return default


def is_absolute(url: str) -> bool:
    lowered = url.lower()
    return lowered.startswith("http://") or lowered.startswith("https://")


def split_host_port(authority: str) -> Tuple[str, Optional[str]]:
    """Split ``host[:port]`` or ``[v6]:port``; the port is returned unparsed."""
    value = (authority or "").strip()
    if value.startswith("["):
        bracket_end = value.find("]")
        if bracket_end == -1:
            return "", None
        host = value[1:bracket_end]
        remainder = value[bracket_end + 1 :]
        return host, remainder[1:] if remainder.startswith(":") else None
    if ":" in value:
        host, port_str = value.rsplit(":", 1)
        return host, port_str
    return value, None


def hostname_from_url(url: str) -> str:
    try:
        return urlsplit(url).hostname or ""
    except ValueError:
        return ""


def resolve_hostname(target: str, headers: Mapping[str, str]) -> str:
    """Destination hostname of a proxied request.

    Tries the absolute-form request target first, then the Host header with
    any port removed. Returns an empty string when neither yields a name.
    """
    if target and is_absolute(target):
        host = hostname_from_url(target)
        if host:
            return host
    host, _ = split_host_port(get_header(headers, "Host"))
    return host


def origin_form(target: str) -> str:
    """Path and query of the request target, as an origin server would see it."""
    if not target:
        return "/"
    if not is_absolute(target):
        return target
    try:
        parsed = urlsplit(target)
    except ValueError:
        return "/"
    path = parsed.path or "/"
    if parsed.query:
        path = f"{path}?{parsed.query}"
    return path


def absolute_target(target: str, headers: Mapping[str, str], host: str) -> str:
    """Upstream URL for the request; relative targets become ``http://<host><path>``."""
    if target and is_absolute(target):
        return target
    authority = get_header(headers, "Host") or host
    path = target or "/"
    if not path.startswith("/"):
        path = f"/{path}"
    return f"http://{authority}{path}"


def parse_connect_target(authority: str) -> Tuple[str, int]:
    """Parse CONNECT authority-form target (host:port), defaulting the port to 443.

    Only a missing or non-numeric port falls back to the default. A numeric
    port is returned as given, even when out of range, so the caller can
    refuse it.
    """
    host, port_str = split_host_port(authority)
    try:
        port = int(port_str) if port_str else DEFAULT_TUNNEL_PORT
    except ValueError:
        port = DEFAULT_TUNNEL_PORT
    return host.strip(), port


def valid_port(port: int) -> bool:
    return 0 < port < 65536


def is_chunked(headers: Mapping[str, str]) -> bool:
    encodings = get_header(headers, "Transfer-Encoding").lower().split(",")
    return encodings[-1].strip() == "chunked"


def decode_chunked(data: bytes) -> Optional[bytes]:
    """Decode a chunked message body.

    Returns None while the terminating zero-size chunk (and its trailer
    section) has not arrived yet. Raises ValueError on a bad chunk size.
    """
    body = bytearray()
    pos = 0
    while True:
        line_end = data.find(b"\r\n", pos)
        if line_end == -1:
            return None
        size_field = data[pos:line_end].split(b";", 1)[0].strip()
        try:
            size = int(size_field, 16)
        except ValueError:
            raise ValueError(f"invalid chunk size {size_field!r}")
        if size < 0:
            raise ValueError(f"invalid chunk size {size_field!r}")
        pos = line_end + 2
        if size == 0:
            # Trailer fields, if any, end with an empty line.
            if data[pos:pos + 2] == b"\r\n" or data.find(b"\r\n\r\n", pos) != -1:
                return bytes(body)
            return None
        if len(data) < pos + size + 2:
            return None
        body += data[pos:pos + size]
        pos += size + 2


def dechunk_request(headers: Dict[str, str], body: bytes) -> Tuple[Dict[str, str], bytes]:
    """Replace a chunked request body with a plain one sized by Content-Length."""
    decoded = decode_chunked(body)
    if decoded is None:
        raise ValueError("incomplete chunked request body")
    plain_headers = {
        key: value
        for key, value in headers.items()
        if key.lower() not in ("transfer-encoding", "content-length", "trailer")
    }
    plain_headers["Content-Length"] = str(len(decoded))
    return plain_headers, decoded


def blocked_redirect_location(path: str) -> str:
    """Search URL a blocked content request is redirected to."""
    # Same escaping as JavaScript's encodeURIComponent.
    return BLOCKED_REDIRECT_BASE + quote(path, safe="!*'()")


def build_forward_request(
    method: str,
    url: str,
    version: str,
    headers: Dict[str, str],
    body: bytes,
) -> bytes:
    """Build an origin-form request for ``url`` with the Host header rewritten to match it."""
    netloc = urlsplit(url).netloc.rpartition("@")[2]
    forward_headers = {
        key: value
        for key, value in headers.items()
        if key.lower() not in HOP_BY_HOP_HEADERS and key.lower() != "host"
    }
    forward_headers = {"Host": netloc, **forward_headers}
    forward_headers["Connection"] = "close"
    if not version.upper().startswith("HTTP/"):
        version = "HTTP/1.1"
    request_line = f"{method} {origin_form(url)} {version}\r\n"
    header_lines = "".join(f"{key}: {value}\r\n" for key, value in forward_headers.items())
    return (request_line + header_lines + "\r\n").encode("iso-8859-1", errors="replace") + body


def build_response(
    status: int,
    reason: str,
    headers: Optional[Mapping[str, str]] = None,
    body: bytes = b"",
) -> bytes:
    """Build a complete HTTP/1.1 response that closes the connection."""
    response_headers = dict(headers or {})
    if body:
        response_headers.setdefault("Content-Type", "text/plain")
    response_headers["Content-Length"] = str(len(body))
    response_headers["Connection"] = "close"
    head = f"HTTP/1.1 {status} {reason}\r\n"
    head += "".join(f"{key}: {value}\r\n" for key, value in response_headers.items())
    return (head + "\r\n").encode("iso-8859-1", errors="replace") + body
