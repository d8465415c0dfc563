"""Forwarding HTTP/HTTPS proxy with hostname blocklists."""

__version__ = "1.0.0"
