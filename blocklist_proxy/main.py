"""Entry point for the blocklist HTTP/HTTPS proxy."""

import argparse
import signal
import sys
import threading
from typing import List, Optional

from blocklist_proxy.config import ProxySettings, default_port
from blocklist_proxy.decision_log import DecisionLog
from blocklist_proxy.filter_engine import FilterEngine
from blocklist_proxy.logger import ProxyLogger
from blocklist_proxy.server import ProxyServer

EXIT_OK = 0
EXIT_FATAL = 1


def timeout_value(value: str) -> Optional[float]:
    """Seconds as a float; zero or a negative number means no timeout."""
    seconds = float(value)
    return seconds if seconds > 0 else None


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="HTTP/HTTPS proxy that blocks content sites and DNS-over-HTTPS endpoints"
    )
    parser.add_argument(
        "--host", default="0.0.0.0", help="IP address to listen on (default: 0.0.0.0)"
    )
    parser.add_argument(
        "--port",
        type=int,
        default=default_port(),
        help="Port to listen on (default: $PORT or 8080)",
    )
    parser.add_argument(
        "--site-blocklist",
        default="site-blocklist.txt",
        help="Path to the content-site blocklist",
    )
    parser.add_argument(
        "--dns-blocklist",
        default="dns-blocklist.txt",
        help="Path to the DNS-over-HTTPS endpoint blocklist",
    )
    parser.add_argument(
        "--log-file",
        default="log.txt",
        help="Path to the append-only decision log",
    )
    parser.add_argument(
        "--error-log",
        default=None,
        help="Optional path for operator error messages",
    )
    parser.add_argument(
        "--console-all",
        action="store_true",
        help="Mirror every decision to the console, not only browser-like hosts",
    )
    parser.add_argument(
        "--connect-timeout",
        type=timeout_value,
        default=10.0,
        help="Seconds to wait for an upstream connection (0 disables)",
    )
    parser.add_argument(
        "--request-timeout",
        type=timeout_value,
        default=10.0,
        help="Seconds to wait for a client's request head (0 disables)",
    )
    parser.add_argument(
        "--idle-timeout",
        type=timeout_value,
        default=None,
        help="Close tunnels and forwarded responses idle this many seconds (default: never)",
    )
    return parser.parse_args(argv)


def build_settings(args: argparse.Namespace) -> ProxySettings:
    return ProxySettings(
        host=args.host,
        port=args.port,
        site_blocklist=args.site_blocklist,
        dns_blocklist=args.dns_blocklist,
        log_path=args.log_file,
        error_log=args.error_log,
        browser_only=not args.console_all,
        connect_timeout=args.connect_timeout,
        request_timeout=args.request_timeout,
        idle_timeout=args.idle_timeout,
    )


def main(argv: Optional[List[str]] = None) -> None:
    settings = build_settings(parse_args(argv))
    logger = ProxyLogger(settings.error_log)
    filter_engine = FilterEngine.from_files(settings.dns_blocklist, settings.site_blocklist)
    decision_log = DecisionLog(settings.log_path, browser_only=settings.browser_only)
    server = ProxyServer(
        settings=settings,
        filter_engine=filter_engine,
        decision_log=decision_log,
        logger=logger,
    )

    def shutdown(signum, frame) -> None:
        logger.info("Shutting down proxy...")
        server.stop()

    def log_thread_exception(args) -> None:
        logger.error("Unhandled: %r", args.exc_value)

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)
    threading.excepthook = log_thread_exception

    exit_code = EXIT_OK
    try:
        server.start()
    except Exception as exc:
        logger.exception("Uncaught: %s", exc)
        exit_code = EXIT_FATAL
    finally:
        decision_log.close()
        logger.close()
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
