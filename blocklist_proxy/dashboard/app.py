"""Live dashboard over the proxy's decision log."""

import os
import re
import socket
import threading
from collections import Counter, defaultdict
from datetime import datetime

from flask import Flask, jsonify, render_template
from flask_socketio import SocketIO

app = Flask(__name__)
socketio = SocketIO(app, async_mode="threading", cors_allowed_origins="*")

_emitter_thread_started = False
_emitter_lock = threading.Lock()

# 2025-05-22T10:30:15.123Z  [WEB BLOCKED] GET    example.com/path
RECORD_PATTERN = re.compile(
    r"^(?P<timestamp>\S+)  \[(?P<tag>[A-Z ]+)\] (?P<method>\S+)(?:\s+(?P<target>.*))?$"
)


def get_log_path():
    return os.environ.get("BLOCKLIST_PROXY_LOG", "log.txt")


def get_proxy_port():
    try:
        return int(os.environ.get("PORT", 8080))
    except ValueError:
        return 8080


def is_proxy_active(port=None):
    try:
        with socket.create_connection(("127.0.0.1", port or get_proxy_port()), timeout=1):
            return True
    except OSError:
        return False


def split_target(target):
    """Separate the host from the path that follows it in a record."""
    slash = target.find("/")
    if slash == -1:
        return target, ""
    return target[:slash], target[slash:]


def parse_log_line(line):
    """Parse one decision record; banner and unrecognised lines yield None."""
    match = RECORD_PATTERN.match(line.rstrip("\r\n"))
    if not match:
        return None
    try:
        dt = datetime.strptime(match.group("timestamp"), "%Y-%m-%dT%H:%M:%S.%fZ")
    except ValueError:
        return None
    host, path = split_target((match.group("target") or "").strip())
    return {
        "timestamp": dt,
        "tag": match.group("tag"),
        "method": match.group("method"),
        "host": host,
        "path": path,
    }


def parse_decision_log(path=None):
    path = path or get_log_path()
    if not os.path.exists(path):
        return None

    records = []
    with open(path, "r", encoding="utf-8", errors="replace") as log_file:
        for line in log_file:
            record = parse_log_line(line)
            if record is not None:
                records.append(record)
    return records


def calculate_stats(records, proxy_active=None):
    if proxy_active is None:
        proxy_active = is_proxy_active()

    if not records:
        return {
            "total_requests": 0,
            "allowed_requests": 0,
            "web_blocked": 0,
            "dns_blocked": 0,
            "connect_requests": 0,
            "top_hosts_labels": [],
            "top_hosts_data": [],
            "top_blocked_labels": [],
            "top_blocked_data": [],
            "requests_time_labels": [],
            "requests_time_data": [],
            "blocked_time_data": [],
            "proxy_active": proxy_active,
        }

    tags = Counter(record["tag"] for record in records)
    hosts = Counter(record["host"] for record in records if record["host"])
    blocked_hosts = Counter(
        record["host"]
        for record in records
        if record["host"] and record["tag"] in ("WEB BLOCKED", "DNS BLOCKED")
    )

    req_per_min = defaultdict(int)
    blocked_per_min = defaultdict(int)
    for record in records:
        minute_key = record["timestamp"].strftime("%Y-%m-%d %H:%M")
        req_per_min[minute_key] += 1
        if record["tag"] in ("WEB BLOCKED", "DNS BLOCKED"):
            blocked_per_min[minute_key] += 1

    # Keys sort chronologically as formatted.
    sorted_mins = sorted(req_per_min)
    top_hosts = hosts.most_common(5)
    top_blocked = blocked_hosts.most_common(5)

    return {
        "total_requests": len(records),
        "allowed_requests": tags["ALLOWED"],
        "web_blocked": tags["WEB BLOCKED"],
        "dns_blocked": tags["DNS BLOCKED"],
        "connect_requests": sum(1 for record in records if record["method"] == "CONNECT"),
        "top_hosts_labels": [h[0] for h in top_hosts],
        "top_hosts_data": [h[1] for h in top_hosts],
        "top_blocked_labels": [h[0] for h in top_blocked],
        "top_blocked_data": [h[1] for h in top_blocked],
        "requests_time_labels": sorted_mins,
        "requests_time_data": [req_per_min[k] for k in sorted_mins],
        "blocked_time_data": [blocked_per_min[k] for k in sorted_mins],
        "proxy_active": proxy_active,
    }


def current_stats():
    return calculate_stats(parse_decision_log())


def stats_emitter_worker():
    """Background worker that re-reads the log and pushes updates every 2 seconds."""
    while True:
        socketio.emit("stats_update", current_stats())
        socketio.sleep(2)


@app.route("/")
def index():
    global _emitter_thread_started
    with _emitter_lock:
        if not _emitter_thread_started:
            socketio.start_background_task(stats_emitter_worker)
            _emitter_thread_started = True

    return render_template("index.html", stats=current_stats())


@app.route("/api/stats")
def api_stats():
    return jsonify(current_stats())


def main():
    socketio.run(app, host="0.0.0.0", port=5000, allow_unsafe_werkzeug=True)


if __name__ == "__main__":
    main()
