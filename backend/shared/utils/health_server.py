"""
Minimal HTTP server for the ingest worker process.
Serves GET /health with per-provider circuit state so orchestrator probes can
tell a stalled worker from one that is only backing off a provider.
Runs in a daemon thread; no-op when the port is 0 (e.g. local dev).
"""
from __future__ import annotations

import json
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, Callable, Optional

StatusFn = Callable[[], dict[str, Any]]


def health_payload(service_name: str, status_fn: Optional[StatusFn] = None) -> tuple[int, dict[str, Any]]:
    """
    Status code and body for one probe.

    503 only when every provider circuit is open; a single tripped provider
    leaves the worker healthy.
    """
    providers = status_fn() if status_fn else {}
    states = [p.get("state") for p in providers.values()]
    degraded = bool(states) and all(s == "open" for s in states)
    body = {"status": "degraded" if degraded else "ok", "service": service_name, "providers": providers}
    return (503 if degraded else 200), body


def start_health_server(service_name: str, port: int, status_fn: Optional[StatusFn] = None) -> Optional[HTTPServer]:
    if not port:
        return None

    class Handler(BaseHTTPRequestHandler):
        def do_GET(self) -> None:
            if self.path.rstrip("/") != "/health":
                self.send_response(404)
                self.end_headers()
                return
            status, payload = health_payload(service_name, status_fn)
            body = json.dumps(payload).encode("utf-8")
            self.send_response(status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, format: str, *args: object) -> None:
            pass  # probes are too chatty for the request log

    httpd = HTTPServer(("0.0.0.0", port), Handler)
    threading.Thread(target=httpd.serve_forever, daemon=True).start()
    return httpd
