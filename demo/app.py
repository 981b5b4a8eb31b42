# app.py
"""
Demo workload for canary rollouts.

GET /        -> "<version> <pod name>"
GET /livez   -> always 200
GET /readyz  -> 200 after STARTUP_DELAY_SECONDS, never when READY=false
"""
import os
import socket
import time
from http.server import BaseHTTPRequestHandler, HTTPServer


class Workload:
    def __init__(self, environ=os.environ):
        self.version = environ.get("VERSION", "dev")
        self.pod_name = environ.get("POD_NAME") or socket.gethostname()
        self.startup_delay = int(environ.get("STARTUP_DELAY_SECONDS", "30"))
        # READY=false keeps the pod unready, so a canary never passes.
        self.healthy = environ.get("READY", "true").lower() != "false"
        self.started = time.time()

    def readiness(self, now=None):
        now = time.time() if now is None else now
        if not self.healthy:
            return 503, "not ready\n"
        if now - self.started < self.startup_delay:
            return 503, "starting\n"
        return 200, "ready\n"


WORKLOAD = Workload()


class Handler(BaseHTTPRequestHandler):
    def _write(self, code: int, body: str):
        payload = body.encode("utf-8")
        self.send_response(code)
        self.send_header("Content-Type", "text/plain; charset=utf-8")
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def do_GET(self):
        routes = {
            "/": lambda: (200, f"{WORKLOAD.version} {WORKLOAD.pod_name}\n"),
            "/livez": lambda: (200, "ok\n"),
            "/readyz": WORKLOAD.readiness,
        }
        route = routes.get(self.path)
        self._write(*(route() if route else (404, "not found\n")))

    def log_message(self, format, *args):
        # Health check requests are not logged.
        if self.path not in ("/livez", "/readyz"):
            super().log_message(format, *args)


def main():
    port = int(os.environ.get("PORT", "8080"))
    HTTPServer(("", port), Handler).serve_forever()


if __name__ == "__main__":
    main()
