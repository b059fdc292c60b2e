#!/usr/bin/env python3
"""
Discharge follow-up HTTP entry point

Serves the webhook endpoints and a health check.

Usage:
    python main.py            # listen on HTTP_PORT (default 8081)
    python main.py 9000       # listen on port 9000

Endpoints:
    GET  /health
    POST /webhooks/execute    {"item_id": "...", "channel": "call" | "email"}
    POST /webhooks/provider   provider status callbacks (signed)
"""
import json
import logging
import sys
import threading
import time
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Optional

from dotenv import load_dotenv

from followup.webhooks import handle_execute_webhook, handle_provider_webhook

logger = logging.getLogger("discharge-main")


class WebhookHandler(BaseHTTPRequestHandler):
    """Routes requests to the webhook entry points of the server's runtime"""

    def do_GET(self):  # noqa: N802 (http.server API)
        if self.path == "/health":
            self._send_json(200, {
                "status": "healthy",
                "service": "discharge-followup",
                "timestamp": int(time.time()),
            })
        else:
            self._send_json(404, {"error": "Not found"})

    def do_POST(self):  # noqa: N802 (http.server API)
        length = int(self.headers.get("Content-Length") or 0)
        raw_body = self.rfile.read(length) if length else b""
        runtime = self.server.runtime

        if self.path == "/webhooks/execute":
            status, body = handle_execute_webhook(runtime.executor, raw_body)
        elif self.path == "/webhooks/provider":
            status, body = handle_provider_webhook(
                runtime.tracker,
                raw_body,
                dict(self.headers.items()),
                runtime.settings.webhook_secret,
            )
        else:
            status, body = 404, {"error": "Not found"}
        self._send_json(status, body)

    def _send_json(self, status: int, payload):
        data = json.dumps(payload).encode()
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)

    def log_message(self, format, *args):  # noqa: A003 (shadow builtins)
        # Route default server logging to our logger at DEBUG
        logger.debug(format % args)


class WebhookServer(HTTPServer):
    """HTTPServer carrying the runtime its handlers dispatch into"""

    def __init__(self, address, runtime):
        super().__init__(address, WebhookHandler)
        self.runtime = runtime


class BackgroundHTTPServer:
    """Run the webhook server in a background thread."""

    def __init__(self, runtime, port: int = 8081, host: str = "0.0.0.0"):
        self._runtime = runtime
        self._address = (host, port)
        self._server: Optional[WebhookServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def port(self) -> int:
        return self._server.server_address[1] if self._server else self._address[1]

    def start(self):
        if self._server:
            return
        self._server = WebhookServer(self._address, self._runtime)
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()
        logger.info(f"Webhook server listening on {self._address[0]}:{self.port}")

    def stop(self):
        try:
            if self._server:
                logger.info("Stopping webhook server")
                self._server.shutdown()
                self._server.server_close()
        finally:
            self._server = None
            if self._thread and self._thread.is_alive():
                self._thread.join(timeout=1.0)


def main():
    """Build the runtime and serve webhooks until interrupted"""
    load_dotenv()

    from config.redis import test_redis_connection
    from config.settings import get_settings
    from scheduling.runtime import build_runtime

    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    port = int(sys.argv[1]) if len(sys.argv) > 1 else settings.http_port
    if not settings.webhook_secret:
        logger.warning("WEBHOOK_SECRET is not set; provider callbacks will not be verified")
    if not test_redis_connection():
        logger.error("Redis is unreachable; check REDIS_HOST and REDIS_PORT")
        sys.exit(1)

    server = WebhookServer(("0.0.0.0", port), build_runtime(settings))
    logger.info(f"Webhook server listening on 0.0.0.0:{port}")
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down")
    finally:
        server.server_close()


if __name__ == "__main__":
    main()
