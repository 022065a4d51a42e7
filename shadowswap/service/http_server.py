from __future__ import annotations

import asyncio
import json
import logging
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from threading import Thread
from typing import Any, Optional, Tuple
from urllib.parse import unquote, urlsplit

from shadowswap.core.errors import DuplicateIntentError, IntentValidationError
from shadowswap.observability.prometheus import export_text

from .app import SwapService


logger = logging.getLogger(__name__)

SSE_KEEPALIVE_S = 15.0


class _SwapHandler(BaseHTTPRequestHandler):
    service: SwapService
    loop: asyncio.AbstractEventLoop
    keepalive_s: float = SSE_KEEPALIVE_S

    def _cors(self) -> None:
        self.send_header("Access-Control-Allow-Origin", "*")
        self.send_header("Access-Control-Allow-Headers", "Content-Type")
        self.send_header("Access-Control-Allow-Methods", "GET, POST, OPTIONS")

    def _send_json(self, status: int, data: Any) -> None:
        body = json.dumps(data).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self._cors()
        self.end_headers()
        self.wfile.write(body)

    def _run(self, coro):
        return asyncio.run_coroutine_threadsafe(coro, self.loop).result()

    def do_OPTIONS(self):  # noqa: N802
        self.send_response(204)
        self._cors()
        self.send_header("Content-Length", "0")
        self.end_headers()

    def do_GET(self):  # noqa: N802
        path = urlsplit(self.path).path.rstrip("/") or "/"
        if path == "/health":
            try:
                self._send_json(200, self._run(self.service.health()))
            except Exception as e:  # noqa: BLE001
                logger.exception("health check failed")
                self._send_json(500, {"status": "error", "error": str(e)})
            return
        if path == "/metrics":
            body = export_text().encode("utf-8")
            self.send_response(200)
            self.send_header("Content-Type", "text/plain; version=0.0.4")
            self.send_header("Content-Length", str(len(body)))
            self._cors()
            self.end_headers()
            self.wfile.write(body)
            return
        if path == "/intents":
            self._send_json(200, {"intents": [it.to_dict() for it in self.service.list_pending()]})
            return
        if path.startswith("/intents/"):
            intent_id = unquote(path[len("/intents/"):])
            it = self.service.get_intent(intent_id)
            if it is None:
                self._send_json(404, {"error": "Intent not found"})
                return
            self._send_json(200, it.to_dict())
            return
        if path.startswith("/events/"):
            self._stream(unquote(path[len("/events/"):]))
            return
        self._send_json(404, {"error": "Not found"})

    def do_POST(self):  # noqa: N802
        path = urlsplit(self.path).path.rstrip("/")
        if path != "/submit-intent":
            self._send_json(404, {"error": "Not found"})
            return
        try:
            length = int(self.headers.get("Content-Length", "0"))
            payload = json.loads(self.rfile.read(length).decode("utf-8") or "null")
        except (ValueError, UnicodeDecodeError):
            self._send_json(400, {"success": False, "error": "Request body must be JSON"})
            return
        if not isinstance(payload, dict):
            self._send_json(400, {"success": False, "error": "Request body must be a JSON object"})
            return
        try:
            resp = self._run(self.service.submit_intent(payload))
        except DuplicateIntentError as e:
            self._send_json(409, {"success": False, "error": str(e)})
            return
        except IntentValidationError as e:
            self._send_json(400, {"success": False, "error": str(e)})
            return
        except Exception as e:  # noqa: BLE001
            logger.exception("submit-intent failed", extra={"intent_id": payload.get("id")})
            self._send_json(500, {"success": False, "error": str(e)})
            return
        self._send_json(200, resp.to_dict())

    def _stream(self, intent_id: str) -> None:
        self.send_response(200)
        self.send_header("Content-Type", "text/event-stream")
        self.send_header("Cache-Control", "no-cache")
        self.send_header("Connection", "keep-alive")
        self._cors()
        self.end_headers()
        with self.service.stream_events(intent_id) as stream:
            try:
                while True:
                    ev = stream.get(timeout=self.keepalive_s)
                    if ev is None:
                        if stream.closed:
                            return
                        self.wfile.write(b": keepalive\n\n")
                    else:
                        self.wfile.write(f"data: {json.dumps(ev.to_dict())}\n\n".encode("utf-8"))
                    self.wfile.flush()
            except (BrokenPipeError, ConnectionResetError):
                # client went away
                return

    def log_message(self, format, *args):  # noqa: A003
        # Suppress default stdout logging
        return


def start_http_server(
    service: SwapService,
    loop: asyncio.AbstractEventLoop,
    host: str = "127.0.0.1",
    port: int = 0,
    keepalive_s: Optional[float] = None,
) -> Tuple[ThreadingHTTPServer, Thread]:
    """Serve ``service`` on a background thread; coroutines run on ``loop``."""
    handler = type(
        "SwapHandler",
        (_SwapHandler,),
        {"service": service, "loop": loop, "keepalive_s": keepalive_s or SSE_KEEPALIVE_S},
    )
    server = ThreadingHTTPServer((host, port), handler)
    server.daemon_threads = True
    th = Thread(target=server.serve_forever, daemon=True)
    th.start()
    return server, th


def stop_http_server(server: ThreadingHTTPServer) -> None:
    server.shutdown()
    server.server_close()
