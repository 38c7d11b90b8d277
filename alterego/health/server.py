"""HTTP health and stats server."""

from __future__ import annotations

import json
import logging
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from alterego.memory.long_term_memory import LongTermMemoryStore
from alterego.memory.session_memory import SessionStore

log = logging.getLogger(__name__)


class HealthServer:
    def __init__(
        self,
        *,
        host: str,
        port: int,
        sessions: SessionStore,
        memories: LongTermMemoryStore,
        model: str = "",
    ) -> None:
        self._host = host
        self._port = port
        self._sessions = sessions
        self._memories = memories
        self._model = model
        self._started_at = time.time()
        self._thread: threading.Thread | None = None
        self._httpd: ThreadingHTTPServer | None = None

    @property
    def port(self) -> int:
        """Bound port; differs from the configured one when that was 0."""
        if self._httpd is None:
            return self._port
        return self._httpd.server_address[1]

    def start(self) -> None:
        handler_cls = self._build_handler()
        self._httpd = ThreadingHTTPServer((self._host, self._port), handler_cls)
        self._thread = threading.Thread(target=self._httpd.serve_forever, daemon=True)
        self._thread.start()
        log.info("[HTTP] Health server listening on %s:%s", self._host, self.port)

    def stop(self) -> None:
        if self._httpd is not None:
            self._httpd.shutdown()
            self._httpd.server_close()
        if self._thread is not None:
            self._thread.join(timeout=2)
        self._httpd = None
        self._thread = None

    def _build_handler(self) -> type[BaseHTTPRequestHandler]:
        sessions = self._sessions
        memories = self._memories
        model = self._model
        started_at = self._started_at

        class Handler(BaseHTTPRequestHandler):
            def do_GET(self) -> None:  # noqa: N802
                path = self.path.split("?")[0]
                if path == "/":
                    self._write_json(200, {"message": "Hello. I am Alter Ego!"})
                    return

                if path == "/health":
                    self._write_json(
                        200,
                        {
                            "status": "ok",
                            "model": model,
                            "uptime": int(time.time() - started_at),
                        },
                    )
                    return

                if path == "/stats":
                    self._write_json(
                        200,
                        {
                            "sessions": sessions.stats(),
                            "memory": {
                                "persistent": memories.persistent,
                                "ready": memories.ready,
                                "capacity": memories.capacity,
                            },
                        },
                    )
                    return

                self._write_json(404, {"error": "Not found"})

            def log_message(self, format: str, *args: Any) -> None:  # noqa: A003
                # Request lines go to debug logging instead of stderr.
                log.debug("[HTTP] " + format, *args)

            def _write_json(self, status_code: int, payload: dict[str, Any]) -> None:
                encoded = json.dumps(payload, ensure_ascii=True).encode("utf-8")
                self.send_response(status_code)
                self.send_header("Content-Type", "application/json")
                self.send_header("Content-Length", str(len(encoded)))
                self.end_headers()
                self.wfile.write(encoded)

        return Handler
