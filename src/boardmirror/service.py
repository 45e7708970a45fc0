"""
Mirror Service -- the always-on board mirror.

Runs the engine on a private asyncio loop thread, receives Monday
webhooks over a small local HTTP server, and shuts everything down
cleanly on SIGTERM/SIGINT.

    POST /webhook   Monday webhook target (challenge + events)
    GET  /status    engine counters and service state
    GET  /ping      liveness
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import threading
from datetime import datetime, timezone
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Coroutine, Optional

from .engine import MirrorEngine
from .models import ServiceConfig
from .monday import MondayClient
from .store import CacheStore, create_store

logger = logging.getLogger("boardmirror.service")

WEBHOOK_TIMEOUT = 30


class ServiceState:
    """Thread-safe mutable service state.

    Written by the HTTP threads, read by /status.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.started_at: Optional[datetime] = None
        self.webhooks_received: int = 0
        self.errors: list[str] = []
        self.running: bool = False

    def record_webhook(self) -> None:
        with self._lock:
            self.webhooks_received += 1

    def record_error(self, error: str) -> None:
        """Record an error, keeping only the last 50."""
        with self._lock:
            ts = datetime.now(timezone.utc).isoformat()
            self.errors.append(f"[{ts}] {error}")
            if len(self.errors) > 50:
                self.errors = self.errors[-50:]

    def snapshot(self) -> dict:
        """Return a serializable snapshot of current state."""
        with self._lock:
            return {
                "running": self.running,
                "started_at": self.started_at.isoformat() if self.started_at else None,
                "webhooks_received": self.webhooks_received,
                "recent_errors": self.errors[-10:],
                "pid": os.getpid(),
            }


class MirrorService:
    """Hosts one MirrorEngine plus its webhook endpoint.

    Args:
        config: Service configuration.
        store: Cache store to use instead of the one named by redis_url.
        remote: Monday client to use instead of building one.
    """

    def __init__(
        self,
        config: ServiceConfig,
        store: Optional[CacheStore] = None,
        remote: Optional[MondayClient] = None,
    ):
        self.config = config
        self.state = ServiceState()
        self.store = store
        self.remote = remote
        self.engine: Optional[MirrorEngine] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []
        self._server: Optional[ThreadingHTTPServer] = None

    @property
    def port(self) -> Optional[int]:
        """Port the webhook server is bound to, once started."""
        return self._server.server_address[1] if self._server else None

    def start(self) -> None:
        """Start the loop thread, initialize the engine, open the HTTP server.

        Raises:
            MirrorError: If the engine cannot initialize. Nothing is left running.
        """
        self._setup_logging()

        self._loop = asyncio.new_event_loop()
        t = threading.Thread(target=self._loop.run_forever, name="mirror-loop", daemon=True)
        t.start()
        self._threads.append(t)

        try:
            self._run(self._start_engine())
        except Exception:
            try:
                self._run(self._close_clients(), timeout=WEBHOOK_TIMEOUT)
            except Exception as exc:
                logger.error("Cleanup after failed start failed: %s", exc)
            self._shutdown_loop()
            raise

        self._start_api_server()
        self.state.running = True
        self.state.started_at = datetime.now(timezone.utc)
        logger.info(
            "Mirror service started: board=%s store=%s port=%s",
            self.config.mirror.board_name,
            self.store.name,
            self.port,
        )

    def stop(self) -> None:
        """Gracefully stop the HTTP server and engine."""
        logger.info("Mirror service stopping...")
        self._stop_event.set()
        self.state.running = False

        if self._server:
            self._server.shutdown()
            self._server.server_close()
            self._server = None

        if self._loop and self._loop.is_running():
            try:
                self._run(self._stop_engine(), timeout=WEBHOOK_TIMEOUT)
            except Exception as exc:
                logger.error("Engine shutdown failed: %s", exc)
        self._shutdown_loop()
        logger.info("Mirror service stopped.")

    def run_forever(self) -> None:
        """Block until stop is signaled."""
        self._setup_signals()
        try:
            while not self._stop_event.is_set():
                self._stop_event.wait(timeout=1)
        except KeyboardInterrupt:
            pass
        finally:
            self.stop()

    def handle_webhook(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Hand a webhook body to the loop thread and wait for the reply."""
        self.state.record_webhook()
        return self._run(self.remote.handle_webhook(payload), timeout=WEBHOOK_TIMEOUT)

    def status(self) -> dict:
        snap = self.state.snapshot()
        snap["board"] = self.config.mirror.board_name
        snap["engine"] = self.engine.stats.model_dump() if self.engine else None
        return snap

    # ------------------------------------------------------------------

    def _run(self, coro: Coroutine[Any, Any, Any], timeout: Optional[float] = None) -> Any:
        return asyncio.run_coroutine_threadsafe(coro, self._loop).result(timeout)

    async def _start_engine(self) -> None:
        if self.store is None:
            self.store = create_store(self.config.redis_url)
        if self.remote is None:
            self.remote = MondayClient(self.config.monday)
        self.engine = MirrorEngine(self.config.mirror, self.remote, self.store)
        await self.engine.initialize()

    async def _stop_engine(self) -> None:
        if self.engine:
            await self.engine.stop()
        await self._close_clients()

    async def _close_clients(self) -> None:
        if self.remote:
            await self.remote.aclose()
        if self.store:
            await self.store.close()

    def _shutdown_loop(self) -> None:
        if self._loop is None:
            return
        self._loop.call_soon_threadsafe(self._loop.stop)
        for t in self._threads:
            t.join(timeout=5)
        self._threads.clear()
        self._loop.close()
        self._loop = None

    def _start_api_server(self) -> None:
        """Start the webhook/status HTTP server in a background thread."""
        service = self

        class MirrorHandler(BaseHTTPRequestHandler):
            """HTTP handler for webhooks and status."""

            def do_GET(self):
                if self.path == "/status":
                    self._json_response(service.status())
                elif self.path == "/ping":
                    self._json_response({"pong": True, "pid": os.getpid()})
                else:
                    self._json_response({"endpoints": ["/webhook", "/status", "/ping"]})

            def do_POST(self):
                if self.path != "/webhook":
                    self._json_response({"error": "not found"}, status=404)
                    return
                try:
                    length = int(self.headers.get("Content-Length", 0))
                    payload = json.loads(self.rfile.read(length) or b"{}")
                except (ValueError, json.JSONDecodeError) as exc:
                    self._json_response({"error": f"bad request: {exc}"}, status=400)
                    return
                if not isinstance(payload, dict):
                    self._json_response({"error": "expected a JSON object"}, status=400)
                    return

                try:
                    self._json_response(service.handle_webhook(payload))
                except Exception as exc:
                    logger.error("Webhook handling failed: %s", exc)
                    service.state.record_error(f"Webhook: {exc}")
                    self._json_response({"error": "internal error"}, status=500)

            def _json_response(self, data: dict, status: int = 200):
                body = json.dumps(data, default=str).encode()
                self.send_response(status)
                self.send_header("Content-Type", "application/json")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def log_message(self, format, *args):
                logger.debug("API: %s", format % args)

        self._server = ThreadingHTTPServer(
            (self.config.webhook_host, self.config.webhook_port), MirrorHandler
        )
        t = threading.Thread(
            target=self._server.serve_forever, name="mirror-api", daemon=True
        )
        t.start()
        self._threads.append(t)
        logger.info(
            "Webhook server listening on http://%s:%d/webhook",
            self.config.webhook_host,
            self.port,
        )

    def _setup_logging(self) -> None:
        """Configure file logging when a log file is configured."""
        if not self.config.log_file:
            return
        log_file = self.config.log_file.expanduser()
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_file)
        handler.setFormatter(
            logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s")
        )
        root = logging.getLogger()
        root.addHandler(handler)
        root.setLevel(logging.INFO)

    def _setup_signals(self) -> None:
        """Register signal handlers for graceful shutdown."""
        if threading.current_thread() is not threading.main_thread():
            return
        for sig in (signal.SIGTERM, signal.SIGINT):
            signal.signal(sig, self._handle_signal)

    def _handle_signal(self, signum, frame):
        logger.info("Received signal %s, stopping", signal.Signals(signum).name)
        self._stop_event.set()


def get_service_status(host: str = "127.0.0.1", port: int = 8787) -> Optional[dict]:
    """Query a running service's status via its HTTP API.

    Returns:
        Status dict from the service, or None if unreachable.
    """
    import urllib.error
    import urllib.request

    try:
        url = f"http://{host}:{port}/status"
        with urllib.request.urlopen(url, timeout=3) as resp:
            return json.loads(resp.read())
    except (urllib.error.URLError, OSError, json.JSONDecodeError):
        return None
