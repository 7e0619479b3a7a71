from __future__ import annotations

from dataclasses import dataclass, field
import json
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
import threading
from typing import Any, Callable
from urllib.parse import parse_qs, urlsplit


@dataclass
class ControlBridge:
    _lock: threading.Lock = field(default_factory=threading.Lock)
    abort_requested: bool = False
    abort_requested_reason: str = ""
    health_payload: dict[str, Any] = field(default_factory=dict)
    report_payload: dict[str, Any] = field(default_factory=dict)

    def request_abort(self, reason: str = "") -> None:
        with self._lock:
            self.abort_requested = True
            self.abort_requested_reason = reason.strip() or "api_abort"

    def consume_abort(self) -> bool:
        with self._lock:
            return bool(self.abort_requested)

    def abort_reason(self) -> str:
        with self._lock:
            return self.abort_requested_reason

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "abort_requested": bool(self.abort_requested),
                "abort_reason": self.abort_requested_reason,
            }

    def update_health(self, payload: dict[str, Any]) -> None:
        with self._lock:
            self.health_payload = dict(payload)

    def update_report(self, payload: dict[str, Any]) -> None:
        with self._lock:
            self.report_payload = dict(payload)

    def get_health(self) -> dict[str, Any]:
        with self._lock:
            return dict(self.health_payload)

    def get_report(self) -> dict[str, Any]:
        with self._lock:
            return dict(self.report_payload)


def _read_json_body(handler: BaseHTTPRequestHandler) -> dict[str, Any]:
    length = int(handler.headers.get("Content-Length", "0") or 0)
    if length <= 0:
        return {}
    raw = handler.rfile.read(length)
    try:
        data = json.loads(raw.decode("utf-8"))
    except Exception:  # noqa: BLE001
        return {}
    return data if isinstance(data, dict) else {}


def _handler_factory(bridge: ControlBridge, events_fn: Callable[[int], list[dict[str, Any]]] | None = None):
    class Handler(BaseHTTPRequestHandler):
        def _send(self, code: int, payload: dict[str, Any]) -> None:
            body = json.dumps(payload, ensure_ascii=True, default=str).encode("utf-8")
            self.send_response(code)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def do_GET(self) -> None:  # noqa: N802
            parts = urlsplit(self.path)
            if parts.path == "/events" and events_fn is not None:
                try:
                    limit = int(parse_qs(parts.query).get("limit", ["20"])[0])
                except ValueError:
                    self._send(400, {"error": "bad_limit"})
                    return
                self._send(200, {"events": events_fn(max(0, min(limit, 500)))})
                return
            if self.path == "/health":
                self._send(200, bridge.get_health())
                return
            if self.path == "/report/latest":
                report = bridge.get_report()
                if not report:
                    self._send(404, {"error": "no_report_yet"})
                    return
                self._send(200, report)
                return
            self._send(404, {"error": "not_found"})

        def do_POST(self) -> None:  # noqa: N802
            if self.path == "/control/abort":
                payload = _read_json_body(self)
                reason = str(payload.get("reason", "api_abort"))
                bridge.request_abort(reason)
                self._send(200, {"ok": True, "action": "abort", "reason": reason})
                return
            self._send(404, {"error": "not_found"})

        def log_message(self, format: str, *args: Any) -> None:
            _ = format
            _ = args
            return

    return Handler


def start_api_server(
    bridge: ControlBridge,
    *,
    host: str = "127.0.0.1",
    port: int = 8797,
    events_fn: Callable[[int], list[dict[str, Any]]] | None = None,
) -> tuple[ThreadingHTTPServer, threading.Thread]:
    server = ThreadingHTTPServer((host, port), _handler_factory(bridge, events_fn))
    thread = threading.Thread(target=server.serve_forever, name="control-api", daemon=True)
    thread.start()
    return server, thread
