"""GPIO control HTTP API and transport bootstrap."""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import json
import threading
from concurrent.futures import TimeoutError as FutureTimeoutError
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Awaitable, Callable
from urllib.parse import parse_qs, unquote, urlparse

from loguru import logger

from pinlink import __version__
from pinlink.api.control_security import ClientRateLimiter, extract_token, token_matches
from pinlink.config.schema import Config
from pinlink.gpio.service import GpioService
from pinlink.hardware.adapter import GpioTransport, MockTransport, MQTTTransport

_ERROR_STATUS = {
    "invalid": HTTPStatus.BAD_REQUEST,
    "not_found": HTTPStatus.NOT_FOUND,
    "offline": HTTPStatus.SERVICE_UNAVAILABLE,
    "timeout": HTTPStatus.GATEWAY_TIMEOUT,
    "device_error": HTTPStatus.BAD_GATEWAY,
    "internal": HTTPStatus.INTERNAL_SERVER_ERROR,
}


def _first_query_value(params: dict[str, list[str]], *keys: str) -> str | None:
    for key in keys:
        values = params.get(key, [])
        if values:
            return str(values[0])
    return None


def _query_payload(query: str) -> dict[str, Any]:
    params = parse_qs(query or "")
    payload: dict[str, Any] = {}
    device_id = _first_query_value(params, "deviceId", "device_id")
    if device_id:
        payload["deviceId"] = device_id
    kind = _first_query_value(params, "type")
    if kind:
        payload["type"] = kind
    return payload


class _GpioRequestHandler(BaseHTTPRequestHandler):
    """Synchronous HTTP handler that runs service calls on the asyncio loop."""

    service: GpioService | None = None
    loop: asyncio.AbstractEventLoop | None = None
    base_path: str = "/api/gpio"
    auth_enabled: bool = False
    auth_token: str = ""
    max_request_body_bytes: int = 256 * 1024
    request_timeout_s: float = 10.0
    rate_limiter: ClientRateLimiter | None = None

    server_version = f"pinlink/{__version__}"

    def do_GET(self) -> None:  # noqa: N802
        if not self._ensure_allowed():
            return
        parsed = urlparse(self.path)
        if parsed.path.rstrip("/") == "/health":
            self._send_json(
                HTTPStatus.OK,
                {"success": True, "online": bool(self.service and self.service.online)},
            )
            return
        parts = self._route_parts(parsed.path)
        if parts is None:
            self._send_not_found()
            return
        query = _query_payload(parsed.query)

        if parts == ["status"]:
            self._dispatch(lambda svc: svc.status(query))
            return
        if len(parts) == 2 and parts[0] == "pin":
            self._dispatch(lambda svc: svc.pin_info(parts[1], query))
            return
        if len(parts) == 2 and parts[0] == "read":
            self._dispatch(lambda svc: svc.read(parts[1], query))
            return
        if parts == ["groups"]:
            self._dispatch(lambda svc: svc.list_groups(query))
            return
        if parts == ["rules"]:
            self._dispatch(lambda svc: svc.list_rules(query))
            return
        if parts == ["capabilities"]:
            self._dispatch(lambda svc: svc.capabilities())
            return
        self._send_not_found()

    def do_POST(self) -> None:  # noqa: N802
        if not self._ensure_allowed():
            return
        parsed = urlparse(self.path)
        parts = self._route_parts(parsed.path)
        if parts is None:
            self._send_not_found()
            return
        payload = self._read_json_body()
        if payload is None:
            return
        query = _query_payload(parsed.query)
        body = {**query, **payload}

        if parts == ["mode"]:
            self._dispatch(lambda svc: svc.set_mode(body))
            return
        if parts == ["write"]:
            self._dispatch(lambda svc: svc.write(body))
            return
        if parts == ["groups"]:
            self._dispatch(lambda svc: svc.create_group(body))
            return
        if len(parts) == 3 and parts[0] == "groups" and parts[2] == "write":
            self._dispatch(lambda svc: svc.write_group(parts[1], body))
            return
        if parts == ["rules", "test"]:
            self._dispatch(lambda svc: svc.test_rule(payload))
            return
        if parts == ["rules"]:
            self._dispatch(lambda svc: svc.create_rule(body))
            return
        if parts == ["calculate"]:
            self._dispatch(lambda svc: svc.calculate(payload))
            return
        self._send_not_found()

    def do_PUT(self) -> None:  # noqa: N802
        if not self._ensure_allowed():
            return
        parsed = urlparse(self.path)
        parts = self._route_parts(parsed.path)
        if parts is None or len(parts) != 2 or parts[0] != "rules":
            self._send_not_found()
            return
        payload = self._read_json_body()
        if payload is None:
            return
        query = _query_payload(parsed.query)
        self._dispatch(lambda svc: svc.update_rule(parts[1], payload, query))

    def do_DELETE(self) -> None:  # noqa: N802
        if not self._ensure_allowed():
            return
        parsed = urlparse(self.path)
        parts = self._route_parts(parsed.path)
        if parts is None or len(parts) != 2 or parts[0] != "rules":
            self._send_not_found()
            return
        query = _query_payload(parsed.query)
        self._dispatch(lambda svc: svc.delete_rule(parts[1], query))

    def log_message(self, fmt: str, *args: Any) -> None:
        logger.debug("gpio-api " + fmt % args)

    def _route_parts(self, path: str) -> list[str] | None:
        """Path segments below the base path, or None when outside it."""
        base = [p for p in self.base_path.split("/") if p]
        parts = [unquote(p) for p in path.split("/") if p]
        if parts[: len(base)] != base:
            return None
        return parts[len(base):]

    def _ensure_allowed(self) -> bool:
        return self._ensure_rate_limited() and self._ensure_authorized()

    def _ensure_authorized(self) -> bool:
        if not self.auth_enabled:
            return True
        token = extract_token(self.headers.get("Authorization"), self.headers.get("X-Auth-Token"))
        if token and token_matches(self.auth_token.strip(), token):
            return True
        self._send_json(HTTPStatus.UNAUTHORIZED, {"success": False, "message": "unauthorized"})
        return False

    def _request_identity(self) -> str:
        token = extract_token(self.headers.get("Authorization"), self.headers.get("X-Auth-Token"))
        if token:
            return "token:" + hashlib.sha256(token.encode("utf-8")).hexdigest()[:16]
        if self.client_address:
            return f"ip:{self.client_address[0]}"
        return "unknown"

    def _ensure_rate_limited(self) -> bool:
        limiter = self.rate_limiter
        if limiter is None:
            return True
        decision = limiter.check(self._request_identity())
        if decision.allowed:
            return True
        self._send_json(
            HTTPStatus.TOO_MANY_REQUESTS,
            {
                "success": False,
                "message": "rate limited",
                "retry_after_ms": decision.retry_after_ms,
            },
        )
        return False

    def _read_json_body(self) -> dict[str, Any] | None:
        try:
            length = int(self.headers.get("Content-Length", "0"))
        except ValueError:
            length = 0
        max_body = max(1024, int(self.max_request_body_bytes))
        if length > max_body:
            self._send_json(
                HTTPStatus.REQUEST_ENTITY_TOO_LARGE,
                {"success": False, "message": f"request body too large (max {max_body} bytes)"},
            )
            return None
        body = self.rfile.read(length) if length > 0 else b"{}"
        try:
            payload = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            self._send_json(
                HTTPStatus.BAD_REQUEST,
                {"success": False, "message": "invalid json", "error_code": "invalid"},
            )
            return None
        if not isinstance(payload, dict):
            self._send_json(
                HTTPStatus.BAD_REQUEST,
                {"success": False, "message": "request body must be a JSON object", "error_code": "invalid"},
            )
            return None
        return payload

    @staticmethod
    def _resolve_future_result(
        future: Any,
        *,
        timeout: float,
    ) -> tuple[bool, Any | None, HTTPStatus, str | None]:
        """Resolve a thread-safe asyncio future into (ok, result, http_status, error)."""
        try:
            return True, future.result(timeout=timeout), HTTPStatus.OK, None
        except FutureTimeoutError:
            with contextlib.suppress(Exception):
                future.cancel()
            return False, None, HTTPStatus.GATEWAY_TIMEOUT, "gateway timeout"
        except Exception as e:
            logger.warning(f"gpio-api future failed: {e}")
            return False, None, HTTPStatus.INTERNAL_SERVER_ERROR, "gateway error"

    def _dispatch(self, call: Callable[[GpioService], Awaitable[dict[str, Any]]]) -> None:
        if not self.service or not self.loop:
            self._send_json(HTTPStatus.SERVICE_UNAVAILABLE, {"success": False, "message": "gpio service unavailable"})
            return
        fut = asyncio.run_coroutine_threadsafe(call(self.service), self.loop)
        ok_wait, result, err_code, err_msg = self._resolve_future_result(fut, timeout=self.request_timeout_s)
        if not ok_wait:
            self._send_json(err_code, {"success": False, "message": err_msg})
            return
        status = HTTPStatus.OK if result.get("success") else _error_to_status(result.get("error_code"))
        self._send_json(status, result)

    def _send_not_found(self) -> None:
        self._send_json(HTTPStatus.NOT_FOUND, {"success": False, "message": "unknown endpoint"})

    def _send_json(self, code: HTTPStatus, payload: dict[str, Any]) -> None:
        body = json.dumps(payload, ensure_ascii=False, default=str).encode("utf-8")
        self.send_response(code)
        self.send_header("Content-Type", "application/json; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)


class GpioControlServer:
    """Threaded HTTP endpoint that serves the GPIO routes."""

    def __init__(
        self,
        *,
        host: str,
        port: int,
        service: GpioService,
        loop: asyncio.AbstractEventLoop,
        base_path: str = "/api/gpio",
        max_request_body_bytes: int = 256 * 1024,
        auth_enabled: bool = False,
        auth_token: str = "",
        rate_limit_enabled: bool = True,
        rate_limit_rpm: int = 600,
        rate_limit_burst: int = 120,
        request_timeout_s: float | None = None,
    ) -> None:
        self.host = host
        self.port = port
        self.service = service
        self.loop = loop
        self.base_path = "/" + str(base_path or "").strip("/")
        self.max_request_body_bytes = max(1024, int(max_request_body_bytes))
        self.auth_enabled = bool(auth_enabled)
        self.auth_token = auth_token
        self.rate_limit_enabled = bool(rate_limit_enabled)
        self.rate_limit_rpm = max(1, int(rate_limit_rpm))
        self.rate_limit_burst = max(0, int(rate_limit_burst))
        if request_timeout_s is None:
            # Leave headroom over the gateway's own command deadline.
            request_timeout_s = service.gateway.command_timeout_ms / 1000 + 5
        self.request_timeout_s = float(request_timeout_s)
        self._thread: threading.Thread | None = None
        self._server: ThreadingHTTPServer | None = None

    @classmethod
    def from_config(
        cls,
        config: Config,
        *,
        service: GpioService,
        loop: asyncio.AbstractEventLoop,
    ) -> "GpioControlServer":
        control = config.control
        return cls(
            host=control.host,
            port=control.port,
            service=service,
            loop=loop,
            base_path=control.base_path,
            max_request_body_bytes=control.max_body_bytes,
            auth_enabled=control.auth_enabled,
            auth_token=control.auth_token,
            rate_limit_enabled=control.rate_limit_enabled,
            rate_limit_rpm=control.rate_limit_rpm,
            rate_limit_burst=control.rate_limit_burst,
        )

    def start(self) -> None:
        handler_cls = type("BoundGpioRequestHandler", (_GpioRequestHandler,), {})
        handler_cls.service = self.service
        handler_cls.loop = self.loop
        handler_cls.base_path = self.base_path
        handler_cls.auth_enabled = self.auth_enabled
        handler_cls.auth_token = self.auth_token
        handler_cls.max_request_body_bytes = self.max_request_body_bytes
        handler_cls.request_timeout_s = self.request_timeout_s
        handler_cls.rate_limiter = (
            ClientRateLimiter(
                requests_per_minute=self.rate_limit_rpm,
                burst=self.rate_limit_burst,
            )
            if self.rate_limit_enabled
            else None
        )
        self._server = ThreadingHTTPServer((self.host, self.port), handler_cls)
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()
        logger.info(f"GPIO control API listening on http://{self.host}:{self.port}{self.base_path}")

    def stop(self) -> None:
        if self._server:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=2)
        self._thread = None


def create_transport_from_config(config: Config) -> GpioTransport:
    """Factory helper to build the selected device transport."""
    adapter_name = (config.adapter or "mqtt").lower()
    if adapter_name == "mock":
        return MockTransport()
    if adapter_name == "mqtt":
        return MQTTTransport(config.mqtt)
    raise ValueError(f"unknown adapter: {config.adapter}")


def _error_to_status(error_code: Any) -> HTTPStatus:
    return _ERROR_STATUS.get(str(error_code or ""), HTTPStatus.BAD_REQUEST)
