import asyncio
import json
import socket
import threading
from urllib import request
from urllib.error import HTTPError

from pinlink.api.gpio_server import GpioControlServer, _error_to_status, create_transport_from_config
from pinlink.config.schema import Config
from pinlink.gpio.service import GpioService
from pinlink.hardware.adapter import MockTransport, MQTTTransport
from pinlink.hardware.protocol import GpioCommand


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return int(s.getsockname()[1])


def _start_loop_thread() -> tuple[asyncio.AbstractEventLoop, threading.Thread]:
    loop = asyncio.new_event_loop()

    def _runner() -> None:
        asyncio.set_event_loop(loop)
        loop.run_forever()

    thread = threading.Thread(target=_runner, daemon=True)
    thread.start()
    return loop, thread


def _stop_loop_thread(loop: asyncio.AbstractEventLoop, thread: threading.Thread) -> None:
    loop.call_soon_threadsafe(loop.stop)
    thread.join(timeout=2)
    if not loop.is_closed():
        loop.close()


def _request_json(
    url: str,
    method: str = "GET",
    payload: dict | None = None,
    headers: dict[str, str] | None = None,
) -> tuple[int, dict]:
    body = json.dumps(payload).encode("utf-8") if payload is not None else None
    req = request.Request(url, data=body, method=method)
    if body is not None:
        req.add_header("Content-Type", "application/json")
    for k, v in (headers or {}).items():
        req.add_header(k, v)
    try:
        with request.urlopen(req, timeout=5) as resp:
            return int(resp.status), json.loads(resp.read().decode("utf-8"))
    except HTTPError as e:
        return int(e.code), json.loads(e.read().decode("utf-8"))


def _post_json(url: str, payload: dict, headers: dict[str, str] | None = None) -> tuple[int, dict]:
    return _request_json(url, "POST", payload, headers)


def _get_json(url: str, headers: dict[str, str] | None = None) -> tuple[int, dict]:
    return _request_json(url, "GET", None, headers)


def _start_server(transport: MockTransport, **kwargs):  # type: ignore[no-untyped-def]
    loop, thread = _start_loop_thread()
    port = _free_port()
    config = Config()
    config.gpio.command_timeout_ms = 100
    service = GpioService.from_config(config, transport=transport)
    server = GpioControlServer(
        host="127.0.0.1",
        port=port,
        service=service,
        loop=loop,
        **kwargs,
    )
    server.start()
    return server, loop, thread, f"http://127.0.0.1:{port}/api/gpio"


def test_gpio_api_write_read_and_pin_info() -> None:
    transport = MockTransport()
    server, loop, thread, base = _start_server(transport)
    try:
        code, body = _post_json(f"{base}/write", {"pin": 2, "value": 1})
        assert code == 200
        assert body["success"] is True
        assert body["data"] == {"pin": 2, "value": 1, "type": "digital"}

        code, body = _get_json(f"{base}/read/2")
        assert code == 200
        assert body["data"]["value"] == 1

        code, body = _get_json(f"{base}/pin/2?deviceId=esp32-s3-1")
        assert code == 200
        assert body["data"]["currentValue"] == 1
        assert body["data"]["capabilities"]["analog"] is True
        assert len(body["data"]["history"]) == 1

        code, body = _post_json(f"{base}/mode", {"pin": 2, "mode": "output", "pull": "none"})
        assert code == 200
        assert body["data"]["mode"] == "output"

        code, body = _post_json(f"{base}/write", {"pin": 99, "value": 1})
        assert code == 400
        assert body["error_code"] == "invalid"
    finally:
        server.stop()
        _stop_loop_thread(loop, thread)


def test_gpio_api_offline_timeout_and_device_error_codes() -> None:
    transport = MockTransport()
    server, loop, thread, base = _start_server(transport)
    try:
        transport.fail_commands[GpioCommand.WRITE.value] = "pin locked"
        code, body = _post_json(f"{base}/write", {"pin": 3, "value": 1})
        assert code == 502
        assert body["message"] == "pin locked"

        transport.fail_commands.clear()
        transport.drop_commands.add(GpioCommand.MODE.value)
        code, body = _post_json(f"{base}/mode", {"pin": 3, "mode": "output"})
        assert code == 504
        assert body["error_code"] == "timeout"

        transport.set_connected(False)
        code, body = _post_json(f"{base}/write", {"pin": 3, "value": 1})
        assert code == 503
        assert body["error_code"] == "offline"

        code, body = _get_json(f"{base}/read/3")
        assert code == 200
        assert body["data"]["cached"] is True
        assert body["data"]["value"] == 0

        code, body = _get_json(f"{base}/status")
        assert code == 200
        assert body["data"]["online"] is False
    finally:
        server.stop()
        _stop_loop_thread(loop, thread)


def test_gpio_api_groups_rules_and_calculate() -> None:
    transport = MockTransport()
    server, loop, thread, base = _start_server(transport)
    try:
        code, body = _post_json(f"{base}/groups", {"name": "bank", "pins": [1, 2, 3]})
        assert code == 200

        code, body = _post_json(f"{base}/groups/bank/write", {"values": {"1": 10, "3": 20}, "type": "pwm"})
        assert code == 200
        assert [item["pin"] for item in body["data"]] == [1, 3]

        code, body = _post_json(f"{base}/groups/missing/write", {"values": {"1": 1}})
        assert code == 404

        code, body = _get_json(f"{base}/groups")
        assert [g["name"] for g in body["data"]] == ["bank"]

        code, body = _post_json(f"{base}/rules", {"name": "hot", "condition": "t > 30", "action": "fan"})
        assert code == 200
        rule_id = body["data"]["id"]
        assert body["data"]["trigger_count"] == 0

        code, body = _request_json(f"{base}/rules/{rule_id}", "PUT", {"enabled": False})
        assert code == 200
        assert body["data"]["enabled"] is False

        code, body = _request_json(f"{base}/rules/unknown", "PUT", {"enabled": False})
        assert code == 404

        code, body = _post_json(f"{base}/rules/test", {"condition": "a>5", "values": {"a": 10}})
        assert body["data"]["result"] is True

        code, body = _request_json(f"{base}/rules/{rule_id}", "DELETE")
        assert code == 200
        code, body = _request_json(f"{base}/rules/{rule_id}", "DELETE")
        assert code == 404

        code, body = _post_json(f"{base}/calculate", {"pin": 1, "value": 0, "formula": "val +"})
        assert code == 200
        assert body["data"]["voltage"] == 0
        assert body["data"]["distance"] is None
        assert body["data"]["custom"] == "Invalid formula"

        code, body = _get_json(f"{base}/capabilities")
        assert len(body["data"]) == 40

        code, body = _get_json(f"{base}/nope")
        assert code == 404
    finally:
        server.stop()
        _stop_loop_thread(loop, thread)


def test_gpio_api_auth_and_rate_limit() -> None:
    transport = MockTransport()
    server, loop, thread, base = _start_server(
        transport,
        auth_enabled=True,
        auth_token="secret",
        rate_limit_rpm=2,
        rate_limit_burst=0,
    )
    try:
        code, body = _get_json(f"{base}/status")
        assert code == 401

        code, body = _get_json(f"{base}/status", headers={"Authorization": "Bearer secret"})
        assert code == 200

        code, body = _get_json(f"{base}/status", headers={"X-Auth-Token": "secret"})
        assert code == 200

        code, body = _get_json(f"{base}/status", headers={"Authorization": "Bearer secret"})
        assert code == 429
        assert body["retry_after_ms"] > 0
    finally:
        server.stop()
        _stop_loop_thread(loop, thread)


def test_health_and_bad_json() -> None:
    transport = MockTransport()
    server, loop, thread, base = _start_server(transport)
    root = base.rsplit("/api/gpio", 1)[0]
    try:
        code, body = _get_json(f"{root}/health")
        assert code == 200
        assert body["online"] is True

        req = request.Request(f"{base}/write", data=b"{broken", method="POST")
        try:
            request.urlopen(req, timeout=5)
            raise AssertionError("expected HTTP 400")
        except HTTPError as e:
            assert e.code == 400
    finally:
        server.stop()
        _stop_loop_thread(loop, thread)


def test_error_status_mapping_and_transport_factory() -> None:
    assert int(_error_to_status("invalid")) == 400
    assert int(_error_to_status("not_found")) == 404
    assert int(_error_to_status("offline")) == 503
    assert int(_error_to_status("timeout")) == 504
    assert int(_error_to_status("device_error")) == 502
    assert int(_error_to_status("internal")) == 500

    config = Config()
    config.adapter = "mock"
    assert isinstance(create_transport_from_config(config), MockTransport)
    config.adapter = "mqtt"
    assert isinstance(create_transport_from_config(config), MQTTTransport)


def test_calculate_rejects_non_finite_json_and_rule_flag_strings() -> None:
    transport = MockTransport()
    server, loop, thread, base = _start_server(transport)
    try:
        req = request.Request(
            f"{base}/calculate",
            data=b'{"pin": 1, "value": Infinity}',
            method="POST",
        )
        req.add_header("Content-Type", "application/json")
        try:
            request.urlopen(req, timeout=5)
            raise AssertionError("expected HTTP 400")
        except HTTPError as e:
            assert e.code == 400
            body = json.loads(e.read().decode("utf-8"))
            assert body["error_code"] == "invalid"

        code, body = _post_json(f"{base}/rules", {"name": "hot", "condition": "t > 30", "action": "fan"})
        rule_id = body["data"]["id"]
        code, body = _request_json(f"{base}/rules/{rule_id}", "PUT", {"enabled": "false"})
        assert code == 200
        assert body["data"]["enabled"] is False
    finally:
        server.stop()
        _stop_loop_thread(loop, thread)
