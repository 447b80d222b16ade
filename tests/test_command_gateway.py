import asyncio

import pytest

from pinlink.gpio.errors import ValidationError
from pinlink.gpio.gateway import CommandGateway, CommandStatus, coerce_write_value
from pinlink.gpio.state import PinStateCache
from pinlink.hardware.adapter.mock_adapter import MockTransport
from pinlink.hardware.protocol import GpioCommand


def make_gateway(*, timeout_ms: int = 200, **kwargs):  # type: ignore[no-untyped-def]
    transport = MockTransport(**kwargs)
    cache = PinStateCache()
    gateway = CommandGateway(
        transport,
        cache,
        command_timeout_ms=timeout_ms,
        reset_timeout_ms=timeout_ms,
    )
    return gateway, transport, cache


def test_coerce_write_value() -> None:
    assert coerce_write_value(True, "digital") == 1
    assert coerce_write_value(0, "digital") == 0
    assert coerce_write_value(200, "digital") == 1
    assert coerce_write_value(128, "pwm") == 128
    assert coerce_write_value(True, "dac") == 1
    with pytest.raises(ValidationError):
        coerce_write_value(256, "pwm")
    with pytest.raises(ValidationError):
        coerce_write_value("high", "dac")


@pytest.mark.asyncio
async def test_offline_write_sends_nothing_and_leaves_cache() -> None:
    gateway, transport, cache = make_gateway(connected=False)
    result = await gateway.write("dev-a", 2, 1)
    assert result.status == CommandStatus.OFFLINE
    assert result.error_code == "offline"
    assert result.to_dict()["success"] is False
    assert transport.sent == []
    assert cache.history("dev-a", 2) == []


@pytest.mark.asyncio
async def test_write_through_on_ack() -> None:
    gateway, transport, cache = make_gateway()
    result = await gateway.write("dev-a", 2, True)
    assert result.ok
    assert result.data == {"pin": 2, "value": 1, "type": "digital"}
    assert result.message == "Pin 2 set to 1"
    sent = transport.commands(GpioCommand.WRITE)
    assert len(sent) == 1
    assert sent[0].payload == {"pin": 2, "value": 1, "type": "digital"}
    history = cache.history("dev-a", 2)
    assert [entry.value for entry in history] == [1]
    assert history[0].type == "digital"
    assert cache.value("dev-a", 2) == 1


@pytest.mark.asyncio
async def test_pwm_write_keeps_level() -> None:
    gateway, _, cache = make_gateway()
    result = await gateway.write("dev-a", 5, 128, "pwm")
    assert result.ok
    assert cache.value("dev-a", 5) == 128
    with pytest.raises(ValidationError):
        await gateway.write("dev-a", 5, 1, "servo")


@pytest.mark.asyncio
async def test_timeout_is_distinct_from_offline_and_late_reply_is_discarded() -> None:
    gateway, transport, cache = make_gateway(timeout_ms=50)
    transport.drop_commands.add(GpioCommand.WRITE.value)

    result = await gateway.write("dev-a", 3, 1)
    assert result.status == CommandStatus.TIMED_OUT
    assert result.error_code == "timeout"
    assert "50ms" in result.message
    assert transport.pending_count() == 0

    late = transport.deliver_reply(
        {"messageId": transport.sent[0].message_id, "success": True, "pin": 3, "value": 1}
    )
    assert late is False
    assert transport.late_replies == 1
    assert cache.value("dev-a", 3) == 0
    assert cache.history("dev-a", 3) == []


@pytest.mark.asyncio
async def test_device_error_reply() -> None:
    gateway, transport, cache = make_gateway()
    transport.fail_commands[GpioCommand.WRITE.value] = "pin locked"
    result = await gateway.write("dev-a", 4, 1)
    assert result.status == CommandStatus.DEVICE_ERROR
    assert result.message == "pin locked"
    assert result.error_code == "device_error"
    assert cache.history("dev-a", 4) == []


@pytest.mark.asyncio
async def test_read_offline_returns_cached_value() -> None:
    gateway, transport, cache = make_gateway()
    await gateway.write("dev-a", 7, 1)
    transport.set_connected(False)

    result = await gateway.read("dev-a", 7)
    assert result.ok
    assert result.cached is True
    assert result.data["cached"] is True
    assert result.data["value"] == 1

    missing = await gateway.read("dev-a", 8)
    assert missing.data["value"] == 0
    assert len(transport.commands(GpioCommand.READ)) == 0


@pytest.mark.asyncio
async def test_read_timeout_falls_back_to_cache() -> None:
    gateway, transport, cache = make_gateway(timeout_ms=30)
    cache.update_value("dev-a", 1, 55)
    transport.drop_commands.add(GpioCommand.READ.value)
    result = await gateway.read("dev-a", 1, "analog")
    assert result.cached is True
    assert result.data["value"] == 55


@pytest.mark.asyncio
async def test_read_online_refreshes_value_without_history() -> None:
    gateway, transport, cache = make_gateway()
    transport.pin_values[("dev-a", 6)] = 3000
    result = await gateway.read("dev-a", 6, "analog")
    assert result.ok
    assert result.cached is False
    assert result.data["value"] == 3000
    assert result.data["raw"] == 3000
    assert cache.value("dev-a", 6) == 3000
    assert cache.history("dev-a", 6) == []


@pytest.mark.asyncio
async def test_auto_reset_runs_without_blocking_caller() -> None:
    gateway, transport, cache = make_gateway()
    result = await gateway.write("dev-a", 2, 1, duration_ms=50)

    assert result.ok
    assert result.data["duration"] == 50
    assert cache.value("dev-a", 2) == 1
    handle = gateway.scheduler.get("dev-a", 2)
    assert handle is not None
    assert handle.due_at_ms == handle.created_at_ms + 50

    await asyncio.sleep(0.2)
    assert cache.value("dev-a", 2) == 0
    writes = transport.commands(GpioCommand.WRITE)
    assert [env.payload["value"] for env in writes] == [1, 0]
    assert writes[0].payload["duration"] == 50
    assert [entry.value for entry in cache.history("dev-a", 2)] == [1, 0]
    assert gateway.scheduler.pending_count() == 0


@pytest.mark.asyncio
async def test_newer_write_cancels_stale_reset() -> None:
    gateway, transport, cache = make_gateway()
    await gateway.write("dev-a", 2, 1, duration_ms=50)
    await gateway.write("dev-a", 2, 1)
    assert gateway.scheduler.get("dev-a", 2) is None

    await asyncio.sleep(0.15)
    assert cache.value("dev-a", 2) == 1
    assert len(transport.commands(GpioCommand.WRITE)) == 2


@pytest.mark.asyncio
async def test_failed_reset_is_only_logged() -> None:
    gateway, transport, cache = make_gateway()
    await gateway.write("dev-a", 2, 1, duration_ms=30)
    transport.fail_commands[GpioCommand.WRITE.value] = "brownout"

    await asyncio.sleep(0.15)
    assert cache.value("dev-a", 2) == 1
    assert len(transport.commands(GpioCommand.WRITE)) == 2


@pytest.mark.asyncio
async def test_concurrent_writes_to_one_pin_serialize() -> None:
    gateway, transport, cache = make_gateway(reply_delay_s=0.01)
    results = await asyncio.gather(
        gateway.write("dev-a", 9, 10, "pwm"),
        gateway.write("dev-a", 9, 20, "pwm"),
        gateway.write("dev-a", 9, 30, "pwm"),
    )
    assert all(r.ok for r in results)
    history = cache.history("dev-a", 9)
    assert len(history) == 3
    assert cache.value("dev-a", 9) == history[-1].value
    assert transport.pin_values[("dev-a", 9)] == history[-1].value


@pytest.mark.asyncio
async def test_set_mode_updates_config_only_after_ack() -> None:
    gateway, transport, cache = make_gateway()
    result = await gateway.set_mode("dev-a", 12, "output", "down")
    assert result.ok
    assert result.message == "Pin 12 configured as output"
    config = cache.get("dev-a", 12).config
    assert config.mode == "output"
    assert config.pull == "down"

    transport.set_connected(False)
    offline = await gateway.set_mode("dev-a", 12, "input")
    assert offline.status == CommandStatus.OFFLINE
    assert cache.get("dev-a", 12).config.mode == "output"

    with pytest.raises(ValidationError):
        await gateway.set_mode("dev-a", 12, "analog_in")


@pytest.mark.asyncio
async def test_status_online_and_offline() -> None:
    gateway, transport, cache = make_gateway()
    await gateway.write("dev-a", 1, 1)
    online = await gateway.status("dev-a")
    assert online.data["online"] is True
    assert online.data["pins"] == [{"pin": 1, "value": 1, "mode": "input"}]
    assert len(cache.history("dev-a", 1)) == 2

    transport.set_connected(False)
    offline = await gateway.status("dev-a")
    assert offline.ok
    assert offline.cached is True
    assert offline.data["online"] is False
    assert offline.data["pins"][0]["pin"] == 1
    assert offline.data["pins"][0]["value"] == 1


@pytest.mark.asyncio
async def test_shutdown_cancels_pending_resets() -> None:
    gateway, transport, cache = make_gateway()
    await gateway.write("dev-a", 2, 1, duration_ms=1000)
    await gateway.shutdown()
    assert gateway.scheduler.pending_count() == 0
    assert cache.value("dev-a", 2) == 1


@pytest.mark.asyncio
async def test_pin_slots_are_released_after_use() -> None:
    gateway, transport, cache = make_gateway()
    for n in range(50):
        await gateway.write(f"dev-{n}", 2, 1)
        await gateway.set_mode(f"dev-{n}", 3, "output")
    assert gateway.active_pin_slots == 0

    transport.set_connected(False)
    await gateway.write("dev-x", 2, 1)
    assert gateway.active_pin_slots == 0

    transport.set_connected(True)
    await gateway.write("dev-a", 2, 1, duration_ms=40)
    assert gateway.active_pin_slots == 1

    await asyncio.sleep(0.15)
    assert cache.value("dev-a", 2) == 0
    assert gateway.active_pin_slots == 0
