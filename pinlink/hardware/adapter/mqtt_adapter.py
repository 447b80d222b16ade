"""MQTT transport for GPIO devices."""

from __future__ import annotations

import asyncio
import json
import ssl
import uuid
from typing import Any

from loguru import logger

from pinlink.config.schema import MQTTConfig
from pinlink.gpio.errors import DeviceError, OfflineError
from pinlink.hardware.adapter.base import GpioTransport
from pinlink.hardware.protocol import CommandEnvelope, CommandReply
from pinlink.utils.helpers import now_ms


def _rc_to_int(rc: Any) -> int:
    if rc is None:
        return -1
    try:
        return int(getattr(rc, "value", rc))
    except (TypeError, ValueError):
        return -1


class MQTTTransport(GpioTransport):
    """Publishes commands to `device/{device_id}/command/{command}` and
    correlates replies from the response topic by `messageId`.

    paho runs its network loop on its own thread; every callback hands work
    back to the asyncio loop with `call_soon_threadsafe`.
    """

    name = "mqtt"
    transport = "mqtt"

    def __init__(self, config: MQTTConfig) -> None:
        super().__init__()
        self.config = config
        self._running = False
        self._connected = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._mqtt_client: Any | None = None
        self._last_seen_ms: dict[str, int] = {}
        self._device_status: dict[str, dict[str, Any]] = {}

    @property
    def connected(self) -> bool:
        return self._connected

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._loop = asyncio.get_running_loop()
        self._setup_client()
        if self._mqtt_client is None:
            raise RuntimeError("MQTT client is not available")
        logger.info(f"Connecting to MQTT broker {self.config.host}:{self.config.port}")
        self._mqtt_client.connect_async(
            host=self.config.host,
            port=self.config.port,
            keepalive=max(10, self.config.keepalive_seconds),
        )
        self._mqtt_client.loop_start()

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._mqtt_client is not None:
            try:
                self._mqtt_client.disconnect()
            except Exception as e:
                logger.debug(f"MQTT disconnect raised: {e}")
            try:
                self._mqtt_client.loop_stop()
            except Exception as e:
                logger.debug(f"MQTT loop_stop raised: {e}")
            self._mqtt_client = None
        self._connected = False
        self._fail_pending(OfflineError("MQTT transport stopped"))

    async def _send(self, envelope: CommandEnvelope) -> None:
        if self._mqtt_client is None:
            raise OfflineError("MQTT client is not initialized")
        topic = self.render_command_topic(envelope.device_id, envelope.command)
        payload = json.dumps(envelope.to_dict(), ensure_ascii=False)
        result = self._mqtt_client.publish(topic, payload=payload, qos=self.config.qos)
        if result.rc != 0:
            logger.warning(f"MQTT publish failed rc={result.rc} topic={topic}")
            raise DeviceError(f"MQTT publish failed rc={result.rc}")
        logger.info(f"Published to {topic}: {envelope.command}")

    def device_last_seen(self, device_id: str) -> int | None:
        return self._last_seen_ms.get(device_id)

    def device_status(self, device_id: str) -> dict[str, Any] | None:
        status = self._device_status.get(device_id)
        return dict(status) if status else None

    def render_command_topic(self, device_id: str, command: str) -> str:
        return self.config.command_topic_template.replace("{device_id}", device_id).replace(
            "{command}", command
        )

    def _setup_client(self) -> None:
        try:
            import paho.mqtt.client as mqtt
        except ImportError as e:
            raise RuntimeError(
                f"paho-mqtt is required for {self.__class__.__name__}. Install with `pip install paho-mqtt`."
            ) from e

        client_id = self.config.client_id or f"dashboard_{uuid.uuid4().hex[:8]}"
        callback_api = getattr(mqtt, "CallbackAPIVersion", None)
        if callback_api is not None:
            client = mqtt.Client(callback_api.VERSION2, client_id=client_id, clean_session=True)
        else:
            client = mqtt.Client(client_id=client_id, clean_session=True)
        if self.config.username:
            client.username_pw_set(
                username=self.config.username,
                password=self.config.password or None,
            )
        if self.config.tls_enabled:
            client.tls_set(cert_reqs=ssl.CERT_REQUIRED, tls_version=ssl.PROTOCOL_TLS_CLIENT)

        client.reconnect_delay_set(
            min_delay=max(1, self.config.reconnect_min_seconds),
            max_delay=max(self.config.reconnect_min_seconds, self.config.reconnect_max_seconds),
        )
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        self._mqtt_client = client

    def _on_connect(
        self,
        client: Any,
        userdata: Any,
        flags: Any,
        rc: Any,
        properties: Any | None = None,
    ) -> None:
        del userdata, flags, properties
        rc_int = _rc_to_int(rc)
        self._connected = rc_int == 0
        if rc_int != 0:
            logger.warning(f"MQTT connect failed rc={rc_int}")
            return
        logger.info(f"MQTT connected to {self.config.host}:{self.config.port}")
        client.subscribe(self.config.response_topic, qos=self.config.qos)
        if self.config.status_topic:
            client.subscribe(self.config.status_topic, qos=self.config.qos)

    def _on_disconnect(
        self,
        client: Any,
        userdata: Any,
        *args: Any,
    ) -> None:
        del client, userdata
        # paho v1: (rc), paho v2: (disconnect_flags, reason_code, properties)
        rc = args[0] if len(args) == 1 else (args[1] if len(args) >= 2 else None)
        rc_int = _rc_to_int(rc)
        self._connected = False
        if self._running:
            logger.warning(f"MQTT disconnected rc={rc_int}")
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(
                self._fail_pending,
                OfflineError("MQTT connection closed"),
            )

    def _on_message(self, client: Any, userdata: Any, msg: Any) -> None:
        del client, userdata
        if not self._loop or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._handle_message, msg.topic, msg.payload)

    def _handle_message(self, topic: str, payload: bytes) -> None:
        device_id = self._extract_device_id(topic)
        try:
            data = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            logger.warning(f"MQTT message on {topic} is not JSON, ignored")
            return
        if not isinstance(data, dict):
            logger.warning(f"MQTT message on {topic} is not an object, ignored")
            return
        if device_id:
            self._last_seen_ms[device_id] = now_ms()
        if self.config.status_topic and self._topic_matches(self.config.status_topic, topic):
            if device_id:
                self._device_status[device_id] = data
            return
        reply = CommandReply.from_dict(data, default_device_id=device_id or "")
        self._resolve_reply(reply)

    def _extract_device_id(self, topic: str) -> str | None:
        for pattern in (self.config.response_topic, self.config.status_topic):
            if not pattern or not self._topic_matches(pattern, topic):
                continue
            pattern_parts = pattern.split("/")
            topic_parts = topic.split("/")
            for i, token in enumerate(pattern_parts):
                if token == "+" and i < len(topic_parts):
                    return topic_parts[i]
        parts = [x for x in topic.split("/") if x]
        if len(parts) >= 2 and parts[0].lower() == "device":
            return parts[1]
        return None

    @staticmethod
    def _topic_matches(pattern: str, topic: str) -> bool:
        pattern_parts = pattern.split("/")
        topic_parts = topic.split("/")

        for i, token in enumerate(pattern_parts):
            if token == "#":
                return i == len(pattern_parts) - 1
            if i >= len(topic_parts):
                return False
            if token == "+":
                continue
            if token != topic_parts[i]:
                return False
        return len(topic_parts) == len(pattern_parts)
