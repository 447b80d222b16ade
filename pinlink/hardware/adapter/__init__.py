"""Device transports that carry GPIO commands and correlate replies."""

from pinlink.hardware.adapter.base import GpioTransport
from pinlink.hardware.adapter.mock_adapter import MockTransport
from pinlink.hardware.adapter.mqtt_adapter import MQTTTransport

__all__ = [
    "GpioTransport",
    "MockTransport",
    "MQTTTransport",
]
