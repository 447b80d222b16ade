"""Wire envelopes used between the gateway and device transports."""

from pinlink.hardware.protocol.envelope import (
    CommandEnvelope,
    CommandReply,
    GpioCommand,
    new_message_id,
)

__all__ = [
    "CommandEnvelope",
    "CommandReply",
    "GpioCommand",
    "new_message_id",
]
