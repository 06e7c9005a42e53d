"""Wire protocol for the plugin/host command transport.

Key concepts:
- Envelope: one JSON text frame carrying type, payload and correlation id
- Request: any envelope a peer sends expecting a reply
- Reply: type "response", same id as the request, final status
- Notification: a request whose sender does not wait for the reply
"""

from .envelope import (
    RESPONSE_TYPE,
    STARTUP_TYPE,
    CommandEnvelope,
    EnvelopeStatus,
    decode,
    encode,
    new_envelope_id,
)

__all__ = [
    "RESPONSE_TYPE",
    "STARTUP_TYPE",
    "CommandEnvelope",
    "EnvelopeStatus",
    "decode",
    "encode",
    "new_envelope_id",
]
