"""
Envelope routing.

The router never decrypts or validates ciphertext. It parses each frame
once to learn its type and recipients, then forwards the original frame
text verbatim to every live connection of every recipient. Frames for
offline keys are dropped; nothing is queued.
"""

import logging
from typing import List

from crypto.errors import MalformedEnvelope
from .envelopes import (
    GroupEventEnvelope,
    GroupMessageEnvelope,
    MessageEnvelope,
    PingEnvelope,
    PongEnvelope,
    RegisterEnvelope,
    SenderKeyEnvelope,
    encode_envelope,
    parse_envelope,
)
from .registry import Connection, ConnectionRegistry

logger = logging.getLogger(__name__)


class Router:
    """Dispatches frames received on one connection"""

    def __init__(self, registry: ConnectionRegistry):
        self.registry = registry
        self._handlers = {
            RegisterEnvelope: self._handle_register,
            MessageEnvelope: self._handle_routed,
            GroupEventEnvelope: self._handle_routed,
            SenderKeyEnvelope: self._handle_routed,
            GroupMessageEnvelope: self._handle_routed,
            PingEnvelope: self._handle_ping,
            PongEnvelope: self._handle_pong,
        }

    async def handle_frame(self, connection: Connection, raw: str) -> int:
        """
        Handle one inbound frame.

        Returns:
            Number of connections the frame was delivered to
        """
        try:
            envelope = parse_envelope(raw)
        except MalformedEnvelope as e:
            logger.warning("Dropping malformed frame from %r: %s", connection, e)
            return 0

        handler = self._handlers[type(envelope)]
        return await handler(connection, envelope, raw)

    async def _handle_register(self, connection: Connection, envelope: RegisterEnvelope, raw: str) -> int:
        self.registry.register(envelope.public_key, connection)
        return 0

    async def _handle_ping(self, connection: Connection, envelope: PingEnvelope, raw: str) -> int:
        await connection.send_text(encode_envelope(PongEnvelope()))
        return 1

    async def _handle_pong(self, connection: Connection, envelope: PongEnvelope, raw: str) -> int:
        return 0

    async def _handle_routed(self, connection: Connection, envelope, raw: str) -> int:
        delivered = 0
        for recipient in envelope.recipients():
            delivered += await self.forward(recipient, raw)

        if delivered:
            logger.info(
                "Forwarded %s %s... -> %d connection(s)",
                envelope.type, envelope.from_[:16], delivered
            )
        return delivered

    async def forward(self, public_key: str, raw: str) -> int:
        """
        Send a frame to every live connection of a key.

        A connection whose send fails is deregistered.
        """
        connections = self.registry.connections_for(public_key)
        if not connections:
            logger.info("Recipient offline for %s..., frame dropped", public_key[:16])
            return 0

        delivered = 0
        failed: List[Connection] = []
        for target in connections:
            try:
                await target.send_text(raw)
                delivered += 1
            except Exception as e:
                logger.warning("Send to %r failed: %s", target, e)
                failed.append(target)

        for target in failed:
            self.registry.unregister(target)
        return delivered
