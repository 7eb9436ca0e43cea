"""
WebSocket connection from a client to the relay.
"""

import logging
from typing import AsyncIterator

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from crypto.errors import MalformedEnvelope, TransportUnavailable
from relay.envelopes import RegisterEnvelope, encode_envelope, parse_envelope

logger = logging.getLogger(__name__)


class RelayConnection:
    """
    One relay connection registered under our public key.

    send() is fire-and-forget: the relay gives no delivery receipt and drops
    frames for offline recipients.
    """

    def __init__(self, url: str, public_key: str):
        self.url = url
        self.public_key = public_key
        self.websocket = None

    @property
    def is_open(self) -> bool:
        return self.websocket is not None

    async def connect(self):
        """Open the socket and register our public key"""
        try:
            self.websocket = await websockets.connect(self.url)
        except (OSError, InvalidHandshake) as e:
            raise TransportUnavailable(f"Cannot reach relay at {self.url}: {e}") from e
        logger.info("Connected to %s", self.url)
        await self.send(RegisterEnvelope(public_key=self.public_key))

    async def send(self, envelope):
        """
        Send one envelope.

        Raises:
            TransportUnavailable: No open connection; the envelope is lost
        """
        if self.websocket is None:
            raise TransportUnavailable("Not connected to relay")
        try:
            await self.websocket.send(encode_envelope(envelope))
        except ConnectionClosed as e:
            self.websocket = None
            raise TransportUnavailable("Relay connection closed") from e

    async def frames(self) -> AsyncIterator:
        """Yield inbound envelopes until the connection closes; malformed frames are dropped"""
        if self.websocket is None:
            raise TransportUnavailable("Not connected to relay")
        try:
            async for raw in self.websocket:
                try:
                    yield parse_envelope(raw)
                except MalformedEnvelope as e:
                    logger.warning("Dropping malformed frame from relay: %s", e)
        except ConnectionClosed:
            logger.info("Relay connection closed")
        finally:
            self.websocket = None

    async def close(self):
        websocket, self.websocket = self.websocket, None
        if websocket is not None:
            await websocket.close()

    async def __aenter__(self) -> 'RelayConnection':
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()
