"""
Relay: wire envelopes and the in-memory connection router.
"""

from .envelopes import (
    Envelope,
    RegisterEnvelope,
    MessageEnvelope,
    GroupEvent,
    GroupEventEnvelope,
    SenderKeyEnvelope,
    GroupPacket,
    GroupMessageEnvelope,
    PingEnvelope,
    PongEnvelope,
    parse_envelope,
    encode_envelope
)
from .registry import Connection, ConnectionRegistry
from .router import Router

__all__ = [
    'Envelope',
    'RegisterEnvelope',
    'MessageEnvelope',
    'GroupEvent',
    'GroupEventEnvelope',
    'SenderKeyEnvelope',
    'GroupPacket',
    'GroupMessageEnvelope',
    'PingEnvelope',
    'PongEnvelope',
    'parse_envelope',
    'encode_envelope',
    'Connection',
    'ConnectionRegistry',
    'Router'
]
