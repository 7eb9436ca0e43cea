"""
Cryptographic module for end-to-end encrypted relay chat.

Implements:
- Pairwise session keys from X25519 ECDH
- Sender-Key group ratchet with per-message keys and Ed25519 signatures
- Pairwise distribution of sender-key bundles
"""

from .errors import (
    ChatError,
    CryptoError,
    AuthenticationFailure,
    InvalidSignature,
    InvalidKey,
    NoSenderKeyState,
    UnknownSender,
    StaleOrDuplicateIndex,
    TooManySkippedMessages,
    MalformedEnvelope,
    TransportUnavailable
)
from .identity import IdentityKeyPair, generate_identity, fingerprint
from .session import derive_session_key, encrypt, decrypt, SealedPayload
from .sender_keys import (
    SenderKeyRatchet,
    SenderKeyState,
    SenderKeyBundle,
    SenderKeyStore,
    MemorySenderKeyStore,
    GroupCiphertext
)
from .bundles import seal_bundle, seal_bundle_for_members, open_bundle

__all__ = [
    'ChatError',
    'CryptoError',
    'AuthenticationFailure',
    'InvalidSignature',
    'InvalidKey',
    'NoSenderKeyState',
    'UnknownSender',
    'StaleOrDuplicateIndex',
    'TooManySkippedMessages',
    'MalformedEnvelope',
    'TransportUnavailable',
    'IdentityKeyPair',
    'generate_identity',
    'fingerprint',
    'derive_session_key',
    'encrypt',
    'decrypt',
    'SealedPayload',
    'SenderKeyRatchet',
    'SenderKeyState',
    'SenderKeyBundle',
    'SenderKeyStore',
    'MemorySenderKeyStore',
    'GroupCiphertext',
    'seal_bundle',
    'seal_bundle_for_members',
    'open_bundle'
]
