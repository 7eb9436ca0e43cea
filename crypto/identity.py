"""
Long-term identity keys.

An identity is a single X25519 key pair. Its public key (URL-safe base64)
is the address the relay routes on and the name group members are known by.
"""

import hashlib
from dataclasses import dataclass

from .primitives import (
    b64decode,
    b64encode,
    generate_dh_keypair,
    load_dh_private_key,
    public_key_bytes,
)


@dataclass(frozen=True)
class IdentityKeyPair:
    """
    X25519 identity key pair.

    Attributes:
        public_key: Raw 32-byte public key
        secret_key: Raw 32-byte secret key; only held while unlocked
    """
    public_key: bytes
    secret_key: bytes

    @property
    def public_key_b64(self) -> str:
        return b64encode(self.public_key)

    @classmethod
    def from_secret_key(cls, secret_key: bytes) -> 'IdentityKeyPair':
        """Rebuild the pair from a stored secret key"""
        private_key = load_dh_private_key(secret_key)
        return cls(public_key=public_key_bytes(private_key.public_key()), secret_key=secret_key)

    def __repr__(self) -> str:
        return f"IdentityKeyPair(public_key={self.public_key_b64!r})"


def generate_identity() -> IdentityKeyPair:
    """Generate a fresh identity key pair"""
    private_key, public_key = generate_dh_keypair()
    return IdentityKeyPair(
        public_key=public_key_bytes(public_key),
        secret_key=private_key.private_bytes_raw()
    )


def fingerprint(public_key) -> str:
    """
    Compute a short, human-checkable safety code for a public key.

    Args:
        public_key: Raw public key bytes or its base64 form

    Returns:
        e.g. "A3F9-1C0D-72B4-9E11"
    """
    if isinstance(public_key, str):
        public_key = b64decode(public_key)
    digest = hashlib.sha256(public_key).hexdigest()[:16].upper()
    return "-".join(digest[i:i + 4] for i in range(0, 16, 4))
