"""
Pairwise session layer.

Two identities derive the same static symmetric key from their own secret
key and the other's public key. No handshake and no prior relationship is
needed, which is what lets group bundles reach members who are not
contacts.
"""

from dataclasses import dataclass

from .primitives import (
    decrypt_message,
    dh_exchange,
    encrypt_message,
    hkdf_sha256,
    load_dh_private_key,
    load_dh_public_key,
)


SESSION_KEY_INFO = b"sealed-relay/pairwise-session"


@dataclass(frozen=True)
class SealedPayload:
    """Ciphertext and the random nonce it was sealed with"""
    ciphertext: bytes
    nonce: bytes


def derive_session_key(my_secret: bytes, their_public: bytes) -> bytes:
    """
    Derive the pairwise session key.

    derive_session_key(a, B) == derive_session_key(b, A) for any two
    identity pairs (a, A) and (b, B).

    Args:
        my_secret: Our raw X25519 secret key
        their_public: Their raw X25519 public key

    Returns:
        32-byte shared key
    """
    shared_secret = dh_exchange(load_dh_private_key(my_secret), load_dh_public_key(their_public))
    return hkdf_sha256(shared_secret, SESSION_KEY_INFO)


def encrypt(shared_key: bytes, plaintext: bytes) -> SealedPayload:
    """Seal plaintext under the session key with a fresh nonce"""
    ciphertext, nonce = encrypt_message(shared_key, plaintext)
    return SealedPayload(ciphertext=ciphertext, nonce=nonce)


def decrypt(shared_key: bytes, nonce: bytes, ciphertext: bytes) -> bytes:
    """
    Open a payload sealed with encrypt().

    Raises:
        AuthenticationFailure: If the tag does not verify or the nonce has the wrong size
    """
    return decrypt_message(shared_key, nonce, ciphertext)
