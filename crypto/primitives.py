"""
Cryptographic Primitives for End-to-End Encryption

This module provides the foundational, stateless operations the session
layer and the sender-key ratchet are built on:

- X25519 key agreement and Ed25519 signatures (cryptography)
- HKDF and an HMAC-based one-way chain step
- XChaCha20-Poly1305 AEAD with 192-bit random nonces (PyNaCl bindings)
- URL-safe unpadded base64, the encoding of every key on the wire
"""

import os
import hmac
import base64
import binascii
import hashlib
from typing import Optional, Tuple

import nacl.bindings
import nacl.exceptions
from cryptography.exceptions import InvalidSignature as _BadSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .errors import AuthenticationFailure, InvalidKey, InvalidSignature, MalformedEnvelope


KEY_SIZE = nacl.bindings.crypto_aead_xchacha20poly1305_ietf_KEYBYTES
NONCE_SIZE = nacl.bindings.crypto_aead_xchacha20poly1305_ietf_NPUBBYTES
TAG_SIZE = nacl.bindings.crypto_aead_xchacha20poly1305_ietf_ABYTES
SIGNATURE_SIZE = 64

# Chain step constants; they must differ so message and chain keys are independent
MESSAGE_KEY_SEED = b"\x01"
CHAIN_KEY_SEED = b"\x02"


def generate_dh_keypair() -> Tuple[X25519PrivateKey, X25519PublicKey]:
    """
    Generate a Curve25519 Diffie-Hellman keypair for key exchange.

    Returns:
        Tuple of (private_key, public_key)
    """
    private_key = X25519PrivateKey.generate()
    public_key = private_key.public_key()
    return private_key, public_key


def generate_signing_keypair() -> Tuple[bytes, bytes]:
    """
    Generate an Ed25519 keypair for sender-key signatures.

    Returns:
        Tuple of (raw 32-byte secret key, raw 32-byte public key)
    """
    private_key = Ed25519PrivateKey.generate()
    return private_key.private_bytes_raw(), private_key.public_key().public_bytes_raw()


def load_dh_private_key(secret_key: bytes) -> X25519PrivateKey:
    """Load a raw X25519 secret key"""
    try:
        return X25519PrivateKey.from_private_bytes(secret_key)
    except (TypeError, ValueError) as e:
        raise InvalidKey(f"Invalid X25519 secret key: {e}") from e


def load_dh_public_key(public_key: bytes) -> X25519PublicKey:
    """Load a raw X25519 public key"""
    try:
        return X25519PublicKey.from_public_bytes(public_key)
    except (TypeError, ValueError) as e:
        raise InvalidKey(f"Invalid X25519 public key: {e}") from e


def dh_exchange(private_key: X25519PrivateKey, public_key: X25519PublicKey) -> bytes:
    """
    Perform Diffie-Hellman key exchange.

    Args:
        private_key: Our private key
        public_key: Their public key

    Returns:
        32-byte shared secret

    Raises:
        InvalidKey: If the peer key is a low-order point
    """
    try:
        return private_key.exchange(public_key)
    except ValueError as e:
        raise InvalidKey(f"Key exchange failed: {e}") from e


def hkdf_sha256(key_material: bytes, info: bytes, length: int = 32,
                salt: Optional[bytes] = None) -> bytes:
    """
    HKDF-SHA256 extract-and-expand.

    Args:
        key_material: Input key material
        info: Context string binding the output to its use
        length: Output length in bytes
        salt: Optional salt

    Returns:
        Derived key
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=length,
        salt=salt,
        info=info
    )
    return hkdf.derive(key_material)


def hmac_sha256(key: bytes, data: bytes) -> bytes:
    """
    Compute HMAC-SHA256.

    Args:
        key: HMAC key
        data: Data to authenticate

    Returns:
        32-byte HMAC tag
    """
    return hmac.new(key, data, hashlib.sha256).digest()


def kdf_sender_chain(chain_key: bytes) -> Tuple[bytes, bytes]:
    """
    One step of the sender-key symmetric ratchet.

    Both outputs are HMACs keyed by the current chain key, so neither of
    them reveals the chain key or each other.

    Args:
        chain_key: Current 32-byte chain key

    Returns:
        Tuple of (next_chain_key, message_key)
    """
    if len(chain_key) != KEY_SIZE:
        raise InvalidKey(f"Chain key must be {KEY_SIZE} bytes")
    return hmac_sha256(chain_key, CHAIN_KEY_SEED), hmac_sha256(chain_key, MESSAGE_KEY_SEED)


def encrypt_message(key: bytes, plaintext: bytes,
                    associated_data: bytes = b"") -> Tuple[bytes, bytes]:
    """
    Encrypt a message using XChaCha20-Poly1305 (IETF).

    A fresh random nonce is generated on every call; callers cannot
    supply one.

    Args:
        key: 32-byte encryption key
        plaintext: Message to encrypt
        associated_data: Additional authenticated data

    Returns:
        Tuple of (ciphertext + tag, 24-byte nonce)
    """
    if len(key) != KEY_SIZE:
        raise InvalidKey(f"AEAD key must be {KEY_SIZE} bytes")
    nonce = os.urandom(NONCE_SIZE)
    ciphertext = nacl.bindings.crypto_aead_xchacha20poly1305_ietf_encrypt(
        plaintext, associated_data, nonce, key
    )
    return ciphertext, nonce


def decrypt_message(key: bytes, nonce: bytes, ciphertext: bytes,
                    associated_data: bytes = b"") -> bytes:
    """
    Decrypt a message using XChaCha20-Poly1305 (IETF).

    Args:
        key: 32-byte encryption key
        nonce: 24-byte nonce produced by encrypt_message
        ciphertext: Encrypted message + tag
        associated_data: Additional authenticated data

    Returns:
        Decrypted plaintext

    Raises:
        AuthenticationFailure: On a bad key or nonce size, or a tag mismatch
    """
    if len(key) != KEY_SIZE:
        raise AuthenticationFailure("Wrong key length")
    if len(nonce) != NONCE_SIZE:
        raise AuthenticationFailure("Wrong nonce length")
    if len(ciphertext) < TAG_SIZE:
        raise AuthenticationFailure("Ciphertext too short")

    try:
        return nacl.bindings.crypto_aead_xchacha20poly1305_ietf_decrypt(
            ciphertext, associated_data, nonce, key
        )
    except nacl.exceptions.CryptoError as e:
        raise AuthenticationFailure("Decryption failed") from e


def sign(secret_key: bytes, data: bytes) -> bytes:
    """Produce a detached Ed25519 signature"""
    try:
        private_key = Ed25519PrivateKey.from_private_bytes(secret_key)
    except (TypeError, ValueError) as e:
        raise InvalidKey(f"Invalid Ed25519 secret key: {e}") from e
    return private_key.sign(data)


def verify_signature(public_key: bytes, signature: bytes, data: bytes) -> None:
    """
    Verify a detached Ed25519 signature.

    Raises:
        InvalidSignature: If the signature does not verify
    """
    if len(signature) != SIGNATURE_SIZE:
        raise InvalidSignature("Wrong signature length")
    try:
        Ed25519PublicKey.from_public_bytes(public_key).verify(signature, data)
    except (TypeError, ValueError) as e:
        raise InvalidSignature(f"Invalid signing key: {e}") from e
    except _BadSignature as e:
        raise InvalidSignature("Signature verification failed") from e


def public_key_bytes(public_key: X25519PublicKey) -> bytes:
    """Serialize X25519 public key to bytes"""
    return public_key.public_bytes_raw()


def b64encode(data: bytes) -> str:
    """URL-safe base64 without padding"""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64decode(data: str) -> bytes:
    """Decode URL-safe base64 with or without padding"""
    if not isinstance(data, str):
        raise MalformedEnvelope("Expected a base64 string")
    try:
        return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))
    except (binascii.Error, ValueError) as e:
        raise MalformedEnvelope(f"Invalid base64: {e}") from e
