"""
Error taxonomy shared by the crypto layer, the relay and the client.

Cryptographic failures are never retried: they mean corruption, a stale
bundle or an active attack, and are surfaced to the caller as a failed
decrypt.
"""


class ChatError(Exception):
    """Base exception for everything raised by this project"""
    pass


class CryptoError(ChatError):
    """Base exception for cryptographic errors"""
    pass


class AuthenticationFailure(CryptoError):
    """AEAD tag mismatch, wrong nonce length or any other fail-closed check"""
    pass


class InvalidSignature(AuthenticationFailure):
    """Ed25519 signature did not verify over header and ciphertext"""
    pass


class InvalidKey(CryptoError):
    """Key material has the wrong size or is not a valid curve point"""
    pass


class NoSenderKeyState(CryptoError):
    """No usable local sender-key state for our own (group, public key)"""
    pass


class UnknownSender(CryptoError):
    """No bundle has been received yet for this (group, sender)"""
    pass


class StaleOrDuplicateIndex(CryptoError):
    """Counter is behind the stored chain and no skipped key is held for it"""
    pass


class TooManySkippedMessages(CryptoError):
    """Counter is too far ahead of the stored chain"""
    pass


class MalformedEnvelope(ChatError):
    """Unparseable frame or payload, or required fields are missing"""
    pass


class TransportUnavailable(ChatError):
    """No open relay connection to send through"""
    pass
