"""
Sender-key bundle distribution.

A bundle is sealed separately for every other member of the group under the
pairwise session key, so it reaches strangers as well as contacts: only the
recipient's public key is needed.
"""

import logging
from typing import Dict, Iterable

from .errors import AuthenticationFailure
from .primitives import b64decode
from .sender_keys import SenderKeyBundle
from .session import SealedPayload, decrypt, derive_session_key, encrypt

logger = logging.getLogger(__name__)


def seal_bundle(my_secret: bytes, member_public_key: str, bundle: SenderKeyBundle) -> SealedPayload:
    """Encrypt a bundle for one member"""
    shared_key = derive_session_key(my_secret, b64decode(member_public_key))
    return encrypt(shared_key, bundle.serialize())


def seal_bundle_for_members(my_secret: bytes, my_public_key: str, members: Iterable[str],
                            bundle: SenderKeyBundle) -> Dict[str, SealedPayload]:
    """
    Encrypt a bundle once per member, skipping ourselves.

    Returns:
        Mapping of member public key to its sealed bundle
    """
    sealed = {}
    for member in members:
        if member == my_public_key or member in sealed:
            continue
        sealed[member] = seal_bundle(my_secret, member, bundle)
    logger.debug("Sealed bundle for group %s to %d members", bundle.group_id, len(sealed))
    return sealed


def open_bundle(my_secret: bytes, sender_public_key: str, nonce: bytes,
                ciphertext: bytes) -> SenderKeyBundle:
    """
    Decrypt a bundle received from sender_public_key.

    The pairwise key authenticates the sender, so the bundle must describe
    the sender's own chain.

    Raises:
        AuthenticationFailure: Bad tag, or the bundle claims another sender
        MalformedEnvelope: The plaintext is not a valid bundle
    """
    shared_key = derive_session_key(my_secret, b64decode(sender_public_key))
    bundle = SenderKeyBundle.deserialize(decrypt(shared_key, nonce, ciphertext))
    if bundle.sender_public_key != sender_public_key:
        raise AuthenticationFailure(
            f"Bundle for {bundle.sender_public_key[:16]} was sent by {sender_public_key[:16]}"
        )
    return bundle
