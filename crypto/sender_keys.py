"""
Sender-Key Group Ratchet

Each (group, sender) pair has its own symmetric chain. The sender derives a
one-time message key from the chain key for every message, advances the
chain with a one-way step, and signs the result with a per-group Ed25519
key. One ciphertext is then sent unchanged to every member, and each member
decrypts it with its own copy of the sender's chain.
"""

import os
import json
import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass, field, replace
from typing import AsyncIterator, Dict, List, Optional, Tuple

from .errors import (
    MalformedEnvelope,
    NoSenderKeyState,
    StaleOrDuplicateIndex,
    TooManySkippedMessages,
    UnknownSender,
)
from .primitives import (
    KEY_SIZE,
    NONCE_SIZE,
    b64decode,
    b64encode,
    decrypt_message,
    encrypt_message,
    generate_signing_keypair,
    hkdf_sha256,
    kdf_sender_chain,
    sign,
    verify_signature,
)

logger = logging.getLogger(__name__)

CHAIN_SEED_INFO = b"sealed-relay/sender-key-chain"


@dataclass
class SenderKeyState:
    """
    Ratchet state for one (group, sender) pair.

    Attributes:
        group_id: Group the chain belongs to
        sender_public_key: Sender identity public key (base64)
        chain_key: Current 32-byte chain key
        message_index: Counter of the next message on this chain
        signing_public_key: Sender's Ed25519 public key for this group
        signing_secret_key: Only present in the sender's own copy
        skipped_message_keys: Keys of messages skipped over, by counter
        retired_signing_keys: Signing keys of earlier generations of this
            sender's chain; bundles carrying one of them are refused
    """
    group_id: str
    sender_public_key: str
    chain_key: bytes
    message_index: int
    signing_public_key: bytes
    signing_secret_key: Optional[bytes] = None
    skipped_message_keys: Dict[int, bytes] = field(default_factory=dict)
    retired_signing_keys: List[bytes] = field(default_factory=list)

    def copy(self) -> 'SenderKeyState':
        return replace(
            self,
            skipped_message_keys=dict(self.skipped_message_keys),
            retired_signing_keys=list(self.retired_signing_keys)
        )

    def to_dict(self) -> Dict:
        """Convert to a JSON-safe dictionary for persistence"""
        return {
            'group_id': self.group_id,
            'sender_public_key': self.sender_public_key,
            'chain_key': b64encode(self.chain_key),
            'message_index': self.message_index,
            'signing_public_key': b64encode(self.signing_public_key),
            'signing_secret_key': b64encode(self.signing_secret_key) if self.signing_secret_key else None,
            'skipped_message_keys': {
                str(counter): b64encode(key)
                for counter, key in self.skipped_message_keys.items()
            },
            'retired_signing_keys': [b64encode(key) for key in self.retired_signing_keys]
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'SenderKeyState':
        """Create from a dictionary produced by to_dict()"""
        secret = data.get('signing_secret_key')
        return cls(
            group_id=data['group_id'],
            sender_public_key=data['sender_public_key'],
            chain_key=b64decode(data['chain_key']),
            message_index=int(data['message_index']),
            signing_public_key=b64decode(data['signing_public_key']),
            signing_secret_key=b64decode(secret) if secret else None,
            skipped_message_keys={
                int(counter): b64decode(key)
                for counter, key in data.get('skipped_message_keys', {}).items()
            },
            retired_signing_keys=[b64decode(key) for key in data.get('retired_signing_keys', [])]
        )


@dataclass(frozen=True)
class SenderKeyBundle:
    """
    Snapshot of a sender's chain, distributed pairwise to group members.

    chain_key is the sender's *current* chain key, so a recipient can only
    read messages from message_index onwards.
    """
    group_id: str
    sender_public_key: str
    signing_public_key: bytes
    chain_key: bytes
    message_index: int = 0

    def to_dict(self) -> Dict:
        return {
            'groupId': self.group_id,
            'senderPublicKey': self.sender_public_key,
            'signingPublicKey': b64encode(self.signing_public_key),
            'initialChainKey': b64encode(self.chain_key),
            'messageIndex': self.message_index
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'SenderKeyBundle':
        """
        Create from the wire dictionary.

        Raises:
            MalformedEnvelope: If a field is missing or has the wrong type
        """
        if not isinstance(data, dict):
            raise MalformedEnvelope("Bundle must be a JSON object")
        try:
            group_id = data['groupId']
            sender = data['senderPublicKey']
            signing_public_key = b64decode(data['signingPublicKey'])
            chain_key = b64decode(data['initialChainKey'])
            index = data.get('messageIndex', 0)
        except KeyError as e:
            raise MalformedEnvelope(f"Bundle is missing {e}") from e

        if not isinstance(group_id, str) or not isinstance(sender, str):
            raise MalformedEnvelope("Bundle ids must be strings")
        if not isinstance(index, int) or isinstance(index, bool) or index < 0:
            raise MalformedEnvelope("Bundle messageIndex must be a non-negative integer")
        if len(chain_key) != KEY_SIZE or len(signing_public_key) != 32:
            raise MalformedEnvelope("Bundle keys have the wrong size")

        return cls(
            group_id=group_id,
            sender_public_key=sender,
            signing_public_key=signing_public_key,
            chain_key=chain_key,
            message_index=index
        )

    def serialize(self) -> bytes:
        return json.dumps(self.to_dict(), sort_keys=True).encode('utf-8')

    @classmethod
    def deserialize(cls, data: bytes) -> 'SenderKeyBundle':
        try:
            return cls.from_dict(json.loads(data.decode('utf-8')))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MalformedEnvelope(f"Bundle is not valid JSON: {e}") from e


@dataclass(frozen=True)
class GroupCiphertext:
    """
    Wire payload of one group message.

    Attributes:
        counter: Chain index the message was encrypted at
        ciphertext: nonce (24 bytes) + AEAD ciphertext
        signature: Ed25519 signature over header + ciphertext
    """
    counter: int
    ciphertext: bytes
    signature: bytes


class SenderKeyStore(ABC):
    """
    Persistence for sender-key states of one local identity.

    Implementations must make persist() atomic for a single state.
    """

    @abstractmethod
    async def load(self, group_id: str, sender_public_key: str) -> Optional[SenderKeyState]:
        ...

    @abstractmethod
    async def persist(self, state: SenderKeyState) -> None:
        ...

    @abstractmethod
    async def delete(self, group_id: str, sender_public_key: str) -> None:
        ...

    @abstractmethod
    async def purge_group(self, group_id: str) -> None:
        ...


class MemorySenderKeyStore(SenderKeyStore):
    """In-memory store; copies on the way in and out"""

    def __init__(self):
        self.states: Dict[Tuple[str, str], SenderKeyState] = {}

    async def load(self, group_id: str, sender_public_key: str) -> Optional[SenderKeyState]:
        state = self.states.get((group_id, sender_public_key))
        return state.copy() if state else None

    async def persist(self, state: SenderKeyState) -> None:
        self.states[(state.group_id, state.sender_public_key)] = state.copy()

    async def delete(self, group_id: str, sender_public_key: str) -> None:
        self.states.pop((group_id, sender_public_key), None)

    async def purge_group(self, group_id: str) -> None:
        for key in [k for k in self.states if k[0] == group_id]:
            del self.states[key]


def canonical_header(group_id: str, sender_public_key: str,
                     signing_public_key: bytes, counter: int) -> bytes:
    """
    Header bound into every group message by both the signature and the AEAD.

    Sorted-key compact JSON so sender and receivers build identical bytes.
    """
    return json.dumps({
        'counter': counter,
        'groupId': group_id,
        'senderPublicKey': sender_public_key,
        'signingPublicKey': b64encode(signing_public_key)
    }, sort_keys=True, separators=(',', ':')).encode('utf-8')


def _seal(message_key: bytes, plaintext: bytes, header: bytes) -> bytes:
    ciphertext, nonce = encrypt_message(message_key, plaintext, header)
    return nonce + ciphertext


def _open(message_key: bytes, sealed: bytes, header: bytes) -> bytes:
    return decrypt_message(message_key, sealed[:NONCE_SIZE], sealed[NONCE_SIZE:], header)


class _PairLock:
    """Lock of one (group, sender) pair and the number of callers holding or awaiting it"""

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


class SenderKeyRatchet:
    """
    Sender-key ratchet over a SenderKeyStore.

    Every read-modify-write of a (group, sender) state runs under a lock for
    that pair, and the new state is persisted only once the operation has
    succeeded, so a failed or cancelled call leaves the stored chain as it was.
    """

    MAX_SKIP = 1000  # Maximum number of message keys we'll skip and store

    def __init__(self, store: SenderKeyStore):
        self.store = store
        self._locks: Dict[Tuple[str, str], _PairLock] = {}

    @asynccontextmanager
    async def _lock_for(self, group_id: str, sender_public_key: str) -> AsyncIterator[None]:
        """Hold the lock of one (group, sender) pair; the entry is dropped once unused"""
        key = (group_id, sender_public_key)
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _PairLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._locks.get(key) is entry:
                del self._locks[key]

    async def load(self, group_id: str, sender_public_key: str) -> Optional[SenderKeyState]:
        return await self.store.load(group_id, sender_public_key)

    async def ensure_self_state(self, group_id: str, my_public_key: str) -> SenderKeyBundle:
        """
        Create our own chain for a group if it does not exist yet.

        Returns:
            Bundle carrying the current (not the original) chain key, so it
            is safe to call repeatedly and to re-broadcast.
        """
        async with self._lock_for(group_id, my_public_key):
            state = await self.store.load(group_id, my_public_key)
            if state is None:
                seed = os.urandom(KEY_SIZE)
                signing_secret, signing_public = generate_signing_keypair()
                state = SenderKeyState(
                    group_id=group_id,
                    sender_public_key=my_public_key,
                    chain_key=hkdf_sha256(seed, CHAIN_SEED_INFO),
                    message_index=0,
                    signing_public_key=signing_public,
                    signing_secret_key=signing_secret
                )
                await self.store.persist(state)
                logger.info("Created sender key for group %s", group_id)

            return SenderKeyBundle(
                group_id=group_id,
                sender_public_key=my_public_key,
                signing_public_key=state.signing_public_key,
                chain_key=state.chain_key,
                message_index=state.message_index
            )

    async def encrypt_as_sender(self, group_id: str, my_public_key: str,
                                plaintext: bytes) -> GroupCiphertext:
        """
        Encrypt one group message and advance our chain.

        Raises:
            NoSenderKeyState: If we have no chain or it lacks the signing secret
        """
        async with self._lock_for(group_id, my_public_key):
            state = await self.store.load(group_id, my_public_key)
            if state is None:
                raise NoSenderKeyState(f"No sender key for group {group_id}")
            if not state.signing_secret_key:
                raise NoSenderKeyState(f"Sender key for group {group_id} has no signing secret")

            next_chain_key, message_key = kdf_sender_chain(state.chain_key)
            counter = state.message_index
            header = canonical_header(group_id, my_public_key, state.signing_public_key, counter)
            ciphertext = _seal(message_key, plaintext, header)
            signature = sign(state.signing_secret_key, header + ciphertext)

            state.chain_key = next_chain_key
            state.message_index = counter + 1
            await self.store.persist(state)

            return GroupCiphertext(counter=counter, ciphertext=ciphertext, signature=signature)

    async def decrypt_as_receiver(self, group_id: str, sender_public_key: str, counter: int,
                                  ciphertext: bytes, signature: bytes) -> bytes:
        """
        Verify and decrypt a group message from another member.

        The signature is checked against the stored signing key before any
        key is derived. Counters behind the chain only decrypt with a stored
        skipped key; counters ahead of it store the keys passed over.

        Raises:
            UnknownSender: No bundle from this sender yet
            InvalidSignature: Signature does not match header + ciphertext
            StaleOrDuplicateIndex: Counter already consumed
            TooManySkippedMessages: Counter too far ahead
            AuthenticationFailure: AEAD tag mismatch
        """
        if counter < 0:
            raise StaleOrDuplicateIndex(f"Negative counter {counter}")

        async with self._lock_for(group_id, sender_public_key):
            state = await self.store.load(group_id, sender_public_key)
            if state is None:
                raise UnknownSender(f"No sender key from {sender_public_key[:16]} in group {group_id}")

            header = canonical_header(group_id, sender_public_key, state.signing_public_key, counter)
            verify_signature(state.signing_public_key, signature, header + ciphertext)

            if counter < state.message_index:
                message_key = state.skipped_message_keys.get(counter)
                if message_key is None:
                    raise StaleOrDuplicateIndex(
                        f"Counter {counter} is behind chain index {state.message_index}"
                    )
                plaintext = _open(message_key, ciphertext, header)
                del state.skipped_message_keys[counter]
                await self.store.persist(state)
                return plaintext

            if counter - state.message_index > self.MAX_SKIP:
                raise TooManySkippedMessages(
                    f"Too many skipped messages: {counter - state.message_index}"
                )

            updated = state.copy()
            while updated.message_index < counter:
                updated.chain_key, skipped_key = kdf_sender_chain(updated.chain_key)
                updated.skipped_message_keys[updated.message_index] = skipped_key
                updated.message_index += 1

            next_chain_key, message_key = kdf_sender_chain(updated.chain_key)
            plaintext = _open(message_key, ciphertext, header)

            updated.chain_key = next_chain_key
            updated.message_index = counter + 1
            self._trim_skipped(updated)
            await self.store.persist(updated)
            return plaintext

    def _trim_skipped(self, state: SenderKeyState):
        """Keep only the newest MAX_SKIP skipped keys"""
        excess = len(state.skipped_message_keys) - self.MAX_SKIP
        if excess > 0:
            for counter in sorted(state.skipped_message_keys)[:excess]:
                del state.skipped_message_keys[counter]

    async def apply_bundle(self, bundle: SenderKeyBundle,
                           my_public_key: Optional[str] = None) -> bool:
        """
        Store another member's bundle.

        A bundle never overwrites our own chain, and never rolls back a chain
        of the same signing key that has already advanced. A bundle with a new
        signing key is a rotated sender key and replaces the old chain; the
        old signing key is retired, and bundles carrying a retired key are
        refused.

        Returns:
            True if the bundle was stored
        """
        if my_public_key is not None and bundle.sender_public_key == my_public_key:
            logger.warning("Ignoring bundle for our own sender key in group %s", bundle.group_id)
            return False

        async with self._lock_for(bundle.group_id, bundle.sender_public_key):
            existing = await self.store.load(bundle.group_id, bundle.sender_public_key)
            retired: List[bytes] = []
            if existing is not None:
                if bundle.signing_public_key in existing.retired_signing_keys:
                    logger.warning(
                        "Ignoring replayed bundle of a retired sender key from %s in group %s",
                        bundle.sender_public_key[:16], bundle.group_id
                    )
                    return False

                if existing.signing_public_key == bundle.signing_public_key:
                    if existing.message_index > 0:
                        logger.info(
                            "Ignoring stale bundle from %s in group %s (at index %d)",
                            bundle.sender_public_key[:16], bundle.group_id, existing.message_index
                        )
                        return False
                    retired = existing.retired_signing_keys
                else:
                    retired = existing.retired_signing_keys + [existing.signing_public_key]

            await self.store.persist(SenderKeyState(
                group_id=bundle.group_id,
                sender_public_key=bundle.sender_public_key,
                chain_key=bundle.chain_key,
                message_index=bundle.message_index,
                signing_public_key=bundle.signing_public_key,
                retired_signing_keys=retired
            ))
            return True

    async def discard(self, group_id: str, sender_public_key: str):
        """Forget one chain (member left, or we rotate our own key)"""
        async with self._lock_for(group_id, sender_public_key):
            await self.store.delete(group_id, sender_public_key)

    async def purge_group(self, group_id: str):
        """
        Forget every chain of a group we no longer belong to.

        Waits for operations already running on the group's chains, so none
        of them can write its state back after the purge.
        """
        async with AsyncExitStack() as stack:
            for key in sorted(k for k in self._locks if k[0] == group_id):
                await stack.enter_async_context(self._lock_for(*key))
            await self.store.purge_group(group_id)
