"""
Secure messenger: ties the session layer, the sender-key ratchet, group
membership and the relay transport together for one unlocked identity.

- 1:1 messages are sealed with the pairwise session key.
- Group messages are encrypted once with our sender key and the same
  ciphertext is sent to every other member.
- Our sender-key bundle is sealed pairwise for each member on first use of
  a group, when members are added, and when we rotate keys.
"""

import uuid
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Iterable, List, Optional

from crypto.bundles import open_bundle, seal_bundle_for_members
from crypto.errors import ChatError, MalformedEnvelope, UnknownSender
from crypto.primitives import NONCE_SIZE, b64decode, b64encode
from crypto.sender_keys import GroupCiphertext, SenderKeyRatchet, SenderKeyStore
from crypto.session import decrypt, encrypt
from relay.envelopes import (
    GroupEvent,
    GroupEventEnvelope,
    GroupMessageEnvelope,
    GroupPacket,
    MessageEnvelope,
    SenderKeyEnvelope,
)
from .config import ClientSettings
from .contacts import ContactBook, SessionKeyCache
from .groups import Group, GroupChange, GroupDirectory, apply_group_event, open_event, seal_event
from .storage import UnlockedIdentity

logger = logging.getLogger(__name__)


class UnknownGroup(ChatError):
    """The group is not in the local membership directory"""
    pass


class GroupPermissionError(ChatError):
    """Only the group creator may change the roster"""
    pass


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class IncomingMessage:
    sender: str
    text: str
    timestamp: str
    group_id: Optional[str] = None
    counter: Optional[int] = None


@dataclass(frozen=True)
class DeliveryFailure:
    """An inbound envelope that could not be processed"""
    envelope_type: str
    sender: str
    error: ChatError
    group_id: Optional[str] = None


class SecureMessenger:
    """
    End-to-end encrypted messaging for one unlocked identity.

    The transport only needs an async send(envelope) method; RelayConnection
    is the real one.
    """

    def __init__(self, identity: UnlockedIdentity, transport, sender_keys: SenderKeyStore,
                 groups: GroupDirectory, settings: Optional[ClientSettings] = None):
        self.identity = identity
        self.transport = transport
        self.groups = groups
        self.settings = settings or ClientSettings()
        self.ratchet = SenderKeyRatchet(sender_keys)
        self.sessions = SessionKeyCache(identity.get_identity_secret_key)
        self.contacts = ContactBook(self.sessions)

    @property
    def public_key(self) -> str:
        return self.identity.public_key

    # --- 1:1 messages ---

    async def send_direct(self, to: str, text: str) -> MessageEnvelope:
        """Seal a message with the pairwise key and send it"""
        sealed = encrypt(self.sessions.key_for(to), text.encode('utf-8'))
        envelope = MessageEnvelope(
            from_=self.public_key,
            to=to,
            ciphertext=b64encode(sealed.ciphertext),
            nonce=b64encode(sealed.nonce),
            timestamp=_now()
        )
        await self.transport.send(envelope)
        return envelope

    # --- groups ---

    async def _require_group(self, group_id: str) -> Group:
        group = await self.groups.get_group(group_id)
        if group is None:
            raise UnknownGroup(f"Unknown group {group_id}")
        return group

    async def _require_creator(self, group_id: str) -> Group:
        group = await self._require_group(group_id)
        if group.creator_public_key != self.public_key:
            raise GroupPermissionError(f"Only the creator can change group {group_id}")
        return group

    async def _send_event(self, event: GroupEvent, recipients: Iterable[str]):
        """Send an event to each recipient, authenticated under our pairwise key with them"""
        for recipient in dict.fromkeys(recipients):
            if recipient == self.public_key:
                continue
            await self.transport.send(seal_event(
                self.sessions.key_for(recipient), self.public_key, recipient, event
            ))

    async def create_group(self, name: str, members: Iterable[str],
                           group_id: Optional[str] = None) -> Group:
        """Create a group with us as creator, announce it and send our bundle"""
        roster = list(dict.fromkeys([self.public_key] + list(members)))
        group = Group(
            group_id=group_id or uuid.uuid4().hex,
            name=name,
            members=roster,
            creator_public_key=self.public_key,
            version=1
        )
        await self.groups.save_group(group)

        await self._send_event(GroupEvent(
            type="create",
            group_id=group.group_id,
            version=group.version,
            name=name,
            members=roster,
            creator_public_key=self.public_key
        ), roster)
        await self.distribute_sender_key(group.group_id)
        return group

    async def distribute_sender_key(self, group_id: str,
                                    members: Optional[Iterable[str]] = None) -> int:
        """
        Send our current bundle, sealed pairwise, to members of a group.

        Args:
            group_id: Group to distribute for
            members: Recipients; defaults to every other member

        Returns:
            Number of bundles sent
        """
        if members is None:
            members = (await self._require_group(group_id)).members
        bundle = await self.ratchet.ensure_self_state(group_id, self.public_key)
        sealed = seal_bundle_for_members(
            self.identity.get_identity_secret_key(), self.public_key, members, bundle
        )
        for member, payload in sealed.items():
            await self.transport.send(SenderKeyEnvelope(
                from_=self.public_key,
                to=member,
                ciphertext=b64encode(payload.ciphertext),
                nonce=b64encode(payload.nonce)
            ))
        logger.info("Distributed sender key for group %s to %d members", group_id, len(sealed))
        return len(sealed)

    async def send_group_message(self, group_id: str, text: str) -> GroupCiphertext:
        """Encrypt once with our sender key and send the same ciphertext to every member"""
        group = await self._require_group(group_id)
        if await self.ratchet.load(group_id, self.public_key) is None:
            await self.distribute_sender_key(group_id)

        bundle = await self.ratchet.ensure_self_state(group_id, self.public_key)
        result = await self.ratchet.encrypt_as_sender(group_id, self.public_key, text.encode('utf-8'))
        timestamp = _now()

        for member in group.others(self.public_key):
            if self.settings.group_wire_format == "group-message":
                envelope = GroupMessageEnvelope(
                    from_=self.public_key,
                    to=member,
                    packet=GroupPacket(
                        group_id=group_id,
                        sender_identity_key=self.public_key,
                        signing_public_key=b64encode(bundle.signing_public_key),
                        message_index=result.counter,
                        nonce=b64encode(result.ciphertext[:NONCE_SIZE]),
                        ciphertext=b64encode(result.ciphertext[NONCE_SIZE:]),
                        signature=b64encode(result.signature)
                    )
                )
            else:
                envelope = MessageEnvelope(
                    from_=self.public_key,
                    to=member,
                    ciphertext=b64encode(result.ciphertext),
                    nonce=None,
                    timestamp=timestamp,
                    group_id=group_id,
                    counter=result.counter,
                    signature=b64encode(result.signature)
                )
            await self.transport.send(envelope)
        return result

    async def add_members(self, group_id: str, new_members: Iterable[str]) -> Group:
        """Add members (creator only); they receive our current chain, not our history"""
        group = await self._require_creator(group_id)
        added = [m for m in dict.fromkeys(new_members) if m not in group.members]
        if not added:
            return group

        group.members = group.members + added
        group.version += 1
        group.updated_at = _now()
        await self.groups.save_group(group)

        await self._send_event(GroupEvent(
            type="add",
            group_id=group_id,
            version=group.version,
            name=group.name,
            members=group.members,
            creator_public_key=group.creator_public_key
        ), group.members)
        if await self.ratchet.load(group_id, self.public_key) is not None:
            await self.distribute_sender_key(group_id, added)
        return group

    async def remove_member(self, group_id: str, target: str) -> Group:
        """Kick a member (creator only) and rotate our sender key"""
        group = await self._require_creator(group_id)
        if target not in group.members or target == self.public_key:
            return group

        recipients = list(group.members)
        group.members = [m for m in group.members if m != target]
        group.version += 1
        group.updated_at = _now()
        await self.groups.save_group(group)

        await self._send_event(GroupEvent(
            type="kick", group_id=group_id, version=group.version, target=target
        ), recipients)
        await self._after_members_removed(group_id, [target])
        return group

    async def rename_group(self, group_id: str, name: str) -> Group:
        group = await self._require_creator(group_id)
        group.name = name
        group.version += 1
        group.updated_at = _now()
        await self.groups.save_group(group)
        await self._send_event(GroupEvent(
            type="rename", group_id=group_id, version=group.version, name=name
        ), group.members)
        return group

    async def leave_group(self, group_id: str):
        """Announce that we leave, then forget the group and all of its chains"""
        group = await self._require_group(group_id)
        await self._send_event(GroupEvent(
            type="leave", group_id=group_id, version=group.version, target=self.public_key
        ), group.members)
        await self.ratchet.purge_group(group_id)
        await self.groups.delete_group(group_id)

    async def rotate_sender_key(self, group_id: str) -> int:
        """Replace our sender key with a fresh one and distribute it"""
        await self.ratchet.discard(group_id, self.public_key)
        return await self.distribute_sender_key(group_id)

    async def _after_members_removed(self, group_id: str, removed: List[str]):
        for member in removed:
            await self.ratchet.discard(group_id, member)
        if not self.settings.rekey_on_membership_change:
            return
        if await self.ratchet.load(group_id, self.public_key) is not None:
            await self.rotate_sender_key(group_id)

    # --- inbound ---

    async def handle_envelope(self, envelope) -> Optional[IncomingMessage]:
        """
        Process one inbound envelope.

        Returns:
            The decrypted message, or None for control traffic

        Raises:
            CryptoError: Authentication, signature or ordering failures
            MalformedEnvelope: Missing or undecodable fields
        """
        if isinstance(envelope, MessageEnvelope):
            if envelope.group_id is None:
                return self._open_direct(envelope)
            if envelope.counter is None or envelope.signature is None:
                raise MalformedEnvelope("Group message without counter or signature")
            return await self._open_group(
                envelope.group_id, envelope.from_, envelope.counter,
                b64decode(envelope.ciphertext), b64decode(envelope.signature), envelope.timestamp
            )

        if isinstance(envelope, GroupMessageEnvelope):
            packet = envelope.packet
            if packet.sender_identity_key != envelope.from_:
                raise MalformedEnvelope("Packet sender does not match envelope sender")
            ciphertext = b64decode(packet.ciphertext)
            if packet.nonce is not None:
                ciphertext = b64decode(packet.nonce) + ciphertext
            return await self._open_group(
                packet.group_id, envelope.from_, packet.message_index,
                ciphertext, b64decode(packet.signature), _now()
            )

        if isinstance(envelope, SenderKeyEnvelope):
            await self._receive_bundle(envelope)
            return None

        if isinstance(envelope, GroupEventEnvelope):
            event = open_event(self.sessions.key_for(envelope.from_), self.public_key, envelope)
            change = await apply_group_event(self.groups, self.public_key, envelope.from_, event)
            if change is not None:
                await self._on_group_change(change)
            return None

        return None

    def _open_direct(self, envelope: MessageEnvelope) -> IncomingMessage:
        if envelope.nonce is None:
            raise MalformedEnvelope("Direct message without nonce")
        plaintext = decrypt(
            self.sessions.key_for(envelope.from_),
            b64decode(envelope.nonce),
            b64decode(envelope.ciphertext)
        )
        return IncomingMessage(
            sender=envelope.from_,
            text=plaintext.decode('utf-8', errors='replace'),
            timestamp=envelope.timestamp
        )

    async def _open_group(self, group_id: str, sender: str, counter: int, ciphertext: bytes,
                          signature: bytes, timestamp: str) -> IncomingMessage:
        if sender not in await self.groups.get_group_members(group_id):
            raise UnknownSender(f"{sender[:16]} is not a member of group {group_id}")
        plaintext = await self.ratchet.decrypt_as_receiver(group_id, sender, counter, ciphertext, signature)
        return IncomingMessage(
            sender=sender,
            text=plaintext.decode('utf-8', errors='replace'),
            timestamp=timestamp,
            group_id=group_id,
            counter=counter
        )

    async def _receive_bundle(self, envelope: SenderKeyEnvelope):
        bundle = open_bundle(
            self.identity.get_identity_secret_key(),
            envelope.from_,
            b64decode(envelope.nonce),
            b64decode(envelope.ciphertext)
        )
        if envelope.from_ not in await self.groups.get_group_members(bundle.group_id):
            raise UnknownSender(f"Bundle from non-member {envelope.from_[:16]} for group {bundle.group_id}")
        await self.ratchet.apply_bundle(bundle, self.public_key)

    async def _on_group_change(self, change: GroupChange):
        group_id = change.event.group_id
        if change.left_group:
            await self.ratchet.purge_group(group_id)
            logger.info("Removed from group %s", group_id)
            return

        if change.removed:
            await self._after_members_removed(group_id, change.removed)

        added = [m for m in change.added if m != self.public_key]
        if added and change.event.type == "add":
            if await self.ratchet.load(group_id, self.public_key) is not None:
                await self.distribute_sender_key(group_id, added)

    async def serve(self, connection,
                    on_message: Optional[Callable[[IncomingMessage], Awaitable[None]]] = None,
                    on_failure: Optional[Callable[[DeliveryFailure], Awaitable[None]]] = None):
        """
        Process inbound envelopes until the connection closes.

        Failed envelopes are logged and reported through on_failure; they
        are never retried.
        """
        async for envelope in connection.frames():
            try:
                message = await self.handle_envelope(envelope)
            except ChatError as e:
                logger.warning("Failed to process %s from %s...: %s",
                               envelope.type, getattr(envelope, 'from_', '?')[:16], e)
                if on_failure is not None:
                    await on_failure(DeliveryFailure(
                        envelope_type=envelope.type,
                        sender=getattr(envelope, 'from_', ''),
                        error=e,
                        group_id=getattr(envelope, 'group_id', None)
                    ))
                continue

            if message is not None and on_message is not None:
                await on_message(message)
