"""
Group membership records and group-event handling.

Membership is the collaborator the ratchet layer asks "who do I send my
bundle to". Events pass through the untrusted relay, so each one carries a
tag under the sender/recipient pairwise key that proves who sent it. On top
of that, only the group creator may change the roster, and a member may
only remove itself.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from crypto.errors import AuthenticationFailure
from crypto.primitives import b64decode, b64encode, decrypt_message, encrypt_message
from relay.envelopes import GroupEvent, GroupEventEnvelope

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Group:
    """
    A group as seen by one local identity.

    Attributes:
        group_id: Group identifier shared by all members
        name: Display name
        members: Public keys of all members, creator included
        creator_public_key: Member allowed to change the roster
        version: Highest event version applied
    """
    group_id: str
    name: str
    members: List[str]
    creator_public_key: str
    version: int = 0
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    def others(self, my_public_key: str) -> List[str]:
        return [m for m in self.members if m != my_public_key]


@dataclass
class GroupChange:
    """Outcome of applying one event"""
    event: GroupEvent
    group: Optional[Group]
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    left_group: bool = False


class GroupDirectory(ABC):
    """Persistence of group membership for one local identity"""

    @abstractmethod
    async def get_group(self, group_id: str) -> Optional[Group]:
        ...

    @abstractmethod
    async def save_group(self, group: Group) -> None:
        ...

    @abstractmethod
    async def delete_group(self, group_id: str) -> None:
        ...

    @abstractmethod
    async def list_groups(self) -> List[Group]:
        ...

    async def get_group_members(self, group_id: str) -> List[str]:
        group = await self.get_group(group_id)
        return list(group.members) if group else []


class MemoryGroupDirectory(GroupDirectory):

    def __init__(self):
        self.groups: Dict[str, Group] = {}

    async def get_group(self, group_id: str) -> Optional[Group]:
        return self.groups.get(group_id)

    async def save_group(self, group: Group) -> None:
        self.groups[group.group_id] = group

    async def delete_group(self, group_id: str) -> None:
        self.groups.pop(group_id, None)

    async def list_groups(self) -> List[Group]:
        return list(self.groups.values())


def _event_header(sender: str, recipient: str, event: GroupEvent) -> bytes:
    return json.dumps({
        'event': event.model_dump(mode='json', by_alias=True, exclude_none=True),
        'from': sender,
        'to': recipient
    }, sort_keys=True, separators=(',', ':')).encode('utf-8')


def seal_event(session_key: bytes, sender: str, recipient: str,
               event: GroupEvent) -> GroupEventEnvelope:
    """Build the envelope of an event for one recipient, tagged under our pairwise key"""
    mac, nonce = encrypt_message(session_key, b"", _event_header(sender, recipient, event))
    return GroupEventEnvelope(
        from_=sender,
        to=recipient,
        event=event,
        nonce=b64encode(nonce),
        mac=b64encode(mac)
    )


def open_event(session_key: bytes, my_public_key: str,
               envelope: GroupEventEnvelope) -> GroupEvent:
    """
    Check that an event really comes from envelope.from_ and was meant for us.

    session_key must be our pairwise key with envelope.from_; only that
    peer can produce a valid tag, so a forged sender fails here.

    Raises:
        AuthenticationFailure: Missing tag, other recipient, or tag mismatch
    """
    if envelope.nonce is None or envelope.mac is None:
        raise AuthenticationFailure("Group event is not authenticated")
    if envelope.to != my_public_key:
        raise AuthenticationFailure("Group event is addressed to someone else")
    decrypt_message(
        session_key,
        b64decode(envelope.nonce),
        b64decode(envelope.mac),
        _event_header(envelope.from_, my_public_key, envelope.event)
    )
    return envelope.event


def _reject(event: GroupEvent, sender: str, reason: str) -> None:
    logger.warning(
        "Rejected %s event for group %s from %s...: %s",
        event.type, event.group_id, sender[:16], reason
    )
    return None


async def apply_group_event(directory: GroupDirectory, my_public_key: str,
                            sender: str, event: GroupEvent) -> Optional[GroupChange]:
    """
    Apply a group event received from sender.

    sender must already be authenticated (see open_event).

    Returns:
        The change, or None if the event was ignored or rejected
    """
    group = await directory.get_group(event.group_id)

    if group is not None and event.version < group.version:
        return _reject(event, sender, f"stale version {event.version} < {group.version}")

    if event.type in ("create", "add"):
        members = list(dict.fromkeys(event.members or []))
        if my_public_key not in members:
            return None

        if group is None:
            creator = event.creator_public_key or sender
            if sender != creator:
                return _reject(event, sender, "only the creator can create a group")
            if creator not in members:
                members.insert(0, creator)
            group = Group(
                group_id=event.group_id,
                name=event.name or event.group_id,
                members=members,
                creator_public_key=creator,
                version=event.version
            )
            await directory.save_group(group)
            return GroupChange(event=event, group=group, added=group.others(my_public_key))

        if sender != group.creator_public_key:
            return _reject(event, sender, "only the creator can change members")
        added = [m for m in members if m not in group.members]
        group.members = group.members + added
        if event.name:
            group.name = event.name
        group.version = event.version
        group.updated_at = _now()
        await directory.save_group(group)
        return GroupChange(event=event, group=group, added=added)

    if group is None:
        return None

    if event.type == "rename":
        if sender != group.creator_public_key:
            return _reject(event, sender, "only the creator can rename")
        group.name = event.name or group.name
        group.version = event.version
        group.updated_at = _now()
        await directory.save_group(group)
        return GroupChange(event=event, group=group)

    # remove / kick / leave
    target = event.target or (sender if event.type == "leave" else None)
    if not target:
        return _reject(event, sender, "missing target")
    if event.type == "leave" and target != sender:
        return _reject(event, sender, "members can only leave themselves")
    if event.type in ("remove", "kick") and sender != group.creator_public_key:
        return _reject(event, sender, "only the creator can remove members")

    if target == my_public_key:
        await directory.delete_group(group.group_id)
        return GroupChange(event=event, group=None, removed=[target], left_group=True)

    if target not in group.members:
        return None
    group.members = [m for m in group.members if m != target]
    group.version = event.version
    group.updated_at = _now()
    await directory.save_group(group)
    return GroupChange(event=event, group=group, removed=[target])
