"""
Wire envelopes exchanged with the relay.

One JSON object per WebSocket frame, discriminated by its "type" field.
Frames are parsed once at the transport boundary into one of the models
below; everything past that point works with typed envelopes.
"""

from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from crypto.errors import MalformedEnvelope


class _Envelope(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class _Routed(_Envelope):
    from_: str = Field(alias="from", min_length=1)

    def recipients(self) -> List[str]:
        to = self.to
        return [to] if isinstance(to, str) else list(dict.fromkeys(to))


class RegisterEnvelope(_Envelope):
    """Binds the connection to a public key"""
    type: Literal["register"] = "register"
    public_key: str = Field(alias="publicKey", min_length=1)


class MessageEnvelope(_Routed):
    """
    Direct or group-tagged message.

    Without group_id it is a 1:1 message sealed with the pairwise key.
    With group_id it carries a sender-key ciphertext: nonce is then None
    (the nonce is inside ciphertext) and counter/signature are set.
    """
    type: Literal["message"] = "message"
    to: str = Field(min_length=1)
    ciphertext: str
    nonce: Optional[str] = None
    timestamp: str
    group_id: Optional[str] = Field(default=None, alias="groupId")
    counter: Optional[int] = Field(default=None, ge=0)
    signature: Optional[str] = None


class GroupEvent(_Envelope):
    """Membership and lifecycle change of a group"""
    type: Literal["create", "add", "remove", "kick", "rename", "leave"]
    group_id: str = Field(alias="groupId")
    version: int = 0
    name: Optional[str] = None
    members: Optional[List[str]] = None
    creator_public_key: Optional[str] = Field(default=None, alias="creatorPublicKey")
    target: Optional[str] = None


class GroupEventEnvelope(_Routed):
    """
    Group event, authenticated for one recipient.

    mac is an AEAD tag under the sender/recipient pairwise key over
    (from, to, event). The relay forwards it without looking at it;
    clients refuse events without a valid tag.
    """
    type: Literal["group-event"] = "group-event"
    to: Union[str, List[str]]
    event: GroupEvent
    nonce: Optional[str] = None
    mac: Optional[str] = None


class SenderKeyEnvelope(_Routed):
    """Sender-key bundle sealed under the pairwise session key"""
    type: Literal["sender-key", "group-sender-key-bundle"] = "sender-key"
    to: Union[str, List[str]]
    ciphertext: str
    nonce: str


class GroupPacket(_Envelope):
    group_id: str = Field(alias="groupId")
    sender_identity_key: str = Field(alias="senderIdentityKey")
    signing_public_key: str = Field(alias="signingPublicKey")
    message_index: int = Field(alias="messageIndex", ge=0)
    nonce: Optional[str] = None
    ciphertext: str
    signature: str


class GroupMessageEnvelope(_Routed):
    """Alternate encoding of a group message as one packet"""
    type: Literal["group-message"] = "group-message"
    to: Union[str, List[str]]
    packet: GroupPacket


class PingEnvelope(_Envelope):
    type: Literal["ping"] = "ping"


class PongEnvelope(_Envelope):
    type: Literal["pong"] = "pong"


Envelope = Annotated[
    Union[
        RegisterEnvelope,
        MessageEnvelope,
        GroupEventEnvelope,
        SenderKeyEnvelope,
        GroupMessageEnvelope,
        PingEnvelope,
        PongEnvelope,
    ],
    Field(discriminator="type"),
]

_envelope_adapter = TypeAdapter(Envelope)


def parse_envelope(raw: Union[str, bytes]) -> Envelope:
    """
    Parse one frame.

    Raises:
        MalformedEnvelope: Invalid JSON, unknown type or missing fields
    """
    try:
        return _envelope_adapter.validate_json(raw)
    except ValidationError as e:
        raise MalformedEnvelope(f"Invalid envelope: {e.error_count()} error(s)") from e


def encode_envelope(envelope: _Envelope) -> str:
    """Serialize an envelope to its wire form"""
    return envelope.model_dump_json(by_alias=True, exclude_none=True)
