"""
Contacts and the pairwise session-key cache.

Session keys are derived on demand from the identity secret key and the
peer's public key, cached in memory, and never persisted or transmitted.
The cache serves strangers (group members who are not contacts) too.
"""

import uuid
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from crypto.identity import fingerprint
from crypto.primitives import b64decode
from crypto.session import derive_session_key


class SessionKeyCache:
    """Derives and caches pairwise session keys per peer public key"""

    def __init__(self, get_identity_secret_key: Callable[[], bytes]):
        self._get_identity_secret_key = get_identity_secret_key
        self._keys: Dict[str, bytes] = {}

    def key_for(self, public_key: str) -> bytes:
        key = self._keys.get(public_key)
        if key is None:
            key = derive_session_key(self._get_identity_secret_key(), b64decode(public_key))
            self._keys[public_key] = key
        return key

    def forget(self, public_key: str):
        self._keys.pop(public_key, None)

    def clear(self):
        self._keys.clear()


@dataclass
class Contact:
    id: str
    codename: str
    public_key: str

    @property
    def safety_code(self) -> str:
        return fingerprint(self.public_key)


class ContactBook:
    """Known peers of one local identity"""

    def __init__(self, sessions: SessionKeyCache):
        self.sessions = sessions
        self._contacts: Dict[str, Contact] = {}

    def add_contact(self, codename: str, public_key: str) -> Contact:
        """
        Idempotent add: an existing contact with the same public key is
        renamed rather than duplicated.
        """
        # derive now so a bad key is rejected at add time
        self.sessions.key_for(public_key)

        existing = self._contacts.get(public_key)
        if existing:
            existing.codename = codename or existing.codename
            return existing

        contact = Contact(id=uuid.uuid4().hex, codename=codename, public_key=public_key)
        self._contacts[public_key] = contact
        return contact

    def remove_contact(self, public_key: str) -> bool:
        self.sessions.forget(public_key)
        return self._contacts.pop(public_key, None) is not None

    def get(self, public_key: str) -> Optional[Contact]:
        return self._contacts.get(public_key)

    def list(self) -> List[Contact]:
        return list(self._contacts.values())

    def display_name(self, public_key: str) -> str:
        contact = self._contacts.get(public_key)
        return contact.codename if contact else f"stranger:{fingerprint(public_key)}"
