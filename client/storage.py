"""
Encrypted identity vault for the chat client.

The long-term identity secret key is stored on disk encrypted with a key
derived from the user's passphrase. It is only held in cleartext by an
UnlockedIdentity for the lifetime of an unlocked session.
"""

import os
import json
import uuid
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from crypto.errors import ChatError
from crypto.identity import IdentityKeyPair, generate_identity
from crypto.primitives import b64decode, b64encode

logger = logging.getLogger(__name__)


class VaultLocked(ChatError):
    """Wrong passphrase, or the vault record is damaged"""
    pass


@dataclass(frozen=True)
class UnlockedIdentity:
    """An identity whose secret key is available for this session"""
    identity_id: str
    codename: str
    keys: IdentityKeyPair

    @property
    def public_key(self) -> str:
        return self.keys.public_key_b64

    def get_identity_secret_key(self) -> bytes:
        return self.keys.secret_key


class IdentityVault:
    """
    Manages passphrase-encrypted identity records.

    One JSON file per identity: public data in the clear, the secret key
    sealed with AES-256-GCM under a PBKDF2-derived key.
    """

    ITERATIONS = 100000

    def __init__(self, storage_dir: str = "client_data"):
        """
        Initialize the vault.

        Args:
            storage_dir: Directory to store identity records
        """
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)

    def derive_key(self, passphrase: str, salt: bytes) -> bytes:
        """
        Derive encryption key from passphrase using PBKDF2.

        Args:
            passphrase: User's passphrase
            salt: Salt for key derivation

        Returns:
            32-byte encryption key
        """
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=self.ITERATIONS,
        )
        return kdf.derive(passphrase.encode())

    def _path(self, identity_id: str) -> Path:
        return self.storage_dir / f"{identity_id}.identity.json"

    def create(self, codename: str, passphrase: str) -> UnlockedIdentity:
        """Generate a new identity and persist it encrypted"""
        identity_id = uuid.uuid4().hex
        keys = generate_identity()

        salt = os.urandom(16)
        nonce = os.urandom(12)
        sealed = AESGCM(self.derive_key(passphrase, salt)).encrypt(
            nonce, keys.secret_key, keys.public_key
        )

        record = {
            'identity_id': identity_id,
            'codename': codename,
            'public_key': keys.public_key_b64,
            'salt': b64encode(salt),
            'nonce': b64encode(nonce),
            'sealed_secret_key': b64encode(sealed),
            'created_at': datetime.now(timezone.utc).isoformat()
        }
        with open(self._path(identity_id), "w") as f:
            json.dump(record, f)

        logger.info("Created identity %s (%s)", codename, identity_id)
        return UnlockedIdentity(identity_id=identity_id, codename=codename, keys=keys)

    def unlock(self, identity_id: str, passphrase: str) -> UnlockedIdentity:
        """
        Decrypt an identity with its passphrase.

        Raises:
            VaultLocked: Unknown identity, wrong passphrase or damaged record
        """
        record = self._read(identity_id)
        if record is None:
            raise VaultLocked(f"No identity {identity_id}")

        public_key = b64decode(record['public_key'])
        key = self.derive_key(passphrase, b64decode(record['salt']))
        try:
            secret_key = AESGCM(key).decrypt(
                b64decode(record['nonce']), b64decode(record['sealed_secret_key']), public_key
            )
        except InvalidTag as e:
            raise VaultLocked("Wrong passphrase") from e

        keys = IdentityKeyPair.from_secret_key(secret_key)
        if keys.public_key != public_key:
            raise VaultLocked("Identity record is inconsistent")
        return UnlockedIdentity(identity_id=identity_id, codename=record['codename'], keys=keys)

    def _read(self, identity_id: str) -> Optional[dict]:
        path = self._path(identity_id)
        if not path.exists():
            return None
        with open(path) as f:
            return json.load(f)

    def list_identities(self) -> List[dict]:
        """Public data of every stored identity"""
        identities = []
        for path in sorted(self.storage_dir.glob("*.identity.json")):
            with open(path) as f:
                record = json.load(f)
            identities.append({
                'identity_id': record['identity_id'],
                'codename': record['codename'],
                'public_key': record['public_key'],
                'created_at': record['created_at']
            })
        return identities

    def delete(self, identity_id: str) -> bool:
        path = self._path(identity_id)
        if path.exists():
            path.unlink()
            return True
        return False
