"""
Client bootstrap: builds the vault, the local database and the relay
connection from ClientSettings.
"""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

from .config import ClientSettings
from .connection import RelayConnection
from .database import Database, DatabaseGroupDirectory, DatabaseSenderKeyStore
from .messenger import SecureMessenger
from .storage import IdentityVault, UnlockedIdentity

logger = logging.getLogger(__name__)


def open_vault(settings: Optional[ClientSettings] = None) -> IdentityVault:
    """Identity vault in the configured data directory"""
    settings = settings or ClientSettings.from_env()
    return IdentityVault(settings.data_dir)


@asynccontextmanager
async def open_messenger(identity: UnlockedIdentity,
                         settings: Optional[ClientSettings] = None) -> AsyncIterator[SecureMessenger]:
    """
    Connect an unlocked identity to the configured relay and database.

    Yields a SecureMessenger whose transport is the registered
    RelayConnection; the connection and the database are closed on exit.

    Raises:
        TransportUnavailable: If the relay cannot be reached
    """
    settings = settings or ClientSettings.from_env()
    Path(settings.data_dir).mkdir(parents=True, exist_ok=True)

    database = Database(settings.database_url)
    await database.create_tables()
    connection = RelayConnection(settings.relay_url, identity.public_key)
    try:
        await connection.connect()
        logger.info("Identity %s online at %s", identity.codename, settings.relay_url)
        yield SecureMessenger(
            identity,
            connection,
            DatabaseSenderKeyStore(database, identity.identity_id),
            DatabaseGroupDirectory(database, identity.identity_id),
            settings
        )
    finally:
        await connection.close()
        await database.close()
