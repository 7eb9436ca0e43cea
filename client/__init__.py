"""
Chat client: identity vault, local stores, relay connection and messenger.
"""

from .config import ClientSettings
from .storage import IdentityVault, UnlockedIdentity, VaultLocked
from .groups import Group, GroupDirectory, MemoryGroupDirectory, apply_group_event
from .contacts import Contact, ContactBook, SessionKeyCache
from .connection import RelayConnection
from .messenger import SecureMessenger, IncomingMessage, DeliveryFailure, UnknownGroup, GroupPermissionError
from .app import open_vault, open_messenger

__all__ = [
    'ClientSettings',
    'IdentityVault',
    'UnlockedIdentity',
    'VaultLocked',
    'Group',
    'GroupDirectory',
    'MemoryGroupDirectory',
    'apply_group_event',
    'Contact',
    'ContactBook',
    'SessionKeyCache',
    'RelayConnection',
    'SecureMessenger',
    'IncomingMessage',
    'DeliveryFailure',
    'UnknownGroup',
    'GroupPermissionError',
    'open_vault',
    'open_messenger'
]
