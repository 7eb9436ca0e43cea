"""
Client configuration, read from environment variables.
"""

import os
from typing import Literal

from pydantic import BaseModel


class ClientSettings(BaseModel):
    """
    Settings for one chat client.

    Attributes:
        relay_url: WebSocket URL of the relay
        data_dir: Directory for the identity vault
        database_url: SQLAlchemy URL for sender keys and groups
        group_wire_format: "message" (one message envelope per member) or
            "group-message" (packet encoding)
        rekey_on_membership_change: Rotate our sender key when a member leaves
    """
    relay_url: str = "ws://localhost:4000/ws"
    data_dir: str = "client_data"
    database_url: str = "sqlite+aiosqlite:///./client_data/chat.db"
    group_wire_format: Literal["message", "group-message"] = "message"
    rekey_on_membership_change: bool = True

    @classmethod
    def from_env(cls) -> 'ClientSettings':
        """Build settings from CHAT_* variables, falling back to defaults"""
        values = {}
        for field_name in cls.model_fields:
            env_name = f"CHAT_{field_name.upper()}"
            if env_name in os.environ:
                values[field_name] = os.environ[env_name]
        return cls(**values)
