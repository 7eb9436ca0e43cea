"""
Relay configuration, read from environment variables.
"""

import os

from pydantic import BaseModel, Field


class RelaySettings(BaseModel):
    """Settings for the relay process"""
    host: str = "0.0.0.0"
    port: int = Field(default=4000, ge=1, le=65535)
    log_level: str = "info"

    @classmethod
    def from_env(cls) -> 'RelaySettings':
        """Build settings from RELAY_* variables, falling back to defaults"""
        values = {}
        for field_name, env_name in (('host', 'RELAY_HOST'),
                                     ('port', 'RELAY_PORT'),
                                     ('log_level', 'RELAY_LOG_LEVEL')):
            if env_name in os.environ:
                values[field_name] = os.environ[env_name]
        return cls(**values)
