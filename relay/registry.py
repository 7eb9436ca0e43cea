"""
In-memory connection registry.

Maps a public key to the set of live connections registered under it.
Nothing is persisted: an entry exists from the first register until its
last connection closes.
"""

import logging
from typing import Dict, List, Set

logger = logging.getLogger(__name__)


class Connection:
    """
    One live transport connection.

    Compared by identity, so it can be kept in sets even when the wrapped
    socket object is not hashable.
    """

    def __init__(self, websocket, label: str = ""):
        self.websocket = websocket
        self.label = label

    async def send_text(self, data: str):
        await self.websocket.send_text(data)

    def __repr__(self) -> str:
        return f"Connection({self.label or hex(id(self))})"


class ConnectionRegistry:
    """Manages active connections per public key"""

    def __init__(self):
        self._connections: Dict[str, Set[Connection]] = {}

    def register(self, public_key: str, connection: Connection):
        """Bind a connection to a public key; a key may have many connections"""
        connections = self._connections.setdefault(public_key, set())
        connections.add(connection)
        logger.info("Registered connection for %s... (total=%d)", public_key[:16], len(connections))

    def unregister(self, connection: Connection) -> List[str]:
        """
        Remove a connection from every public key it was registered under.

        Returns:
            Public keys the connection was removed from
        """
        removed = []
        for public_key, connections in list(self._connections.items()):
            if connection in connections:
                connections.discard(connection)
                removed.append(public_key)
                if not connections:
                    del self._connections[public_key]
                logger.info("Connection closed for %s... remaining=%d", public_key[:16], len(connections))
        return removed

    def connections_for(self, public_key: str) -> List[Connection]:
        """Snapshot of the live connections of a key"""
        return list(self._connections.get(public_key, ()))

    def is_online(self, public_key: str) -> bool:
        return public_key in self._connections

    def online_keys(self) -> List[str]:
        return list(self._connections.keys())

    def connection_count(self) -> int:
        return len(set().union(*self._connections.values())) if self._connections else 0
