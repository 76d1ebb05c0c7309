"""Registry of users currently connected to the relay."""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

log = logging.getLogger(__name__)


@dataclass
class Connection:
    """Connected user."""
    user_id: str
    ws: Any
    connected_at: float = field(default_factory=time.time)

    @property
    def is_open(self) -> bool:
        return not getattr(self.ws, "closed", True)


@dataclass
class ConnectionRegistry:
    """Maps an online user id to its live relay connection."""
    connections: dict[str, Connection] = field(default_factory=dict)

    def register(self, user_id: str, connection: Connection):
        """Associate user with connection. Last connection wins."""
        previous = self.connections.get(user_id)
        if previous and previous is not connection:
            log.info("Connection for %s superseded", user_id)
        self.connections[user_id] = connection

    def unregister(self, user_id: str, connection: Connection) -> bool:
        """Remove the entry only if it still points at `connection`."""
        current = self.connections.get(user_id)
        if current is not connection:
            return False
        del self.connections[user_id]
        return True

    def lookup(self, user_id: str) -> Optional[Connection]:
        return self.connections.get(user_id)

    def is_online(self, user_id: str) -> bool:
        return user_id in self.connections

    def list_users(self) -> list[str]:
        """List connected user ids."""
        return list(self.connections.keys())

    def __len__(self) -> int:
        return len(self.connections)
