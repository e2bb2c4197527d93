from typing import Dict, Generic, Hashable, List, Set, TypeVar

Connection = TypeVar("Connection", bound=Hashable)


class PresenceRegistry(Generic[Connection]):
    """
    In-memory directory of open realtime connections, keyed by user id.

    A user may hold several connections (tabs, devices); a user is online
    while at least one is registered. Not thread-safe: mutate it from the
    event loop only.
    """

    def __init__(self) -> None:
        self._connections: Dict[str, Set[Connection]] = {}

    def register(self, user_id: str, connection: Connection) -> bool:
        """Add a connection. Returns True if this made the user online."""
        conns = self._connections.setdefault(user_id, set())
        first = not conns
        conns.add(connection)
        return first

    def deregister(self, user_id: str, connection: Connection) -> bool:
        """Remove one connection. Returns True if the user went offline."""
        conns = self._connections.get(user_id)
        if not conns or connection not in conns:
            return False
        conns.discard(connection)
        if conns:
            return False
        del self._connections[user_id]
        return True

    def lookup(self, user_id: str) -> List[Connection]:
        return list(self._connections.get(user_id, ()))

    def is_online(self, user_id: str) -> bool:
        return bool(self._connections.get(user_id))

    def online_user_ids(self) -> List[str]:
        return list(self._connections)

    def all_connections(self) -> List[Connection]:
        return [conn for conns in self._connections.values() for conn in conns]

    def __len__(self) -> int:
        return sum(len(conns) for conns in self._connections.values())
