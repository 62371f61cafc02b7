"""Per-user broadcast scopes: which live connections belong to which identity."""

from typing import Protocol

from tutor_chat.config import settings


class ConnectionHandle(Protocol):
    connection_id: str

    async def send(self, payload: dict) -> bool:
        ...


class BroadcastScopes:
    """Map each user id to the set of its active connection handles.

    Membership starts when a connection authenticates and ends on disconnect.
    """

    def __init__(self) -> None:
        self._scopes: dict[int, dict[str, ConnectionHandle]] = {}

    def can_join(self, user_id: int) -> bool:
        """Return True if the user has fewer than the maximum allowed connections."""
        active = self._scopes.get(user_id)
        if active is None:
            return True
        return len(active) < settings.max_ws_connections_per_user

    def join(self, user_id: int, handle: ConnectionHandle) -> None:
        """Register a connection in its owner's scope."""
        if user_id not in self._scopes:
            self._scopes[user_id] = {}
        self._scopes[user_id][handle.connection_id] = handle

    def leave(self, user_id: int, handle: ConnectionHandle) -> None:
        """Unregister a connection on disconnect."""
        active = self._scopes.get(user_id)
        if active is not None:
            active.pop(handle.connection_id, None)
            if not active:
                del self._scopes[user_id]

    def members(self, user_id: int) -> list[ConnectionHandle]:
        return list(self._scopes.get(user_id, {}).values())

    def connection_count(self, user_id: int) -> int:
        return len(self._scopes.get(user_id, {}))

    async def broadcast(
        self,
        user_id: int,
        payload: dict,
        *,
        exclude: ConnectionHandle | None = None,
    ) -> int:
        """Send ``payload`` to every connection of ``user_id`` except ``exclude``.

        Returns the number of connections that accepted the message.
        """
        delivered = 0
        for handle in self.members(user_id):
            if exclude is not None and handle.connection_id == exclude.connection_id:
                continue
            if await handle.send(payload):
                delivered += 1
        return delivered


# Single instance shared across the application.
broadcast_scopes = BroadcastScopes()
