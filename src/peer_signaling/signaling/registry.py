from collections import defaultdict
from typing import Optional

import anyio

from peer_signaling.signaling.types import ConnId


class SessionRegistry:
    """
    Tracks which connections are members of which rooms.

    The registry is plain data and never notifies anyone. Callers that
    combine a membership change with a fan-out hold `lock` across both so
    a broadcast never sees a half-applied join or leave.
    """

    def __init__(self):
        self.lock = anyio.Lock()

        self._rooms: dict[str, set[ConnId]] = defaultdict(set)
        # Rooms per connection in join order, most recent last.
        self._memberships: dict[ConnId, list[str]] = defaultdict(list)

    def join(self, conn_id: ConnId, room: str) -> bool:
        """
        Adds `conn_id` to `room`, creating the room if needed.

        Returns False if the connection was already a member. Re-joining
        still makes `room` the connection's current room.
        """
        members = self._rooms[room]
        added = conn_id not in members
        members.add(conn_id)

        joined = self._memberships[conn_id]
        if room in joined:
            joined.remove(room)
        joined.append(room)

        return added

    def leave(self, conn_id: ConnId) -> list[str]:
        """Removes `conn_id` from every room. Returns the rooms it left."""
        rooms = self._memberships.pop(conn_id, [])

        for room in rooms:
            members = self._rooms.get(room)
            if members is None:
                continue
            members.discard(conn_id)
            if not members:
                # Name stays reusable, a later join recreates the set.
                del self._rooms[room]

        return rooms

    def members_of(self, room: str) -> frozenset[ConnId]:
        members = self._rooms.get(room)
        return frozenset(members) if members else frozenset()

    def current_room(self, conn_id: ConnId) -> Optional[str]:
        """The room `conn_id` most recently joined, if any."""
        rooms = self._memberships.get(conn_id)
        return rooms[-1] if rooms else None

    def room_count(self) -> int:
        return len(self._rooms)
