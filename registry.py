from typing import Awaitable, Callable, List, Optional

from backend import RegistryStore
from logging_config import get_logger
from schemas.messages import Member, MemberJoinedMessage, MemberLeftMessage, RoomMembersMessage, WireModel

logger = get_logger(__name__)

Deliver = Callable[[str, WireModel], Awaitable[bool]]


class RoomRegistry:
    """Tracks which connections are in which room and announces changes.

    All state lives in the injected store. Handlers run to completion on
    one event loop, so calls into the registry are serialized per process;
    the store keeps each mutation atomic for the multi-instance case.
    """

    def __init__(self, store: RegistryStore, deliver: Deliver):
        self.store = store
        self.deliver = deliver

    async def join(self, room_id: str, connection_id: str, user_id: Optional[str]) -> List[Member]:
        """Add the connection to the room and return who was there before it.

        The joiner gets its `room-members` snapshot before anyone is told
        about it. Later joins can only announce themselves to it after that
        snapshot, so every entrant shows up in exactly one of the two.
        """
        member = Member(connection_id=connection_id, user_id=user_id)
        outcome = self.store.add_member(room_id, member)
        await self.deliver(connection_id, RoomMembersMessage(data=outcome.existing))
        if not outcome.added:
            logger.info(f"Connection {connection_id} re-joined room {room_id}, membership unchanged")
            return outcome.existing

        logger.info(f"User {user_id} ({connection_id}) joined room {room_id} ({len(outcome.existing) + 1} members)")
        announcement = MemberJoinedMessage(data=member)
        for existing in outcome.existing:
            await self.deliver(existing.connection_id, announcement)
        return outcome.existing

    async def leave(self, room_id: str, connection_id: str) -> Optional[Member]:
        outcome = self.store.remove_member(room_id, connection_id)
        if outcome.removed is None:
            logger.debug(f"Leave ignored: {connection_id} is not in room {room_id}")
            return None

        if not outcome.remaining:
            logger.info(f"Connection {connection_id} left room {room_id}, room closed")
            return outcome.removed

        logger.info(f"Connection {connection_id} left room {room_id} ({len(outcome.remaining)} members)")
        announcement = MemberLeftMessage(data=outcome.removed)
        for member in outcome.remaining:
            await self.deliver(member.connection_id, announcement)
        return outcome.removed

    async def disconnect_cleanup(self, connection_id: str) -> List[str]:
        """Apply leave to every room the connection is in; returns those rooms."""
        left = []
        for room_id in self.store.rooms_for(connection_id):
            if await self.leave(room_id, connection_id) is not None:
                left.append(room_id)
        if left:
            logger.debug(f"Disconnect cleanup for {connection_id} removed it from {left}")
        return left

    def members(self, room_id: str) -> List[Member]:
        return self.store.get_members(room_id)
