import asyncio
from typing import List, Optional

from client.errors import SignalingUnavailable
from client.peer_session import PeerSessionManager
from logging_config import get_logger
from schemas.messages import (
    ErrorMessage,
    JoinData,
    JoinMessage,
    LeaveData,
    LeaveMessage,
    Member,
    MemberJoinedMessage,
    MemberLeftMessage,
    RoomMembersMessage,
    SignalAnswerMessage,
    SignalIceMessage,
    SignalOfferMessage,
)

logger = get_logger(__name__)


class RoomMembershipClient:
    """The local view of one call room, driving peer sessions from it.

    Whoever joins calls everyone already in the room; members that were
    there first wait for the newcomer's offer.
    """

    def __init__(self, channel, sessions: PeerSessionManager, user_id: str):
        self.channel = channel
        self.sessions = sessions
        self.user_id = user_id
        self.room_id: Optional[str] = None
        self.members: List[Member] = []

    def member(self, connection_id: str) -> Optional[Member]:
        return next((m for m in self.members if m.connection_id == connection_id), None)

    async def join(self, room_id: str):
        if self.room_id is not None and self.room_id != room_id:
            await self.leave()
        self.room_id = room_id
        self.members = []
        logger.info(f"Joining room {room_id} as {self.user_id}")
        await self.channel.send(JoinMessage(data=JoinData(room_id=room_id, user_id=self.user_id)))

    async def leave(self):
        if self.room_id is None:
            return
        room_id, self.room_id = self.room_id, None
        self.members = []
        await self.sessions.close_all()
        try:
            await self.channel.send(LeaveMessage(data=LeaveData(room_id=room_id, user_id=self.user_id)))
        except SignalingUnavailable:
            # The gateway removes us from the room when it sees the disconnect
            logger.debug(f"Left room {room_id} while signaling was down")
        logger.info(f"Left room {room_id}")

    def reset(self):
        """Forget the membership view of a connection that no longer exists."""
        self.members = []

    async def dispatch(self, message):
        if isinstance(message, ErrorMessage):
            logger.warning(f"Signaling server rejected a message: {message.data.detail}")
            return
        if self.room_id is None:
            logger.debug(f"Not in a room, ignoring {message.event}")
            return

        if isinstance(message, RoomMembersMessage):
            own_id = self.channel.connection_id
            snapshot = [m for m in message.data if m.connection_id != own_id]
            # Members announced since our join are newer than the snapshot; they call us
            announced = [m for m in self.members if m.connection_id not in {s.connection_id for s in snapshot}]
            self.members = snapshot + announced
            logger.info(f"Room {self.room_id} has {len(self.members)} other members")
            await asyncio.gather(*(self.sessions.call(m.connection_id) for m in snapshot))
        elif isinstance(message, MemberJoinedMessage):
            if self.member(message.data.connection_id) is None:
                self.members.append(message.data)
            logger.info(f"{message.data.user_id} ({message.data.connection_id}) joined room {self.room_id}")
        elif isinstance(message, MemberLeftMessage):
            self.members = [m for m in self.members if m.connection_id != message.data.connection_id]
            logger.info(f"{message.data.user_id} ({message.data.connection_id}) left room {self.room_id}")
            await self.sessions.hang_up(message.data.connection_id)
        elif getattr(message, "sender", None) is None:
            logger.debug(f"Dropping {message.event} without a sender")
        elif isinstance(message, SignalOfferMessage):
            await self.sessions.handle_offer(message.sender, message.data.offer.model_dump(by_alias=True))
        elif isinstance(message, SignalAnswerMessage):
            await self.sessions.handle_answer(message.sender, message.data.answer.model_dump(by_alias=True))
        elif isinstance(message, SignalIceMessage):
            await self.sessions.handle_ice(message.sender, message.data.candidate.model_dump(by_alias=True))
        else:
            logger.debug(f"Unhandled {message.event}")
