from fastapi import APIRouter, HTTPException, Request
from schemas.rooms import RoomDetailsResponse, RoomMember
from logging_config import get_logger

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/rooms", tags=["rooms"])


@rooms_router.get("/{room_id}", response_model=RoomDetailsResponse)
async def get_room_details(room_id: str, request: Request):
    """
    Current members of a call room, in join order.

    Rooms exist only while someone is in them, so an empty or unknown
    room is reported as 404.
    """
    client_host = request.client.host if request.client else 'unknown'
    logger.info(f"Room details request for {room_id} from {client_host}")

    members = request.app.state.gateway.registry.members(room_id)
    if not members:
        logger.debug(f"Room details failed: Room {room_id} not found")
        raise HTTPException(status_code=404, detail="Room not found")

    return RoomDetailsResponse(
        room_id=room_id,
        member_count=len(members),
        members=[RoomMember(connection_id=m.connection_id, user_id=m.user_id) for m in members],
    )
