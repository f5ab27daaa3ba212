from pydantic import BaseModel
from typing import Optional


class RoomMember(BaseModel):
    connection_id: str
    user_id: Optional[str] = None

class RoomDetailsResponse(BaseModel):
    room_id: str
    member_count: int
    members: list[RoomMember]
