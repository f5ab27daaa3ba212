"""Wire messages exchanged over the signaling websocket.

Every frame is a JSON object ``{"event": <name>, "data": <payload>}``. The
set of events is closed: anything that does not validate against one of
the variants below is rejected before it reaches the gateway's dispatch.
Field names on the wire are camelCase, Python attributes are snake_case.
"""
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class PassThroughModel(BaseModel):
    # Negotiation payloads are relayed verbatim, unknown keys included
    model_config = ConfigDict(populate_by_name=True, extra="allow")


class Member(WireModel):
    connection_id: str = Field(alias="connectionId")
    user_id: Optional[str] = Field(None, alias="userId")


class SessionDescription(PassThroughModel):
    type: Literal["offer", "answer"]
    sdp: str


class IceCandidate(PassThroughModel):
    candidate: str = ""
    sdp_mid: Optional[str] = Field(None, alias="sdpMid")
    sdp_mline_index: Optional[int] = Field(None, alias="sdpMLineIndex")


# -- payloads ---------------------------------------------------------------

class IdentifyData(WireModel):
    user_id: str = Field(alias="userId", min_length=1)


class JoinData(WireModel):
    room_id: str = Field(alias="roomId", min_length=1)
    # Falls back to the identity recorded by `identify` when absent
    user_id: Optional[str] = Field(None, alias="userId", min_length=1)


class LeaveData(WireModel):
    room_id: str = Field(alias="roomId", min_length=1)
    user_id: Optional[str] = Field(None, alias="userId")


class OfferData(WireModel):
    offer: SessionDescription
    to: str = Field(min_length=1)
    sender: Optional[str] = Field(None, alias="from")


class AnswerData(WireModel):
    answer: SessionDescription
    to: str = Field(min_length=1)
    sender: Optional[str] = Field(None, alias="from")


class IceData(WireModel):
    candidate: IceCandidate
    to: str = Field(min_length=1)
    sender: Optional[str] = Field(None, alias="from")


class ConnectedData(WireModel):
    connection_id: str = Field(alias="connectionId")


class ErrorData(WireModel):
    detail: str


# -- client -> server ---------------------------------------------------------

class IdentifyMessage(WireModel):
    event: Literal["identify"] = "identify"
    data: IdentifyData


class JoinMessage(WireModel):
    event: Literal["join"] = "join"
    data: JoinData


class LeaveMessage(WireModel):
    event: Literal["leave"] = "leave"
    data: LeaveData


class SignalMessageBase(WireModel):
    """Common behaviour of the three relayed negotiation messages."""

    @property
    def to(self) -> str:
        return self.data.to

    @property
    def sender(self) -> Optional[str]:
        return self.data.sender

    def with_sender(self, sender_id: str):
        data = self.data.model_copy(update={"sender": sender_id})
        return self.model_copy(update={"data": data})


class SignalOfferMessage(SignalMessageBase):
    event: Literal["signal-offer"] = "signal-offer"
    data: OfferData


class SignalAnswerMessage(SignalMessageBase):
    event: Literal["signal-answer"] = "signal-answer"
    data: AnswerData


class SignalIceMessage(SignalMessageBase):
    event: Literal["signal-ice"] = "signal-ice"
    data: IceData


# -- server -> client ---------------------------------------------------------

class ConnectedMessage(WireModel):
    event: Literal["connected"] = "connected"
    data: ConnectedData


class ErrorMessage(WireModel):
    event: Literal["error"] = "error"
    data: ErrorData


class RoomMembersMessage(WireModel):
    event: Literal["room-members"] = "room-members"
    data: List[Member]


class MemberJoinedMessage(WireModel):
    event: Literal["member-joined"] = "member-joined"
    data: Member


class MemberLeftMessage(WireModel):
    event: Literal["member-left"] = "member-left"
    data: Member


SignalMessage = Union[SignalOfferMessage, SignalAnswerMessage, SignalIceMessage]

ClientMessage = Annotated[
    Union[
        IdentifyMessage,
        JoinMessage,
        LeaveMessage,
        SignalOfferMessage,
        SignalAnswerMessage,
        SignalIceMessage,
    ],
    Field(discriminator="event"),
]

ServerMessage = Annotated[
    Union[
        ConnectedMessage,
        ErrorMessage,
        RoomMembersMessage,
        MemberJoinedMessage,
        MemberLeftMessage,
        SignalOfferMessage,
        SignalAnswerMessage,
        SignalIceMessage,
    ],
    Field(discriminator="event"),
]

_client_adapter = TypeAdapter(ClientMessage)
_server_adapter = TypeAdapter(ServerMessage)


class InvalidMessage(ValueError):
    """A frame that is not one of the known message variants."""


def _describe(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ())) or "message"
    return f"{location}: {first.get('msg', 'invalid')}"


def parse_client_message(raw) -> ClientMessage:
    try:
        return _client_adapter.validate_json(raw)
    except ValidationError as e:
        raise InvalidMessage(_describe(e)) from e


def parse_server_message(raw) -> ServerMessage:
    try:
        return _server_adapter.validate_json(raw)
    except ValidationError as e:
        raise InvalidMessage(_describe(e)) from e


def encode(message: WireModel) -> str:
    return message.model_dump_json(by_alias=True)
