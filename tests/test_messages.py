import json

import pytest

from schemas.messages import (
    IceCandidate,
    IceData,
    InvalidMessage,
    JoinMessage,
    Member,
    RoomMembersMessage,
    SignalIceMessage,
    SignalOfferMessage,
    encode,
    parse_client_message,
    parse_server_message,
)


def test_parse_join_uses_camel_case_fields():
    message = parse_client_message('{"event": "join", "data": {"roomId": "apt-42", "userId": "doctor"}}')

    assert isinstance(message, JoinMessage)
    assert message.data.room_id == "apt-42"
    assert message.data.user_id == "doctor"


def test_parse_offer_keeps_from_as_sender():
    raw = json.dumps({
        "event": "signal-offer",
        "data": {"offer": {"type": "offer", "sdp": "v=0"}, "to": "b", "from": "a"},
    })

    message = parse_client_message(raw)

    assert isinstance(message, SignalOfferMessage)
    assert message.to == "b"
    assert message.sender == "a"


@pytest.mark.parametrize("raw", [
    "not json",
    '{"event": "teleport", "data": {}}',
    '{"event": "join", "data": {"roomId": "apt-42", "userId": ""}}',
    '{"event": "join", "data": {"roomId": "", "userId": "doctor"}}',
    '{"event": "signal-offer", "data": {"offer": {"type": "offer", "sdp": "v=0"}}}',
    '{"data": {"roomId": "apt-42", "userId": "doctor"}}',
])
def test_invalid_frames_are_rejected(raw):
    with pytest.raises(InvalidMessage):
        parse_client_message(raw)


def test_server_only_events_are_not_accepted_from_clients():
    with pytest.raises(InvalidMessage):
        parse_client_message('{"event": "room-members", "data": []}')


def test_encode_uses_wire_names():
    message = RoomMembersMessage(data=[Member(connection_id="x", user_id="doctor")])

    assert json.loads(encode(message)) == {
        "event": "room-members",
        "data": [{"connectionId": "x", "userId": "doctor"}],
    }


def test_with_sender_rewrites_only_the_sender():
    original = SignalIceMessage(data=IceData(
        candidate=IceCandidate(candidate="candidate:1 1 UDP 1 10.0.0.1 9 typ host", sdp_mid="0", sdp_mline_index=0),
        to="b",
        sender="forged",
    ))

    rewritten = original.with_sender("a")

    assert rewritten.sender == "a"
    assert original.sender == "forged"
    assert rewritten.data.candidate == original.data.candidate
    assert json.loads(encode(rewritten))["data"]["from"] == "a"


def test_unknown_candidate_fields_pass_through():
    raw = json.dumps({
        "event": "signal-ice",
        "data": {
            "candidate": {"candidate": "", "sdpMid": "0", "sdpMLineIndex": 0, "usernameFragment": "abcd"},
            "to": "b",
        },
    })

    message = parse_client_message(raw)

    assert json.loads(encode(message))["data"]["candidate"]["usernameFragment"] == "abcd"


def test_parse_server_room_members():
    message = parse_server_message('{"event": "room-members", "data": [{"connectionId": "x", "userId": "doctor"}]}')

    assert isinstance(message, RoomMembersMessage)
    assert message.data[0].connection_id == "x"


def test_join_user_id_is_optional():
    message = parse_client_message('{"event": "join", "data": {"roomId": "apt-42"}}')

    assert message.data.user_id is None
