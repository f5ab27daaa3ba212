import asyncio
import json

import pytest

from app import ConnectionGateway
from backend import MemoryStore
from schemas.messages import ErrorData, ErrorMessage, JoinData, JoinMessage


def join(websocket, room_id, user_id):
    websocket.send_json({"event": "join", "data": {"roomId": room_id, "userId": user_id}})


def test_connection_ids_are_unique(client):
    with client.websocket_connect("/ws") as first, client.websocket_connect("/ws") as second:
        first_id = first.receive_json()["data"]["connectionId"]
        second_id = second.receive_json()["data"]["connectionId"]
    assert first_id != second_id


def test_two_party_consultation(client):
    with client.websocket_connect("/ws") as doctor:
        doctor_id = doctor.receive_json()["data"]["connectionId"]
        join(doctor, "apt-42", "doctor")
        assert doctor.receive_json() == {"event": "room-members", "data": []}

        with client.websocket_connect("/ws") as patient:
            patient_id = patient.receive_json()["data"]["connectionId"]
            join(patient, "apt-42", "patient")

            assert patient.receive_json() == {
                "event": "room-members",
                "data": [{"connectionId": doctor_id, "userId": "doctor"}],
            }
            assert doctor.receive_json() == {
                "event": "member-joined",
                "data": {"connectionId": patient_id, "userId": "patient"},
            }

            doctor.send_json({"event": "leave", "data": {"roomId": "apt-42", "userId": "doctor"}})
            assert patient.receive_json() == {
                "event": "member-left",
                "data": {"connectionId": doctor_id, "userId": "doctor"},
            }


def test_disconnect_notifies_remaining_members(client, gateway):
    with client.websocket_connect("/ws") as patient:
        patient_id = patient.receive_json()["data"]["connectionId"]
        join(patient, "apt-42", "patient")
        patient.receive_json()

        with client.websocket_connect("/ws") as doctor:
            doctor_id = doctor.receive_json()["data"]["connectionId"]
            join(doctor, "apt-42", "doctor")
            doctor.receive_json()
            patient.receive_json()

        left = patient.receive_json()
        assert left["event"] == "member-left"
        assert left["data"]["connectionId"] == doctor_id
        assert doctor_id not in gateway.connections
        assert [m.connection_id for m in gateway.registry.members("apt-42")] == [patient_id]


def test_disconnect_leaves_every_room_exactly_once(client):
    with client.websocket_connect("/ws") as y, client.websocket_connect("/ws") as z:
        y.receive_json()
        z.receive_json()
        join(y, "r1", "y")
        y.receive_json()
        join(z, "r2", "z")
        z.receive_json()

        with client.websocket_connect("/ws") as x:
            x_id = x.receive_json()["data"]["connectionId"]
            join(x, "r1", "x")
            x.receive_json()
            join(x, "r2", "x")
            x.receive_json()
            assert y.receive_json()["event"] == "member-joined"
            assert z.receive_json()["event"] == "member-joined"

        for other in (y, z):
            left = other.receive_json()
            assert left == {"event": "member-left", "data": {"connectionId": x_id, "userId": "x"}}
            # The next frame is the reply to a fresh join, so no second member-left was queued
            join(other, "lobby", "nurse")
            assert other.receive_json()["event"] == "room-members"


def test_signal_sender_is_rewritten(client):
    with client.websocket_connect("/ws") as a, client.websocket_connect("/ws") as b:
        a_id = a.receive_json()["data"]["connectionId"]
        b_id = b.receive_json()["data"]["connectionId"]

        a.send_json({
            "event": "signal-offer",
            "data": {"offer": {"type": "offer", "sdp": "v=0"}, "to": b_id, "from": "someone-else"},
        })

        relayed = b.receive_json()
        assert relayed["event"] == "signal-offer"
        assert relayed["data"]["from"] == a_id
        assert relayed["data"]["offer"] == {"type": "offer", "sdp": "v=0"}


def test_signal_to_stale_id_is_silently_dropped(client):
    with client.websocket_connect("/ws") as a:
        a.receive_json()
        a.send_json({
            "event": "signal-ice",
            "data": {"candidate": {"candidate": "", "sdpMid": "0", "sdpMLineIndex": 0}, "to": "no-such-connection"},
        })
        join(a, "apt-42", "doctor")
        assert a.receive_json() == {"event": "room-members", "data": []}


def test_invalid_frame_gets_error_and_connection_stays_open(client):
    with client.websocket_connect("/ws") as a:
        a.receive_json()
        a.send_text('{"event": "teleport", "data": {}}')

        error = a.receive_json()
        assert error["event"] == "error"
        assert error["data"]["detail"]

        join(a, "apt-42", "doctor")
        assert a.receive_json() == {"event": "room-members", "data": []}


def test_identify_records_user(client, store):
    with client.websocket_connect("/ws") as a:
        a_id = a.receive_json()["data"]["connectionId"]
        a.send_json({"event": "identify", "data": {"userId": "doctor"}})
        join(a, "apt-42", "doctor")
        a.receive_json()
        assert store.get_identity(a_id) == "doctor"


def test_room_details_endpoint(client):
    assert client.get("/rooms/apt-42").status_code == 404

    with client.websocket_connect("/ws") as a:
        a_id = a.receive_json()["data"]["connectionId"]
        join(a, "apt-42", "doctor")
        a.receive_json()

        response = client.get("/rooms/apt-42")
        assert response.status_code == 200
        assert response.json() == {
            "room_id": "apt-42",
            "member_count": 1,
            "members": [{"connection_id": a_id, "user_id": "doctor"}],
        }


def test_health_endpoint(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "instance_id": "test-instance", "connections": 0}


class FakeWebSocket:
    def __init__(self):
        self.accepted = False
        self.frames = []

    async def accept(self):
        self.accepted = True

    async def send_text(self, frame):
        self.frames.append(frame)


class BrokenWebSocket(FakeWebSocket):
    async def send_text(self, frame):
        raise RuntimeError("socket is closing")


@pytest.mark.asyncio
async def test_disconnect_runs_once():
    gateway = ConnectionGateway(MemoryStore(), instance_id="test-instance")
    other = await gateway.connect(FakeWebSocket())
    leaving = await gateway.connect(FakeWebSocket())
    await gateway.registry.join("apt-42", other, "patient")
    await gateway.registry.join("apt-42", leaving, "doctor")
    other_socket = gateway.connections[other]
    frames_before = len(other_socket.frames)

    assert await gateway.disconnect(leaving) is True
    assert await gateway.disconnect(leaving) is False

    assert len(other_socket.frames) == frames_before + 1
    assert gateway.store.instance_for(leaving) is None


@pytest.mark.asyncio
async def test_send_failure_is_reported_not_raised():
    gateway = ConnectionGateway(MemoryStore(), instance_id="test-instance")
    connection_id = await gateway.connect(FakeWebSocket())
    gateway.connections[connection_id] = BrokenWebSocket()

    assert await gateway.send_frame(connection_id, "{}") is False


@pytest.mark.asyncio
async def test_deliver_to_unknown_connection_returns_false():
    gateway = ConnectionGateway(MemoryStore(), instance_id="test-instance")

    assert await gateway.deliver("unknown", ErrorMessage(data=ErrorData(detail="nobody home"))) is False


class PublishingStore(MemoryStore):
    shared = True

    def __init__(self):
        super().__init__()
        self.published = []

    def publish_to_instance(self, instance_id, payload):
        self.published.append((instance_id, payload))
        return True


@pytest.mark.asyncio
async def test_deliver_to_connection_on_another_instance_is_published():
    store = PublishingStore()
    gateway = ConnectionGateway(store, instance_id="instance-a")
    store.register_connection("remote", "instance-b")

    delivered = await gateway.deliver("remote", ErrorMessage(data=ErrorData(detail="hello")))

    assert delivered is True
    [(instance_id, payload)] = store.published
    assert instance_id == "instance-b"
    assert payload["to"] == "remote"
    assert '"detail":"hello"' in payload["frame"]


class StallingWebSocket(FakeWebSocket):
    """Holds up its next send by ``stall`` seconds, like a socket under backpressure."""

    def __init__(self):
        super().__init__()
        self.stall = 0

    async def send_text(self, frame):
        stall, self.stall = self.stall, 0
        if stall:
            await asyncio.sleep(stall)
        self.frames.append(frame)


@pytest.mark.asyncio
async def test_concurrent_joins_reach_every_member_after_its_snapshot():
    gateway = ConnectionGateway(MemoryStore(), instance_id="test-instance")
    sockets = {}
    for _ in range(3):
        websocket = StallingWebSocket()
        sockets[await gateway.connect(websocket)] = websocket
    x, y, z = sockets

    await gateway.handle(x, JoinMessage(data=JoinData(room_id="r", user_id="x")))
    for websocket in sockets.values():
        websocket.stall = 0.05
    await asyncio.gather(
        gateway.handle(y, JoinMessage(data=JoinData(room_id="r", user_id="y"))),
        gateway.handle(z, JoinMessage(data=JoinData(room_id="r", user_id="z"))),
    )

    for conn, websocket in sockets.items():
        events = [json.loads(frame) for frame in websocket.frames][1:]
        assert events[0]["event"] == "room-members"
        seen = [m["connectionId"] for m in events[0]["data"]]
        seen += [e["data"]["connectionId"] for e in events[1:] if e["event"] == "member-joined"]
        assert sorted(seen) == sorted(c for c in sockets if c != conn)


def test_join_without_user_id_uses_identity(client):
    with client.websocket_connect("/ws") as doctor, client.websocket_connect("/ws") as patient:
        doctor.receive_json()
        patient.receive_json()
        join(doctor, "apt-42", "doctor")
        doctor.receive_json()

        patient.send_json({"event": "identify", "data": {"userId": "patient-7"}})
        patient.send_json({"event": "join", "data": {"roomId": "apt-42"}})
        patient.receive_json()

        joined = doctor.receive_json()
        assert joined["event"] == "member-joined"
        assert joined["data"]["userId"] == "patient-7"
