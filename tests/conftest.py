from collections import defaultdict

import pytest
from aiortc import RTCSessionDescription
from fastapi.testclient import TestClient

from app import ConnectionGateway, create_app
from backend import MemoryStore
from client.errors import SignalingUnavailable
from client.peer_session import PeerSessionManager
from schemas.messages import SignalAnswerMessage, SignalIceMessage, SignalOfferMessage


class Recorder:
    """Stands in for the gateway's deliver(): remembers what each live connection got."""

    def __init__(self, live=()):
        self.live = set(live)
        self.sent = defaultdict(list)

    async def __call__(self, connection_id, message):
        if connection_id not in self.live:
            return False
        self.sent[connection_id].append(message)
        return True

    def events(self, connection_id):
        return [m.event for m in self.sent[connection_id]]


class FakePeerConnection:
    """Just enough of RTCPeerConnection to drive a PeerSession without a network."""

    def __init__(self, configuration=None):
        self.configuration = configuration
        self.handlers = {}
        self.connectionState = "new"
        self.signalingState = "stable"
        self.localDescription = None
        self.remoteDescription = None
        self.tracks = []
        self.transceivers = []
        self.candidates = []
        self.closed = False

    def on(self, event):
        def decorator(handler):
            self.handlers[event] = handler
            return handler
        return decorator

    async def emit(self, event, *args):
        await self.handlers[event](*args)

    async def set_connection_state(self, state):
        self.connectionState = state
        await self.emit("connectionstatechange")

    def addTrack(self, track):
        self.tracks.append(track)

    def addTransceiver(self, kind, direction=None):
        self.transceivers.append((kind, direction))

    async def createOffer(self):
        return RTCSessionDescription(sdp="v=0 fake-offer", type="offer")

    async def createAnswer(self):
        return RTCSessionDescription(sdp="v=0 fake-answer", type="answer")

    async def setLocalDescription(self, description):
        self.localDescription = description
        self.signalingState = "have-local-offer" if description.type == "offer" else "stable"

    async def setRemoteDescription(self, description):
        self.remoteDescription = description
        self.signalingState = "have-remote-offer" if description.type == "offer" else "stable"

    async def addIceCandidate(self, candidate):
        self.candidates.append(candidate)

    async def close(self):
        self.closed = True
        self.connectionState = "closed"


class FakeChannel:
    def __init__(self, connection_id="me"):
        self.connection_id = connection_id
        self.sent = []
        self.up = True

    async def send(self, message):
        if not self.up:
            raise SignalingUnavailable("signaling channel is not connected")
        self.sent.append(message)

    def events(self):
        return [m.event for m in self.sent]


class Wire:
    """Connects several PeerSessionManagers the way the relay does, one message at a time."""

    def __init__(self, pc_factory=FakePeerConnection):
        self.pc_factory = pc_factory
        self.managers = {}
        self.queue = []

    def attach(self, local_id, local_media=None):
        async def send(message):
            self.queue.append(message.with_sender(local_id))

        manager = PeerSessionManager(send, local_media=local_media, ice_servers=[], pc_factory=self.pc_factory)
        manager.local_id = local_id
        self.managers[local_id] = manager
        return manager

    async def deliver(self, message):
        target = self.managers.get(message.to)
        if target is None:
            return
        if isinstance(message, SignalOfferMessage):
            await target.handle_offer(message.sender, message.data.offer.model_dump(by_alias=True))
        elif isinstance(message, SignalAnswerMessage):
            await target.handle_answer(message.sender, message.data.answer.model_dump(by_alias=True))
        elif isinstance(message, SignalIceMessage):
            await target.handle_ice(message.sender, message.data.candidate.model_dump(by_alias=True))

    async def pump(self):
        while self.queue:
            await self.deliver(self.queue.pop(0))


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def gateway(store):
    return ConnectionGateway(store, instance_id="test-instance")


@pytest.fixture
def client(gateway):
    with TestClient(create_app(gateway)) as test_client:
        yield test_client


@pytest.fixture
def wire():
    return Wire()
