"""Client side peer connections, one per remote connection id.

A session moves ``idle -> negotiating -> connected`` and ends in
``closed``. Every operation on a session, whether it comes from the
signaling channel, from the user or from the underlying peer connection,
goes through ``PeerSession._guarded`` and therefore runs under the
session's lock, one at a time. Once a session is closed, anything still
addressed to it is dropped.
"""
import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp

from client.errors import CallError, PeerNegotiationFailure
from client.media import LocalMedia
from constants import STUN_SERVERS
from logging_config import get_logger
from schemas.messages import (
    AnswerData,
    OfferData,
    SessionDescription,
    SignalAnswerMessage,
    SignalMessage,
    SignalOfferMessage,
)

logger = get_logger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    CLOSED = "closed"


TRANSITIONS = {
    SessionState.IDLE: {SessionState.NEGOTIATING, SessionState.CLOSED},
    SessionState.NEGOTIATING: {SessionState.CONNECTED, SessionState.CLOSED},
    SessionState.CONNECTED: {SessionState.CLOSED},
    SessionState.CLOSED: set(),
}


@dataclass
class RemoteStream:
    remote_id: str
    tracks: List[MediaStreamTrack] = field(default_factory=list)

    def track(self, kind: str) -> Optional[MediaStreamTrack]:
        return next((t for t in self.tracks if t.kind == kind), None)


def parse_candidate(data: dict):
    """Browser style ``{candidate, sdpMid, sdpMLineIndex}`` to an aiortc candidate."""
    line = data.get("candidate") or ""
    if not line:
        return None
    if line.startswith("candidate:"):
        line = line[len("candidate:"):]
    candidate = candidate_from_sdp(line)
    candidate.sdpMid = data.get("sdpMid")
    candidate.sdpMLineIndex = data.get("sdpMLineIndex")
    return candidate


def build_configuration(ice_servers: List[str]) -> RTCConfiguration:
    return RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in ice_servers])


class PeerSession:
    def __init__(
        self,
        remote_id: str,
        initiator: bool,
        local_media: Optional[LocalMedia],
        pc_factory=RTCPeerConnection,
        ice_servers: Optional[List[str]] = None,
        on_connected: Optional[Callable[["PeerSession"], None]] = None,
        on_closed: Optional[Callable[["PeerSession"], None]] = None,
    ):
        self.remote_id = remote_id
        self.initiator = initiator
        self.local_media = local_media
        self.state = SessionState.IDLE
        self.error: Optional[PeerNegotiationFailure] = None
        self.remote_stream = RemoteStream(remote_id)
        self.pc = pc_factory(configuration=build_configuration(STUN_SERVERS if ice_servers is None else ice_servers))
        self._on_connected = on_connected
        self._on_closed = on_closed
        self._lock = asyncio.Lock()
        self._local_tracks: List[MediaStreamTrack] = []
        self._pending_candidates: List[dict] = []

        @self.pc.on("track")
        async def on_track(track):
            await self._guarded("track", lambda: self._receive_track(track))

        @self.pc.on("connectionstatechange")
        async def on_connectionstatechange():
            state = self.pc.connectionState
            logger.debug(f"Peer connection with {self.remote_id} is {state}")
            if state == "connected":
                await self._guarded("connected", self._check_connected)
            elif state in ("failed", "closed"):
                await self.close(PeerNegotiationFailure(self.remote_id, f"connection {state}"))

    def __repr__(self):
        return f"<PeerSession {self.remote_id} {self.state.value}{' initiator' if self.initiator else ''}>"

    @property
    def is_closed(self) -> bool:
        return self.state is SessionState.CLOSED

    @property
    def awaiting_answer(self) -> bool:
        return (
            self.initiator
            and self.state is SessionState.NEGOTIATING
            and self.pc.signalingState == "have-local-offer"
        )

    # -- public operations --------------------------------------------------

    async def start_offer(self) -> Optional[dict]:
        """Begin negotiation as the initiator; returns the offer to send."""
        return await self._guarded("offer", self._create_offer)

    async def accept_offer(self, offer: dict) -> Optional[dict]:
        """Answer a remote offer; returns the answer to send."""
        return await self._guarded("answer", lambda: self._create_answer(offer))

    async def apply_answer(self, answer: dict):
        await self._guarded("remote answer", lambda: self._set_answer(answer))

    async def add_ice_candidate(self, candidate: dict):
        await self._guarded("ice candidate", lambda: self._add_candidate(candidate))

    async def close(self, error: Optional[PeerNegotiationFailure] = None):
        async with self._lock:
            await self._close_locked(error)

    # -- transitions, always under the lock ----------------------------------

    async def _guarded(self, name: str, operation: Callable[[], Awaitable]):
        async with self._lock:
            if self.state is SessionState.CLOSED:
                logger.debug(f"Dropping {name} for closed session with {self.remote_id}")
                return None
            try:
                return await operation()
            except Exception as e:
                logger.warning(f"Negotiation step '{name}' with {self.remote_id} failed: {e}")
                await self._close_locked(PeerNegotiationFailure(self.remote_id, f"{name}: {e}"))
                return None

    def _set_state(self, target: SessionState):
        if target not in TRANSITIONS[self.state]:
            raise RuntimeError(f"invalid transition {self.state.value} -> {target.value}")
        logger.info(f"Session with {self.remote_id}: {self.state.value} -> {target.value}")
        self.state = target

    def _attach_local_media(self):
        self._local_tracks = self.local_media.subscribe() if self.local_media is not None else []
        for track in self._local_tracks:
            self.pc.addTrack(track)

    async def _create_offer(self):
        if self.state is not SessionState.IDLE:
            logger.debug(f"Session with {self.remote_id} already {self.state.value}, not offering again")
            return None
        self._set_state(SessionState.NEGOTIATING)
        self._attach_local_media()
        sending = {track.kind for track in self._local_tracks}
        for kind in ("audio", "video"):
            if kind not in sending:
                self.pc.addTransceiver(kind, direction="recvonly")
        await self.pc.setLocalDescription(await self.pc.createOffer())
        return {"type": self.pc.localDescription.type, "sdp": self.pc.localDescription.sdp}

    async def _create_answer(self, offer: dict):
        if self.state is not SessionState.IDLE:
            logger.debug(f"Session with {self.remote_id} already {self.state.value}, ignoring offer")
            return None
        self._set_state(SessionState.NEGOTIATING)
        await self.pc.setRemoteDescription(RTCSessionDescription(sdp=offer["sdp"], type=offer["type"]))
        # Added after the remote description so the offered transceivers are reused
        self._attach_local_media()
        await self._flush_candidates()
        await self.pc.setLocalDescription(await self.pc.createAnswer())
        return {"type": self.pc.localDescription.type, "sdp": self.pc.localDescription.sdp}

    async def _set_answer(self, answer: dict):
        if not self.awaiting_answer:
            logger.debug(f"Unexpected answer from {self.remote_id} in state {self.state.value}, dropped")
            return
        await self.pc.setRemoteDescription(RTCSessionDescription(sdp=answer["sdp"], type=answer["type"]))
        await self._flush_candidates()
        await self._check_connected()

    async def _add_candidate(self, candidate: dict):
        if self.pc.remoteDescription is None:
            self._pending_candidates.append(candidate)
            logger.debug(f"Buffered ICE candidate from {self.remote_id}")
            return
        parsed = parse_candidate(candidate)
        if parsed is None:
            logger.debug(f"End of ICE candidates from {self.remote_id}")
            return
        await self.pc.addIceCandidate(parsed)

    async def _flush_candidates(self):
        pending, self._pending_candidates = self._pending_candidates, []
        for candidate in pending:
            await self._add_candidate(candidate)

    async def _receive_track(self, track: MediaStreamTrack):
        logger.info(f"Received remote {track.kind} track from {self.remote_id}")
        self.remote_stream.tracks.append(track)
        await self._check_connected()

    async def _check_connected(self):
        if (
            self.state is SessionState.NEGOTIATING
            and self.pc.connectionState == "connected"
            and self.remote_stream.tracks
        ):
            self._set_state(SessionState.CONNECTED)
            if self._on_connected is not None:
                self._on_connected(self)

    async def _close_locked(self, error: Optional[PeerNegotiationFailure]):
        if self.state is SessionState.CLOSED:
            return
        self._set_state(SessionState.CLOSED)
        self.error = error
        self._pending_candidates.clear()
        # Only this session's views of the capture; the capture itself keeps running
        for track in self._local_tracks:
            track.stop()
        self._local_tracks = []
        await self.pc.close()
        if self._on_closed is not None:
            self._on_closed(self)


SendSignal = Callable[[SignalMessage], Awaitable[None]]


class PeerSessionManager:
    """All peer sessions of one call, keyed by remote connection id.

    ``remote_streams`` holds the media of every connected peer and is what
    a presentation layer renders.
    """

    def __init__(
        self,
        send_signal: SendSignal,
        local_media: Optional[LocalMedia] = None,
        ice_servers: Optional[List[str]] = None,
        pc_factory=RTCPeerConnection,
    ):
        self.send_signal = send_signal
        self.local_media = local_media
        self.ice_servers = list(STUN_SERVERS if ice_servers is None else ice_servers)
        self.pc_factory = pc_factory
        self.local_id: Optional[str] = None
        self.sessions: Dict[str, PeerSession] = {}
        self.remote_streams: Dict[str, RemoteStream] = {}
        self.last_error: Optional[PeerNegotiationFailure] = None
        self.on_remote_stream: Optional[Callable[[str, RemoteStream], None]] = None
        self.on_session_closed: Optional[Callable[[str, Optional[PeerNegotiationFailure]], None]] = None

    @property
    def connection_status(self) -> str:
        states = [s.state for s in self.sessions.values()]
        if SessionState.CONNECTED in states:
            return "connected"
        if states:
            return "connecting"
        if self.last_error is not None:
            return "failed"
        return "idle"

    def live_session(self, remote_id: str) -> Optional[PeerSession]:
        session = self.sessions.get(remote_id)
        if session is None or session.is_closed:
            return None
        return session

    def _create(self, remote_id: str, initiator: bool) -> PeerSession:
        session = PeerSession(
            remote_id,
            initiator,
            self.local_media,
            pc_factory=self.pc_factory,
            ice_servers=self.ice_servers,
            on_connected=self._session_connected,
            on_closed=self._session_closed,
        )
        self.sessions[remote_id] = session
        return session

    async def call(self, remote_id: str) -> PeerSession:
        """Start a session toward ``remote_id``, or return the one already running."""
        session = self.live_session(remote_id)
        if session is not None:
            logger.debug(f"Already have {session}, attaching")
            return session

        session = self._create(remote_id, initiator=True)
        offer = await session.start_offer()
        if offer is not None and not session.is_closed:
            message = SignalOfferMessage(data=OfferData(
                offer=SessionDescription(**offer), to=remote_id, sender=self.local_id,
            ))
            await self._send(session, message)
        return session

    async def handle_offer(self, remote_id: str, offer: dict):
        session = self.live_session(remote_id)
        if session is not None:
            if session.awaiting_answer and self._keeps_initiator(remote_id):
                logger.info(f"Offer collision with {remote_id}: keeping our offer")
                return
            if session.awaiting_answer:
                logger.info(f"Offer collision with {remote_id}: answering theirs")
            else:
                logger.info(f"New offer from {remote_id} replaces {session}")
            await session.close()
            if self.live_session(remote_id) is not None:
                logger.debug(f"Another session with {remote_id} started meanwhile, offer dropped")
                return

        session = self._create(remote_id, initiator=False)
        answer = await session.accept_offer(offer)
        if answer is not None and not session.is_closed:
            message = SignalAnswerMessage(data=AnswerData(
                answer=SessionDescription(**answer), to=remote_id, sender=self.local_id,
            ))
            await self._send(session, message)

    async def handle_answer(self, remote_id: str, answer: dict):
        session = self.sessions.get(remote_id)
        if session is None:
            logger.debug(f"Answer from {remote_id} without a session, dropped")
            return
        await session.apply_answer(answer)

    async def handle_ice(self, remote_id: str, candidate: dict):
        session = self.sessions.get(remote_id)
        if session is None:
            logger.debug(f"ICE candidate from {remote_id} without a session, dropped")
            return
        await session.add_ice_candidate(candidate)

    async def hang_up(self, remote_id: str):
        session = self.sessions.get(remote_id)
        if session is not None:
            await session.close()

    async def reconnect(self, remote_id: str) -> PeerSession:
        """User triggered retry: drop whatever is left of the session and call again."""
        await self.hang_up(remote_id)
        return await self.call(remote_id)

    async def close_all(self):
        for session in list(self.sessions.values()):
            await session.close()

    def _keeps_initiator(self, remote_id: str) -> bool:
        # Both sides evaluate the same comparison, so exactly one keeps its offer
        return self.local_id is not None and self.local_id < remote_id

    async def _send(self, session: PeerSession, message: SignalMessage):
        try:
            await self.send_signal(message)
        except CallError as e:
            logger.warning(f"Could not send {message.event} to {session.remote_id}: {e}")
            await session.close(PeerNegotiationFailure(session.remote_id, str(e)))

    def _session_connected(self, session: PeerSession):
        self.remote_streams[session.remote_id] = session.remote_stream
        self.last_error = None
        if self.on_remote_stream is not None:
            self.on_remote_stream(session.remote_id, session.remote_stream)

    def _session_closed(self, session: PeerSession):
        if self.sessions.get(session.remote_id) is session:
            del self.sessions[session.remote_id]
        if self.remote_streams.get(session.remote_id) is session.remote_stream:
            del self.remote_streams[session.remote_id]
        if session.error is not None:
            self.last_error = session.error
        if self.on_session_closed is not None:
            self.on_session_closed(session.remote_id, session.error)
