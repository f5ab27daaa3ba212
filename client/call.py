"""A complete call: local capture, signaling, room membership and peer sessions.

``CallClient`` is the owner of everything a call holds. It is the only
place that stops local capture, and the only place that reconnects the
signaling channel after the transport drops.
"""
import asyncio
import functools
from typing import Awaitable, Callable, Dict, List, Optional

from aiortc import RTCPeerConnection
from websockets.exceptions import WebSocketException

from client.channel import SignalingChannel
from client.errors import SignalingUnavailable
from client.media import LocalMedia
from client.membership import RoomMembershipClient
from client.peer_session import PeerSession, PeerSessionManager, RemoteStream
from constants import (
    CAPTURE_AUDIO_DEVICE,
    CAPTURE_AUDIO_FORMAT,
    CAPTURE_VIDEO_DEVICE,
    CAPTURE_VIDEO_FORMAT,
    RECONNECT_INITIAL_DELAY,
    RECONNECT_MAX_DELAY,
    SIGNALING_URL,
)
from logging_config import get_logger
from schemas.messages import IdentifyData, IdentifyMessage

logger = get_logger(__name__)

default_media_source = functools.partial(
    LocalMedia.acquire,
    video_device=CAPTURE_VIDEO_DEVICE,
    video_format=CAPTURE_VIDEO_FORMAT,
    audio_device=CAPTURE_AUDIO_DEVICE,
    audio_format=CAPTURE_AUDIO_FORMAT,
)


class CallClient:
    def __init__(
        self,
        user_id: str,
        url: str = SIGNALING_URL,
        ice_servers: Optional[List[str]] = None,
        media_source: Callable[[], Awaitable[LocalMedia]] = default_media_source,
        pc_factory=RTCPeerConnection,
        channel: Optional[SignalingChannel] = None,
    ):
        self.user_id = user_id
        self.channel = channel or SignalingChannel(url)
        self.sessions = PeerSessionManager(self.channel.send, ice_servers=ice_servers, pc_factory=pc_factory)
        self.membership = RoomMembershipClient(self.channel, self.sessions, user_id)
        self.media_source = media_source
        self.media: Optional[LocalMedia] = None
        self.ended = False
        self._media_task: Optional[asyncio.Task] = None
        self._run_task: Optional[asyncio.Task] = None

    @property
    def remote_streams(self) -> Dict[str, RemoteStream]:
        return self.sessions.remote_streams

    @property
    def connection_status(self) -> str:
        return self.sessions.connection_status

    async def prepare_media(self) -> LocalMedia:
        """Acquire local capture. ``cancel()`` abandons a pending acquisition."""
        if self.media is not None:
            return self.media
        self._media_task = asyncio.ensure_future(self.media_source())
        try:
            self.media = await self._media_task
        finally:
            self._media_task = None
        self.sessions.local_media = self.media
        return self.media

    def cancel(self):
        if self._media_task is not None and not self._media_task.done():
            logger.info("Cancelling media acquisition")
            self._media_task.cancel()

    async def start(self, room_id: str):
        """Acquire media, connect, join ``room_id`` and keep the call running."""
        if self.ended:
            raise RuntimeError("call already ended")
        await self.prepare_media()
        await self._open(room_id)
        self._run_task = asyncio.create_task(self._run())
        self._run_task.add_done_callback(self._run_finished)

    async def _open(self, room_id: Optional[str]):
        local_id = await self.channel.connect()
        self.sessions.local_id = local_id
        await self.channel.send(IdentifyMessage(data=IdentifyData(user_id=self.user_id)))
        if room_id is not None:
            await self.membership.join(room_id)

    async def _run(self):
        delay = RECONNECT_INITIAL_DELAY
        while not self.ended:
            async for message in self.channel.messages():
                try:
                    await self.membership.dispatch(message)
                except Exception as e:
                    logger.error(f"Error handling {message.event}: {e}", exc_info=True)
            if self.ended:
                break

            # Our connection id died with the transport, and every session with it
            room_id = self.membership.room_id
            logger.warning(f"Signaling lost, rejoining {room_id} with a new connection")
            self.membership.reset()
            await self.sessions.close_all()
            while not self.ended:
                await asyncio.sleep(delay)
                try:
                    await self._open(room_id)
                    delay = RECONNECT_INITIAL_DELAY
                    break
                except (OSError, asyncio.TimeoutError, WebSocketException, SignalingUnavailable) as e:
                    delay = min(delay * 2, RECONNECT_MAX_DELAY)
                    logger.warning(f"Reconnect failed ({e!r}), next attempt in {delay:.1f}s")
                except Exception as e:
                    delay = min(delay * 2, RECONNECT_MAX_DELAY)
                    logger.error(f"Unexpected reconnect error: {e}, next attempt in {delay:.1f}s", exc_info=True)

    def _run_finished(self, task: asyncio.Task):
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Call loop stopped: {error!r}", exc_info=error)
        elif not self.ended:
            logger.error("Call loop stopped before the call ended")

    async def call(self, remote_id: str) -> PeerSession:
        return await self.sessions.call(remote_id)

    async def retry(self, remote_id: str) -> PeerSession:
        return await self.sessions.reconnect(remote_id)

    async def hang_up(self, remote_id: str):
        await self.sessions.hang_up(remote_id)

    def toggle_microphone(self) -> bool:
        if self.media is None:
            return False
        self.media.set_audio_enabled(not self.media.audio_enabled)
        return self.media.audio_enabled

    def toggle_camera(self) -> bool:
        if self.media is None:
            return False
        self.media.set_video_enabled(not self.media.video_enabled)
        return self.media.video_enabled

    async def end_call(self):
        if self.ended:
            return
        self.ended = True
        self.cancel()
        await self.membership.leave()
        await self.sessions.close_all()
        if self.media is not None:
            self.media.stop()
        await self.channel.close()
        if self._run_task is not None and self._run_task is not asyncio.current_task():
            self._run_task.cancel()
            await asyncio.gather(self._run_task, return_exceptions=True)
        logger.info("Call ended")
