"""Local capture for a call.

``LocalMedia`` belongs to the call scope. Peer sessions only read its
tracks; stopping them is the call's job when the whole call ends.
"""
import asyncio
import functools
from typing import List, Optional

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer, MediaRelay
from aiortc.mediastreams import AudioStreamTrack, VideoStreamTrack
from av import AudioFrame, VideoFrame

from client.errors import MediaAccessDenied
from logging_config import get_logger

logger = get_logger(__name__)


def blank_like(frame):
    """A silent audio frame or a black video frame with the timing of ``frame``."""
    if isinstance(frame, AudioFrame):
        blank = AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
        blank.sample_rate = frame.sample_rate
        for plane in blank.planes:
            plane.update(bytes(plane.buffer_size))
    else:
        blank = VideoFrame(width=frame.width, height=frame.height)
        # yuv420p: zero luma, neutral chroma
        for index, plane in enumerate(blank.planes):
            plane.update(bytes([0 if index == 0 else 128]) * plane.buffer_size)
    blank.pts = frame.pts
    blank.time_base = frame.time_base
    return blank


class SwitchableTrack(MediaStreamTrack):
    """Relays a capture track; while disabled it sends blank frames instead."""

    def __init__(self, source: MediaStreamTrack):
        super().__init__()
        self.kind = source.kind
        self.source = source
        self.enabled = True

    async def recv(self):
        frame = await self.source.recv()
        if self.enabled:
            return frame
        return blank_like(frame)

    def stop(self):
        super().stop()
        self.source.stop()


class LocalMedia:
    def __init__(self, audio: Optional[MediaStreamTrack] = None, video: Optional[MediaStreamTrack] = None):
        self.audio = SwitchableTrack(audio) if audio is not None else None
        self.video = SwitchableTrack(video) if video is not None else None
        # One capture feeds every peer connection of the call
        self.relay = MediaRelay()
        self.stopped = False

    @property
    def tracks(self) -> List[MediaStreamTrack]:
        return [track for track in (self.audio, self.video) if track is not None]

    def subscribe(self) -> List[MediaStreamTrack]:
        """Per-session views of the capture; stopping one leaves the others running."""
        if self.stopped:
            return []
        return [self.relay.subscribe(track) for track in self.tracks]

    @property
    def audio_enabled(self) -> bool:
        return self.audio is not None and self.audio.enabled

    @property
    def video_enabled(self) -> bool:
        return self.video is not None and self.video.enabled

    def set_audio_enabled(self, enabled: bool):
        if self.audio is not None:
            self.audio.enabled = enabled
            logger.info(f"Microphone {'on' if enabled else 'off'}")

    def set_video_enabled(self, enabled: bool):
        if self.video is not None:
            self.video.enabled = enabled
            logger.info(f"Camera {'on' if enabled else 'off'}")

    def stop(self):
        if self.stopped:
            return
        self.stopped = True
        for track in self.tracks:
            track.stop()
        logger.info("Local capture stopped")

    @classmethod
    def synthetic(cls) -> "LocalMedia":
        """Generated silence and frames, for headless clients."""
        return cls(audio=AudioStreamTrack(), video=VideoStreamTrack())

    @classmethod
    async def acquire(
        cls,
        video_device: Optional[str] = None,
        video_format: Optional[str] = None,
        audio_device: Optional[str] = None,
        audio_format: Optional[str] = None,
        options: Optional[dict] = None,
    ) -> "LocalMedia":
        """Open camera and/or microphone.

        Opening a device can block for as long as the platform waits on a
        permission decision, so it runs off the event loop. Cancelling the
        caller abandons the wait and releases the device once it opens.
        Any failure to open raises ``MediaAccessDenied``.
        """
        if video_device is None and audio_device is None:
            raise MediaAccessDenied("no capture device configured")

        audio = video = None
        try:
            if video_device is not None:
                player = await _open_player(video_device, video_format, options)
                if player.video is None:
                    raise MediaAccessDenied(f"{video_device} has no video")
                video = player.video
            if audio_device is not None:
                player = await _open_player(audio_device, audio_format, options)
                if player.audio is None:
                    raise MediaAccessDenied(f"{audio_device} has no audio")
                audio = player.audio
        except BaseException:
            for track in (audio, video):
                if track is not None:
                    track.stop()
            raise

        logger.info(f"Local capture acquired (video={video_device}, audio={audio_device})")
        return cls(audio=audio, video=video)


def _release_player(future: asyncio.Future):
    if future.cancelled() or future.exception() is not None:
        return
    player = future.result()
    for track in (player.audio, player.video):
        if track is not None:
            track.stop()
    logger.debug("Released capture device opened after cancellation")


async def _open_player(device: str, format: Optional[str], options: Optional[dict]) -> MediaPlayer:
    loop = asyncio.get_running_loop()
    opening = loop.run_in_executor(None, functools.partial(MediaPlayer, device, format=format, options=options))
    try:
        return await asyncio.shield(opening)
    except asyncio.CancelledError:
        opening.add_done_callback(_release_player)
        logger.info(f"Capture of {device} cancelled while waiting for the device")
        raise
    except Exception as e:
        logger.warning(f"Could not open capture device {device}: {e}")
        raise MediaAccessDenied(str(e)) from e
