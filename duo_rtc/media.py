"""Local media capture and its lifecycle on a live call.

MediaCapture opens the camera, microphone and screen through ffmpeg inputs
(aiortc's MediaPlayer). MediaLifecycle owns the captured tracks and applies
mic/camera/screen toggles to the local preview and to the peer transport it
is attached to.

Mic and camera toggles never add or remove senders: each local track is wrapped
in a ToggleableTrack whose `enabled` flag swaps real frames for silence or
black frames. Only screen sharing changes the number of senders.
"""

import asyncio
import os
import platform
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer
from av import AudioFrame, VideoFrame
from av.error import FFmpegError
from loguru import logger

from duo_rtc.config import CaptureSettings
from duo_rtc.exceptions import CaptureError

AUDIO = "audio"
VIDEO = "video"
SCREEN = "screen"


class ToggleableTrack(MediaStreamTrack):
    """Pass-through track that can be muted in place.

    While `enabled` is False every frame from the source is replaced by a
    silent (audio) or black (video) frame with the same timing, so the sender
    keeps running and the remote side simply hears or sees nothing.

    Attributes:
        kind: "audio" or "video", taken from the source track
        label: Human-readable origin ("camera", "microphone", "screen")
        enabled: Whether real frames are forwarded
    """

    def __init__(self, source: MediaStreamTrack, label: str = ""):
        super().__init__()
        self.kind = source.kind
        self.label = label or source.kind
        self.enabled = True
        self._source = source

    async def recv(self):  # type: ignore[override]
        frame = await self._source.recv()
        if self.enabled:
            return frame
        return self._blank(frame)

    def stop(self) -> None:
        super().stop()
        self._source.stop()

    def _blank(self, frame):
        if self.kind == VIDEO:
            blank = VideoFrame(width=frame.width, height=frame.height, format="yuv420p")
            luma, *chroma = blank.planes
            luma.update(bytes(luma.buffer_size))
            for plane in chroma:
                plane.update(b"\x80" * plane.buffer_size)
        else:
            blank = AudioFrame(
                format=frame.format.name,
                layout=frame.layout.name,
                samples=frame.samples,
            )
            for plane in blank.planes:
                plane.update(bytes(plane.buffer_size))
            blank.sample_rate = frame.sample_rate
        blank.pts = frame.pts
        blank.time_base = frame.time_base
        return blank


@dataclass
class LocalStream:
    """A captured stream: at most one audio and one video track."""

    label: str
    audio: Optional[ToggleableTrack] = None
    video: Optional[ToggleableTrack] = None

    def tracks(self) -> List[ToggleableTrack]:
        return [track for track in (self.audio, self.video) if track is not None]

    def stop(self) -> None:
        for track in self.tracks():
            track.stop()


@dataclass
class MediaTrackState:
    """Per-capability state: active flag and the sender while a call is live."""

    kind: str
    active: bool = False
    sender: Optional[object] = field(default=None, repr=False)


# (device, format) defaults per platform.system()
_CAMERA_DEFAULTS = {
    "Linux": ("/dev/video0", "v4l2"),
    "Darwin": ("default:none", "avfoundation"),
    "Windows": ("video=Integrated Camera", "dshow"),
}
_MICROPHONE_DEFAULTS = {
    "Linux": ("default", "pulse"),
    "Darwin": ("none:default", "avfoundation"),
    "Windows": ("audio=Microphone", "dshow"),
}
_DISPLAY_DEFAULTS = {
    "Linux": (os.environ.get("DISPLAY", ":0"), "x11grab"),
    "Darwin": ("Capture screen 0", "avfoundation"),
    "Windows": ("desktop", "gdigrab"),
}


class MediaCapture:
    """Opens local capture devices as aiortc tracks.

    Device names and ffmpeg input formats come from CaptureSettings; anything
    left unset falls back to the usual device for the running platform.
    """

    def __init__(self, settings: Optional[CaptureSettings] = None, system: Optional[str] = None):
        self.settings = settings or CaptureSettings()
        self.system = system or platform.system()

    def _resolve(self, device, fmt, defaults) -> Tuple[str, str]:
        default_device, default_format = defaults.get(self.system, defaults["Linux"])
        return device or default_device, fmt or default_format

    def camera_source(self) -> Tuple[str, str]:
        return self._resolve(self.settings.video_device, self.settings.video_format, _CAMERA_DEFAULTS)

    def microphone_source(self) -> Tuple[str, str]:
        return self._resolve(self.settings.audio_device, self.settings.audio_format, _MICROPHONE_DEFAULTS)

    def display_source(self) -> Tuple[str, str]:
        return self._resolve(self.settings.display_device, self.settings.display_format, _DISPLAY_DEFAULTS)

    async def open_user_media(self) -> LocalStream:
        """Open the camera (at the configured size) and the microphone.

        A device that fails is skipped with a warning; the stream keeps
        whatever could be opened.

        Raises:
            CaptureError: If neither camera nor microphone could be opened.
        """
        stream = LocalStream(label="camera")
        errors = []

        device, fmt = self.camera_source()
        options = {
            "video_size": self.settings.video_size,
            "framerate": str(self.settings.framerate),
        }
        try:
            player = await asyncio.to_thread(MediaPlayer, device, format=fmt, options=options)
            if player.video is not None:
                stream.video = ToggleableTrack(player.video, label="camera")
        except (FFmpegError, OSError, ValueError) as e:
            logger.warning(f"Camera {device} ({fmt}) unavailable: {e}")
            errors.append(f"camera: {e}")

        if self.settings.audio:
            device, fmt = self.microphone_source()
            try:
                player = await asyncio.to_thread(MediaPlayer, device, format=fmt)
                if player.audio is not None:
                    stream.audio = ToggleableTrack(player.audio, label="microphone")
            except (FFmpegError, OSError, ValueError) as e:
                logger.warning(f"Microphone {device} ({fmt}) unavailable: {e}")
                errors.append(f"microphone: {e}")

        if not stream.tracks():
            raise CaptureError("; ".join(errors) or "No capture devices produced a track")
        return stream

    async def open_display_media(self) -> LocalStream:
        """Open a screen capture stream.

        Raises:
            CaptureError: If the display cannot be captured.
        """
        device, fmt = self.display_source()
        options = {"framerate": str(self.settings.framerate)}
        try:
            player = await asyncio.to_thread(MediaPlayer, device, format=fmt, options=options)
        except (FFmpegError, OSError, ValueError) as e:
            raise CaptureError(f"Screen {device} ({fmt}) unavailable: {e}") from e
        if player.video is None:
            raise CaptureError(f"Screen {device} ({fmt}) produced no video")
        return LocalStream(label="screen", video=ToggleableTrack(player.video, label="screen"))


class MediaLifecycle:
    """Owns local capture and keeps the transport's senders in step with it.

    The transport is referenced, never owned: `attach` records it together
    with the sender handles, `detach` forgets both when the session tears the
    transport down.

    Attributes:
        capture: Capture backend used for camera, microphone and screen
        camera: Stream from open_user_media, if acquired
        screen: Screen stream while sharing (held locally until attach when
            no transport exists yet)
        states: MediaTrackState per capability ("audio", "video", "screen")
    """

    def __init__(self, capture: MediaCapture):
        self.capture = capture
        self.camera: Optional[LocalStream] = None
        self.screen: Optional[LocalStream] = None
        self.states: Dict[str, MediaTrackState] = {
            kind: MediaTrackState(kind) for kind in (AUDIO, VIDEO, SCREEN)
        }
        self._transport = None

    @property
    def transport(self):
        return self._transport

    @property
    def preview(self) -> Optional[LocalStream]:
        """Stream shown locally: the screen while sharing, else the camera."""
        return self.screen or self.camera

    @property
    def mic_active(self) -> bool:
        return self.states[AUDIO].active

    @property
    def camera_active(self) -> bool:
        return self.states[VIDEO].active

    @property
    def screen_active(self) -> bool:
        return self.states[SCREEN].active

    async def acquire(self) -> LocalStream:
        """Capture camera and microphone. Raises CaptureError on failure."""
        self.camera = await self.capture.open_user_media()
        self.states[AUDIO].active = self.camera.audio is not None
        self.states[VIDEO].active = self.camera.video is not None
        logger.info(
            f"Local media acquired (audio={self.mic_active}, video={self.camera_active})"
        )
        return self.camera

    def toggle_mic(self) -> bool:
        return self._toggle(AUDIO)

    def toggle_camera(self) -> bool:
        return self._toggle(VIDEO)

    def _toggle(self, kind: str) -> bool:
        track = getattr(self.camera, kind, None) if self.camera else None
        if track is None:
            logger.warning(f"No local {kind} track to toggle")
            return self.states[kind].active
        track.enabled = not track.enabled
        self.states[kind].active = track.enabled
        logger.info(f"Local {kind} {'enabled' if track.enabled else 'disabled'}")
        return track.enabled

    async def start_screen_share(self) -> None:
        """Capture the screen and send it on the attached transport.

        Without an attached transport the stream is held and sent on the next
        `attach`. Raises CaptureError if the display cannot be captured.
        """
        if self.screen is not None:
            logger.warning("Screen sharing already active")
            return

        self.screen = await self.capture.open_display_media()
        self.states[SCREEN].active = True

        if self._transport is not None:
            self.states[SCREEN].sender = self._transport.add_track(self.screen.video)
            logger.info("Screen sharing started on live transport")
        else:
            logger.info("Screen sharing started; held until a call is established")

    def stop_screen_share(self) -> None:
        """Stop the screen track, drop its sender and restore the camera preview."""
        if self.screen is None:
            logger.warning("Screen sharing is not active")
            return

        state = self.states[SCREEN]
        if state.sender is not None and self._transport is not None:
            self._transport.remove_track(state.sender)
        state.sender = None
        state.active = False

        self.screen.stop()
        self.screen = None
        logger.info("Screen sharing stopped; preview restored to camera")

    def attach(self, transport) -> None:
        """Add every local track (and a held screen track) to a new transport."""
        self._transport = transport
        if self.camera is not None:
            for kind in (AUDIO, VIDEO):
                track = getattr(self.camera, kind)
                if track is not None:
                    self.states[kind].sender = transport.add_track(track)
        if self.screen is not None:
            self.states[SCREEN].sender = transport.add_track(self.screen.video)
        logger.debug(f"Attached local media ({transport.active_sender_count} senders)")

    def detach(self) -> None:
        """Forget the transport and its sender handles; tracks keep running."""
        self._transport = None
        for state in self.states.values():
            state.sender = None

    def release(self) -> None:
        """Stop every local track. Safe to call twice."""
        self.detach()
        for stream in (self.screen, self.camera):
            if stream is not None:
                stream.stop()
        self.screen = None
        self.camera = None
        for state in self.states.values():
            state.active = False
        logger.info("Local capture released")
