"""Audio handles, a headless clock-driven player, and the active-audio registry."""

import asyncio
import io
import logging
import threading

from pydub import AudioSegment
from pydub.exceptions import CouldntDecodeError

from storycut.constants import SECONDS_PER_CHAR, MIN_VOICE_ESTIMATE, TTS_AUDIO_FORMAT

logger = logging.getLogger(__name__)


def estimate_voice_duration(text: str) -> float:
    """Length-based duration estimate for a voice line, in seconds."""
    return max(MIN_VOICE_ESTIMATE, len(text or "") * SECONDS_PER_CHAR)


class AudioHandle:
    """One playable clip.

    Playback runs on the event loop clock: ``play()`` schedules ``on_ended``
    after the remaining duration (scaled by ``time_scale``). A detached
    handle never fires callbacks again.
    """

    def __init__(self, label: str, duration: float, audio_bytes: bytes | None = None,
                 url: str | None = None, error: Exception | None = None,
                 time_scale: float = 1.0):
        self.label = label
        self.duration = duration
        self.audio_bytes = audio_bytes
        self.url = url
        self.error = error
        self.time_scale = time_scale
        self.on_ended = None
        self.on_error = None
        self.playing = False
        self.ended = False
        self.released = False
        self._position = 0.0
        self._started_at = None
        self._loop = None
        self._timer = None

    def __repr__(self):
        return f"AudioHandle({self.label!r}, duration={self.duration:.2f})"

    @property
    def current_time(self) -> float:
        """Playback position in seconds of audio."""
        if not self.playing or self._loop is None:
            return self._position
        elapsed = (self._loop.time() - self._started_at) / (self.time_scale or 1.0)
        return min(self.duration, self._position + elapsed)

    def play(self) -> None:
        if self.released or self.playing:
            return
        self._loop = asyncio.get_running_loop()
        if self.error is not None:
            self._loop.call_soon(self._fail, self.error)
            return
        self.playing = True
        self.ended = False
        self._started_at = self._loop.time()
        remaining = max(0.0, self.duration - self._position) * self.time_scale
        self._timer = self._loop.call_later(remaining, self._finish)

    def pause(self) -> None:
        if not self.playing:
            return
        self._position = self.current_time
        self.playing = False
        self._cancel_timer()

    def rewind(self) -> None:
        was_playing = self.playing
        self.pause()
        self._position = 0.0
        if was_playing:
            self.play()

    def detach(self) -> None:
        """Drop callbacks and stop for good."""
        self.pause()
        self.on_ended = None
        self.on_error = None
        self.released = True

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _finish(self) -> None:
        self._timer = None
        self.playing = False
        self.ended = True
        self._position = self.duration
        if not self.released and self.on_ended is not None:
            self.on_ended()

    def _fail(self, error: Exception) -> None:
        if not self.released and self.on_error is not None:
            self.on_error(error)


class ClockAudioPlayer:
    """Builds audio handles without an audio device.

    Synthesized bytes are decoded with pydub to measure their real length;
    remote captures use their known duration or a length-based estimate.
    """

    def __init__(self, time_scale: float = 1.0):
        self.time_scale = time_scale

    def from_bytes(self, audio_bytes: bytes, label: str = "") -> AudioHandle:
        try:
            segment = AudioSegment.from_file(io.BytesIO(audio_bytes), format=TTS_AUDIO_FORMAT)
        except (CouldntDecodeError, OSError) as e:
            logger.warning("Could not decode audio for %s: %s", label or "clip", e)
            return AudioHandle(label, 0.0, audio_bytes=audio_bytes, error=e,
                               time_scale=self.time_scale)
        return AudioHandle(label, len(segment) / 1000, audio_bytes=audio_bytes,
                           time_scale=self.time_scale)

    def from_url(self, url: str, duration: float | None = None, text: str = "",
                 label: str = "") -> AudioHandle:
        if not duration or duration <= 0:
            duration = estimate_voice_duration(text)
        return AudioHandle(label, float(duration), url=url, time_scale=self.time_scale)


class AudioRegistry:
    """Every audio handle a playback session has produced.

    ``clear_all`` silences and releases every handle and never raises.
    After ``close`` any handle registered late (an in-flight resolution
    finishing after stop) is released immediately.
    """

    def __init__(self):
        self._handles = []
        self._lock = threading.Lock()
        self._closed = False

    def __len__(self):
        with self._lock:
            return len(self._handles)

    @property
    def closed(self) -> bool:
        return self._closed

    def register(self, handle: AudioHandle) -> AudioHandle:
        with self._lock:
            if not self._closed:
                self._handles.append(handle)
                return handle
        logger.debug("Registry closed, releasing late handle %r", handle)
        self._silence(handle)
        return handle

    def release(self, handle: AudioHandle) -> None:
        with self._lock:
            if handle in self._handles:
                self._handles.remove(handle)
        self._silence(handle)

    def clear_all(self) -> None:
        with self._lock:
            handles = list(self._handles)
            self._handles.clear()
        logger.debug("Clearing %d active audio handles", len(handles))
        for handle in handles:
            self._silence(handle)

    def close(self) -> None:
        with self._lock:
            self._closed = True
        self.clear_all()

    @staticmethod
    def _silence(handle) -> None:
        try:
            handle.pause()
            handle.rewind()
            handle.detach()
        except Exception as e:
            # Clearing must continue past a broken handle
            logger.warning("Failed to release audio handle %r: %s", handle, e)
