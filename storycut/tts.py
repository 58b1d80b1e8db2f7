"""Speech synthesis via edge-tts with retry logic."""

import asyncio
import logging

import edge_tts

from storycut.constants import TTS_RETRY_COUNT, TTS_RETRY_BASE_DELAY, TTS_RATE, VOICE_POOL
from storycut.errors import SynthesisFailure

logger = logging.getLogger(__name__)


class EdgeSpeechSynthesizer:
    """Convert text to MP3 bytes with a Microsoft Edge neural voice.

    Retries on network errors, HTTP errors, or empty audio. Rate is a
    relative string like "-10%".
    """

    def __init__(self, rate: str = TTS_RATE, retries: int = TTS_RETRY_COUNT,
                 base_delay: float = TTS_RETRY_BASE_DELAY):
        self.rate = rate
        self.retries = max(1, retries)
        self.base_delay = base_delay

    async def _stream(self, text: str, voice_id: str) -> bytes:
        communicate = edge_tts.Communicate(text, voice_id, rate=self.rate)
        chunks = []
        async for chunk in communicate.stream():
            if chunk["type"] == "audio":
                chunks.append(chunk["data"])
        return b"".join(chunks)

    async def synthesize(self, text: str, voice_id: str) -> bytes:
        last_error = None
        for attempt in range(self.retries):
            try:
                audio = await self._stream(text, voice_id)
                if audio:
                    return audio
                # Empty stream counts as failure
                last_error = SynthesisFailure(f"TTS produced no audio for: {text[:50]}...")
            except Exception as e:
                last_error = e

            # Exponential backoff
            if attempt < self.retries - 1:
                delay = self.base_delay * (2 ** attempt)
                logger.warning(
                    "TTS attempt %d/%d failed (%s), retrying in %.1fs",
                    attempt + 1, self.retries, last_error, delay,
                )
                await asyncio.sleep(delay)

        raise last_error


def list_voices(filter_str: str | None = None) -> list[str]:
    """Return the bundled voice pool, optionally filtered by substring."""
    if not filter_str:
        return list(VOICE_POOL)
    wanted = filter_str.lower()
    return [v for v in VOICE_POOL if wanted in v.lower()]
