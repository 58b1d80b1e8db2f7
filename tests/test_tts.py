"""Tests for the edge-tts speech synthesizer."""

import asyncio
from unittest.mock import patch, MagicMock

import pytest

from storycut.constants import VOICE_POOL
from storycut.errors import SynthesisFailure
from storycut.tts import EdgeSpeechSynthesizer, list_voices


def _make_mock_communicate(chunks):
    """Create a mock edge_tts.Communicate that streams the given chunks."""
    def factory(text, voice, **kwargs):
        mock = MagicMock()

        async def stream():
            for chunk in chunks:
                yield chunk
        mock.stream = stream
        return mock
    return factory


AUDIO_CHUNKS = [
    {"type": "audio", "data": b"ID3"},
    {"type": "WordBoundary", "offset": 0, "duration": 100, "text": "Hello"},
    {"type": "audio", "data": b"\xff\xfb"},
]


@patch("storycut.tts.edge_tts.Communicate")
def test_synthesize_joins_audio_chunks(mock_comm):
    """Audio chunks are concatenated; metadata chunks are ignored."""
    mock_comm.side_effect = _make_mock_communicate(AUDIO_CHUNKS)
    audio = asyncio.run(EdgeSpeechSynthesizer().synthesize("Hello", "en-US-AriaNeural"))
    assert audio == b"ID3\xff\xfb"


@patch("storycut.tts.edge_tts.Communicate")
def test_synthesize_passes_rate(mock_comm):
    """Voice and rate are handed to edge-tts."""
    mock_comm.side_effect = _make_mock_communicate(AUDIO_CHUNKS)
    asyncio.run(EdgeSpeechSynthesizer(rate="+5%").synthesize("Hi", "en-GB-SoniaNeural"))
    mock_comm.assert_called_once_with("Hi", "en-GB-SoniaNeural", rate="+5%")


@patch("storycut.tts.edge_tts.Communicate")
def test_synthesize_retry(mock_comm):
    """Retry works when first attempt fails."""
    call_count = 0
    ok = _make_mock_communicate(AUDIO_CHUNKS)

    def fail_then_succeed(text, voice, **kwargs):
        nonlocal call_count
        call_count += 1
        if call_count == 1:
            mock = MagicMock()

            async def stream():
                raise Exception("Network error")
                yield
            mock.stream = stream
            return mock
        return ok(text, voice, **kwargs)

    mock_comm.side_effect = fail_then_succeed
    audio = asyncio.run(EdgeSpeechSynthesizer(base_delay=0).synthesize("Hello", "en-US-AriaNeural"))
    assert audio
    assert call_count == 2


@patch("storycut.tts.edge_tts.Communicate")
def test_synthesize_empty_audio_exhausts_retries(mock_comm):
    """Empty output counts as failure and raises after all retries."""
    mock_comm.side_effect = _make_mock_communicate([])
    synth = EdgeSpeechSynthesizer(retries=2, base_delay=0)
    with pytest.raises(SynthesisFailure):
        asyncio.run(synth.synthesize("Hello", "en-US-AriaNeural"))
    assert mock_comm.call_count == 2


@patch("storycut.tts.edge_tts.Communicate")
def test_synthesize_reraises_last_error(mock_comm):
    """The last network error is re-raised once retries are exhausted."""
    mock_comm.side_effect = ConnectionError("offline")
    synth = EdgeSpeechSynthesizer(retries=3, base_delay=0)
    with pytest.raises(ConnectionError):
        asyncio.run(synth.synthesize("Hello", "en-US-AriaNeural"))
    assert mock_comm.call_count == 3


def test_list_voices():
    """The bundled pool lists, and filters by substring."""
    assert list_voices() == VOICE_POOL
    assert list_voices("en-gb") == [v for v in VOICE_POOL if v.startswith("en-GB")]
    assert list_voices("zz-nope") == []
