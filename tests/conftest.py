"""Shared fixtures and fakes for storycut tests."""

import copy

import pytest

from storycut.audio import AudioHandle, ClockAudioPlayer
from storycut.store import StoryLibrary
from storycut.voices import PlaybackResources, VoiceCast


class FakeSynthesizer:
    """Records calls and returns fake audio bytes."""

    def __init__(self, fail_voices=()):
        self.calls = []
        self.fail_voices = set(fail_voices)

    async def synthesize(self, text, voice_id):
        self.calls.append((text, voice_id))
        if voice_id in self.fail_voices:
            raise RuntimeError("synthesis service down")
        return f"{voice_id}:{text}".encode()


class FakePlayer(ClockAudioPlayer):
    """Skips decoding: every synthesized clip lasts ``clip_seconds``.

    Keeps every handle it creates in ``handles``.
    """

    def __init__(self, time_scale=0.001, clip_seconds=1.0):
        super().__init__(time_scale=time_scale)
        self.clip_seconds = clip_seconds
        self.handles = []

    def from_bytes(self, audio_bytes, label=""):
        handle = AudioHandle(label, self.clip_seconds, audio_bytes=audio_bytes,
                             time_scale=self.time_scale)
        self.handles.append(handle)
        return handle

    def from_url(self, url, duration=None, text="", label=""):
        handle = super().from_url(url, duration=duration, text=text, label=label)
        self.handles.append(handle)
        return handle


LIBRARY_DATA = {
    "scope_id": "story-1",
    "image_url": "https://cdn.test/main.jpg",
    "photos": [
        {"id": "p1", "display_name": "Lake House", "original_filename": "lake.jpg",
         "storage_url": "https://cdn.test/lake.jpg"},
        {"id": "p2", "display_name": "Porch", "original_filename": "porch.jpg",
         "storage_url": "https://cdn.test/porch.jpg"},
    ],
    "supporting_media": [
        {"id": "s1", "display_name": "Letter", "file_name": "letter.png",
         "file_url": "https://cdn.test/letter.png"},
    ],
    "voice_models": {
        "u1": {"voice_id": "voice-alice", "voice_name": "Alice's voice"},
    },
    "messages": {
        "m1": {"audio_url": "https://cdn.test/m1.mp3", "transcript": "I remember the lake.",
               "user_id": "u1", "user_first_name": "Alice", "duration_seconds": 3.0,
               "created_at": "2024-01-01T10:00:00Z"},
        "m2": {"audio_url": "https://cdn.test/m2.mp3", "transcript": "We painted the porch blue.",
               "user_id": "u2", "user_first_name": "Bob", "duration_seconds": 2.5,
               "created_at": "2024-01-02T10:00:00Z"},
        "m3": {"audio_url": None, "transcript": "No audio was kept.",
               "user_id": "u1", "user_first_name": "Alice",
               "created_at": "2024-01-03T10:00:00Z"},
    },
    "demos": {
        "demo-1": {"audio_url": "https://cdn.test/demo.mp3", "transcript": "Demo transcript.",
                   "personal_voice_id": "voice-demo", "duration_seconds": 1.5},
    },
}


@pytest.fixture
def library_data():
    return copy.deepcopy(LIBRARY_DATA)


@pytest.fixture
def library(library_data):
    """Story library with photos, one voice model and three messages."""
    return StoryLibrary.from_dict(library_data)


@pytest.fixture
def synthesizer():
    return FakeSynthesizer()


@pytest.fixture
def player():
    return FakePlayer()


@pytest.fixture
def resources(library, synthesizer, player):
    """Playback resources backed by the fake library, synthesizer and player."""
    return PlaybackResources(
        content_store=library,
        recorded_audio=library,
        synthesizer=synthesizer,
        player=player,
        cast=VoiceCast(),
        scope_id=library.scope_id,
    )


@pytest.fixture
def sample_script():
    """Short script touching every block kind."""
    return "\n".join([
        "[[VOICE:narrator:Rae]]",
        "<id=p1> FADE-IN 2s, ZOOM-IN 1.2x target=person:alice",
        "[Narrator | text | ] <Welcome to the lake house.>",
        "[Alice | recorded | m1] <I remember the lake.>",
        "[[HOLD]] (COLOR:#112233,duration=1.5)",
        "<name=Porch> PAN-LEFT 30% 5s",
        "[[LOAD SCREEN]] (message=\"Next chapter\",duration=1.0,icon=\"book\")",
        "[Ember | text | ] <And that was the summer.>",
    ])
