"""Tests for voice casting and the voice resolution policy."""

import asyncio
import json
import logging
from dataclasses import replace

import pytest

from storycut.audio import AudioRegistry
from storycut.constants import EMBER_NAME, EMBER_VOICE, NARRATOR_VOICE
from storycut.errors import FatalConfiguration, SynthesisFailure
from storycut.models import DemoRecord, Preference, SourceKind, VoiceBlock, VoiceRole
from storycut.voices import VoiceCast, build_cast, load_cast, resolve_voice


def _line(preference, contribution_id=None, user_id=None, speaker="Alice",
          role=VoiceRole.CONTRIBUTOR, demo=None, text="Script text."):
    return VoiceBlock(
        id=2, speaker=speaker, voice_role=role, raw_text=text, display_text=text,
        preference=preference, display_name=speaker, contribution_id=contribution_id,
        user_id=user_id, demo=demo,
    )


def _resolve(block, resources, registry=None):
    return asyncio.run(resolve_voice(block, resources, registry))


ATTRIBUTED = "{} said, Script text."

# (preference, contribution id, user id, speaker) -> (source, spoken text, voice, attribution)
# Alice (u1) has a personal voice and recording m1; m3 has no audio.
# Bob (u2) has recording m2 and no personal voice.
DECISION_TABLE = [
    # recorded available, personal available
    (Preference.RECORDED, "m1", "u1", "Alice",
     SourceKind.RECORDED_CAPTURE, "I remember the lake.", None, False),
    # recorded available, personal missing
    (Preference.RECORDED, "m2", "u2", "Bob",
     SourceKind.RECORDED_CAPTURE, "We painted the porch blue.", None, False),
    # recorded missing, personal available
    (Preference.RECORDED, "m3", "u1", "Alice",
     SourceKind.FALLBACK, ATTRIBUTED.format("Alice"), NARRATOR_VOICE, True),
    # recorded missing, personal missing
    (Preference.RECORDED, None, None, "Carol",
     SourceKind.FALLBACK, ATTRIBUTED.format("Carol"), NARRATOR_VOICE, True),
    # personal available, recorded transcript present
    (Preference.PERSONAL, "m1", None, "Alice",
     SourceKind.PERSONAL_VOICE, "I remember the lake.", "voice-alice", False),
    # personal available, no recording
    (Preference.PERSONAL, None, "u1", "Alice",
     SourceKind.PERSONAL_VOICE, "Script text.", "voice-alice", False),
    # personal missing, recorded available
    (Preference.PERSONAL, "m2", None, "Bob",
     SourceKind.FALLBACK, ATTRIBUTED.format("Bob"), NARRATOR_VOICE, True),
    # personal missing, recorded missing
    (Preference.PERSONAL, None, None, "Carol",
     SourceKind.FALLBACK, ATTRIBUTED.format("Carol"), NARRATOR_VOICE, True),
    # text ignores everything that is available
    (Preference.TEXT, "m1", "u1", "Alice",
     SourceKind.GENERIC_NARRATION, ATTRIBUTED.format("Alice"), NARRATOR_VOICE, True),
    (Preference.TEXT, None, None, "Carol",
     SourceKind.GENERIC_NARRATION, ATTRIBUTED.format("Carol"), NARRATOR_VOICE, True),
]


@pytest.mark.parametrize(
    "preference,contribution_id,user_id,speaker,source,spoken,voice,attributed",
    DECISION_TABLE,
)
def test_decision_table(resources, preference, contribution_id, user_id, speaker,
                        source, spoken, voice, attributed):
    """Every preference/availability combination resolves as the table says."""
    block = _line(preference, contribution_id, user_id, speaker)
    resolution = _resolve(block, resources)
    assert resolution.source_kind is source
    assert resolution.spoken_text == spoken
    assert resolution.voice_id == voice
    assert resolution.attribution_applied is attributed


def test_fallback_never_uses_contributor_voice(resources, synthesizer):
    """Fallback narration is synthesized with the narrator voice."""
    _resolve(_line(Preference.RECORDED, "m3", "u1"), resources)
    assert synthesizer.calls == [("Alice said, Script text.", NARRATOR_VOICE)]


def test_recorded_capture_is_not_synthesized(resources, synthesizer):
    """A recorded capture plays the stored audio."""
    resolution = _resolve(_line(Preference.RECORDED, "m1"), resources)
    assert synthesizer.calls == []
    assert resolution.audio_handle.url == "https://cdn.test/m1.mp3"
    assert resolution.audio_handle.duration == 3.0


@pytest.mark.parametrize("role,voice", [
    (VoiceRole.EMBER, EMBER_VOICE),
    (VoiceRole.NARRATOR, NARRATOR_VOICE),
])
@pytest.mark.parametrize("preference", list(Preference))
def test_story_roles_speak_directly(resources, role, voice, preference):
    """Ember and narrator lines use their own voice without attribution."""
    block = _line(preference, "m1", "u1", speaker=role.value.title(), role=role)
    resolution = _resolve(block, resources)
    assert resolution.source_kind is SourceKind.GENERIC_NARRATION
    assert resolution.spoken_text == "Script text."
    assert resolution.voice_id == voice
    assert not resolution.attribution_applied


def test_fallback_uses_ember_without_narrator(resources, synthesizer):
    """With no narrator voice the ember voice narrates fallbacks."""
    resources.cast = VoiceCast(narrator_voice=None)
    resolution = _resolve(_line(Preference.TEXT), resources)
    assert resolution.voice_id == EMBER_VOICE


def test_no_story_voice_is_fatal(resources):
    """A fallback with no narrator or ember voice is a configuration failure."""
    resources.cast = VoiceCast(ember_voice=None, narrator_voice=None)
    with pytest.raises(FatalConfiguration):
        _resolve(_line(Preference.RECORDED), resources)
    with pytest.raises(FatalConfiguration):
        _resolve(_line(Preference.TEXT, speaker="Narrator", role=VoiceRole.NARRATOR), resources)


def test_story_role_never_borrows_other_voice(resources, synthesizer):
    """An ember line with no ember voice fails even when a narrator voice exists."""
    resources.cast = VoiceCast(ember_voice=None)
    with pytest.raises(FatalConfiguration, match="ember"):
        _resolve(_line(Preference.TEXT, speaker="Ember", role=VoiceRole.EMBER), resources)
    resolution = _resolve(_line(Preference.TEXT, speaker="Narrator", role=VoiceRole.NARRATOR), resources)
    assert resolution.voice_id == NARRATOR_VOICE
    assert synthesizer.calls == [("Script text.", NARRATOR_VOICE)]


def test_no_story_voice_does_not_block_recordings(resources):
    """Recorded captures need no configured voice."""
    resources.cast = VoiceCast(ember_voice=None, narrator_voice=None)
    resolution = _resolve(_line(Preference.RECORDED, "m1"), resources)
    assert resolution.source_kind is SourceKind.RECORDED_CAPTURE


def test_synthesis_failure(resources, synthesizer):
    """Synthesizer errors surface as SynthesisFailure."""
    synthesizer.fail_voices.add(NARRATOR_VOICE)
    with pytest.raises(SynthesisFailure):
        _resolve(_line(Preference.TEXT), resources)


def test_attribution_uses_display_name(resources):
    """Attribution names the speaker as displayed."""
    block = replace(_line(Preference.TEXT), display_name="Grandma Alice")
    assert _resolve(block, resources).spoken_text == "Grandma Alice said, Script text."


def test_demo_recorded(resources, synthesizer):
    """Demo lines take recorded audio from their own record."""
    demo = DemoRecord(audio_url="https://cdn.test/demo.mp3", transcript="Demo transcript.",
                      personal_voice_id="voice-demo", duration_seconds=1.5)
    resolution = _resolve(_line(Preference.RECORDED, "demo-1", role=VoiceRole.DEMO, demo=demo), resources)
    assert resolution.source_kind is SourceKind.RECORDED_CAPTURE
    assert resolution.spoken_text == "Demo transcript."
    assert resolution.audio_handle.url == "https://cdn.test/demo.mp3"
    assert synthesizer.calls == []


def test_demo_personal(resources, synthesizer):
    """Demo lines take their personal voice from their own record."""
    demo = DemoRecord(transcript="Demo transcript.", personal_voice_id="voice-demo")
    resolution = _resolve(_line(Preference.PERSONAL, "demo-1", role=VoiceRole.DEMO, demo=demo), resources)
    assert resolution.source_kind is SourceKind.PERSONAL_VOICE
    assert synthesizer.calls == [("Demo transcript.", "voice-demo")]


def test_demo_without_sources_falls_back(resources):
    """An empty demo record falls back like any contributor."""
    block = _line(Preference.PERSONAL, "demo-1", speaker="Sam", role=VoiceRole.DEMO, demo=DemoRecord())
    resolution = _resolve(block, resources)
    assert resolution.source_kind is SourceKind.FALLBACK
    assert resolution.spoken_text == "Sam said, Script text."


def test_handles_are_registered(resources):
    """Every produced handle lands in the registry."""
    registry = AudioRegistry()
    _resolve(_line(Preference.RECORDED, "m1"), resources, registry)
    _resolve(_line(Preference.TEXT), resources, registry)
    assert len(registry) == 2


def test_legacy_matching_is_opt_in(resources):
    """Lines without an id only match recordings when legacy matching is on."""
    block = _line(Preference.RECORDED, text="I remember the lake.")
    assert _resolve(block, resources).source_kind is SourceKind.FALLBACK
    resources.legacy_matching = True
    resolution = _resolve(block, resources)
    assert resolution.source_kind is SourceKind.RECORDED_CAPTURE
    assert "m1" in resources.used_messages


def test_lookup_errors_fall_back(resources, caplog):
    """A failing recorded-audio index counts as unavailable."""
    class BrokenIndex:
        async def lookup_recorded_audio(self, message_id):
            raise ConnectionError("index offline")

    resources.recorded_audio = BrokenIndex()
    with caplog.at_level(logging.WARNING):
        resolution = _resolve(_line(Preference.RECORDED, "m1"), resources)
    assert resolution.source_kind is SourceKind.FALLBACK
    assert "index offline" in caplog.text


def test_matching_errors_fall_back(resources, library, monkeypatch, caplog):
    """A raising legacy matcher counts as no recording."""
    def broken(speaker, text, used):
        raise KeyError("index offline")
    monkeypatch.setattr(library, "match_contribution", broken)
    resources.legacy_matching = True
    with caplog.at_level(logging.WARNING):
        resolution = _resolve(_line(Preference.RECORDED, text="I remember the lake."), resources)
    assert resolution.source_kind is SourceKind.FALLBACK
    assert "Legacy matching failed" in caplog.text


def test_load_cast_missing(tmp_path):
    """No sidecar means an empty cast."""
    assert load_cast(str(tmp_path / "story.txt")) == {}


def test_load_cast_malformed(tmp_path, caplog):
    """Malformed sidecar logs a warning and is ignored."""
    (tmp_path / "story.cast.json").write_text("{broken")
    with caplog.at_level(logging.WARNING):
        assert load_cast(str(tmp_path / "story.txt")) == {}
    assert "Malformed cast file" in caplog.text


def test_build_cast_from_sidecar(tmp_path):
    """Sidecar voices and names apply; null voice means not configured."""
    (tmp_path / "story.cast.json").write_text(json.dumps({
        "ember": {"voice": None},
        "narrator": {"voice": "en-GB-RyanNeural", "name": "Jo"},
    }))
    cast = build_cast(load_cast(str(tmp_path / "story.txt")))
    assert cast.ember_voice is None
    assert cast.narrator_voice == "en-GB-RyanNeural"
    assert cast.names() == {"ember": EMBER_NAME, "narrator": "Jo"}
    assert cast.fallback_voice() == "en-GB-RyanNeural"


def test_build_cast_declarations_override_names():
    """Script declarations override sidecar names, not voices."""
    cast = build_cast({"narrator": {"name": "Jo"}}, {"narrator": "Rae"})
    assert cast.narrator_name == "Rae"
    assert cast.narrator_voice == NARRATOR_VOICE
