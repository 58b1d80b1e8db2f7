"""Voice casting and the voice resolution policy."""

import json
import logging
import os
from dataclasses import dataclass, field

from storycut.audio import AudioRegistry, ClockAudioPlayer
from storycut.constants import (
    ATTRIBUTION_TEMPLATE,
    EMBER_NAME,
    EMBER_VOICE,
    NARRATOR_NAME,
    NARRATOR_VOICE,
)
from storycut.errors import (
    FatalConfiguration,
    ResolutionUnavailable,
    StoryCutError,
    SynthesisFailure,
)
from storycut.models import Preference, SourceKind, VoiceBlock, VoiceResolution, VoiceRole

logger = logging.getLogger(__name__)


@dataclass
class VoiceCast:
    """Generic voices for the story's own roles. A voice of None is not configured."""
    ember_voice: str | None = EMBER_VOICE
    narrator_voice: str | None = NARRATOR_VOICE
    ember_name: str = EMBER_NAME
    narrator_name: str = NARRATOR_NAME

    def names(self) -> dict[str, str]:
        return {"ember": self.ember_name, "narrator": self.narrator_name}

    def voice_for(self, role: VoiceRole) -> str | None:
        if role is VoiceRole.EMBER:
            return self.ember_voice
        if role is VoiceRole.NARRATOR:
            return self.narrator_voice
        return None

    def fallback_voice(self) -> str | None:
        """Voice used for attributed fallback narration: narrator first, then ember."""
        return self.narrator_voice or self.ember_voice


def load_cast(script_path: str) -> dict:
    """Load .cast.json sidecar file if it exists.

    Returns cast dict or empty dict if not found or malformed.
    """
    base = os.path.splitext(script_path)[0]
    cast_path = base + ".cast.json"
    if not os.path.exists(cast_path):
        return {}
    try:
        with open(cast_path) as f:
            data = json.load(f)
    except json.JSONDecodeError:
        logger.warning("Malformed cast file: %s, using default voices", cast_path)
        return {}
    if not isinstance(data, dict):
        logger.warning("Cast file %s is not a JSON object, using default voices", cast_path)
        return {}
    return data


def build_cast(cast: dict | None = None, declarations: dict | None = None) -> VoiceCast:
    """Build the voice cast from sidecar data; script declarations override names."""
    cast = cast or {}
    ember = cast.get("ember") or {}
    narrator = cast.get("narrator") or {}
    declarations = declarations or {}
    return VoiceCast(
        ember_voice=ember.get("voice", EMBER_VOICE),
        narrator_voice=narrator.get("voice", NARRATOR_VOICE),
        ember_name=declarations.get("ember") or ember.get("name") or EMBER_NAME,
        narrator_name=declarations.get("narrator") or narrator.get("name") or NARRATOR_NAME,
    )


@dataclass
class PlaybackResources:
    """Everything voice resolution and media lookup need for one story."""
    content_store: object           # storycut.store.ContentStore
    recorded_audio: object          # storycut.store.RecordedAudioIndex
    synthesizer: object             # anything with async synthesize(text, voice_id)
    player: ClockAudioPlayer = field(default_factory=ClockAudioPlayer)
    cast: VoiceCast = field(default_factory=VoiceCast)
    scope_id: str | None = None
    legacy_matching: bool = False
    used_messages: set = field(default_factory=set)


def _label(block: VoiceBlock) -> str:
    return f"block {block.id} ({block.speaker})"


async def _synthesize(text, voice_id, block, resources, registry):
    try:
        audio = await resources.synthesizer.synthesize(text, voice_id)
    except StoryCutError:
        raise
    except Exception as e:
        raise SynthesisFailure(f"Speech synthesis failed for {_label(block)}: {e}") from e
    handle = resources.player.from_bytes(audio, label=_label(block))
    if registry is not None:
        registry.register(handle)
    return handle


async def _recorded_record(block: VoiceBlock, resources: PlaybackResources):
    """Find the captured recording behind a contributor line, or None."""
    if block.demo is not None:
        return block.demo if block.demo.audio_url else None

    message_id = block.contribution_id
    if message_id is None and resources.legacy_matching:
        match = getattr(resources.recorded_audio, "match_contribution", None)
        if match is not None:
            try:
                message_id = match(block.speaker, block.raw_text, resources.used_messages)
            except Exception as e:
                logger.warning("Legacy matching failed for %s: %s", _label(block), e)
                return None
    if message_id is None:
        return None

    try:
        return await resources.recorded_audio.lookup_recorded_audio(message_id)
    except Exception as e:
        logger.warning("Recorded audio lookup failed for message %s: %s", message_id, e)
        return None


async def _resolve_recorded(block, resources, registry) -> VoiceResolution:
    record = await _recorded_record(block, resources)
    if record is None or not record.audio_url:
        raise ResolutionUnavailable(f"No recorded capture for {_label(block)}")

    transcript = (record.transcript or "").strip()
    spoken = transcript or block.raw_text
    handle = resources.player.from_url(
        record.audio_url, duration=record.duration_seconds, text=spoken, label=_label(block),
    )
    if registry is not None:
        registry.register(handle)
    logger.info("Using recorded capture for %s", _label(block))
    return VoiceResolution(SourceKind.RECORDED_CAPTURE, handle, spoken)


async def _personal_voice_id(block, record, resources) -> str | None:
    if block.demo is not None:
        return block.demo.personal_voice_id

    user_id = block.user_id or getattr(record, "user_id", None)
    if not user_id:
        return None
    try:
        voice = await resources.content_store.has_personal_voice(user_id)
    except Exception as e:
        logger.warning("Personal voice lookup failed for user %s: %s", user_id, e)
        return None
    if not voice.available:
        return None
    return voice.voice_id


async def _resolve_personal(block, resources, registry) -> VoiceResolution:
    record = await _recorded_record(block, resources)
    voice_id = await _personal_voice_id(block, record, resources)
    if not voice_id:
        raise ResolutionUnavailable(f"No personal voice for {_label(block)}")

    source = block.demo if block.demo is not None else record
    transcript = (getattr(source, "transcript", None) or "").strip()
    spoken = transcript or block.raw_text
    handle = await _synthesize(spoken, voice_id, block, resources, registry)
    logger.info("Using personal voice %s for %s", voice_id, _label(block))
    return VoiceResolution(SourceKind.PERSONAL_VOICE, handle, spoken, voice_id=voice_id)


async def _narrate(block, resources, registry, source_kind) -> VoiceResolution:
    """Attributed narration of a contributor line in the narrator or ember voice."""
    voice_id = resources.cast.fallback_voice()
    if not voice_id:
        raise FatalConfiguration(f"No narrator or ember voice configured for {_label(block)}")

    spoken = ATTRIBUTION_TEMPLATE.format(name=block.display_name or block.speaker, text=block.raw_text)
    handle = await _synthesize(spoken, voice_id, block, resources, registry)
    return VoiceResolution(source_kind, handle, spoken, attribution_applied=True, voice_id=voice_id)


async def resolve_voice(
    block: VoiceBlock,
    resources: PlaybackResources,
    registry: AudioRegistry | None = None,
) -> VoiceResolution:
    """Decide and produce the audio for a voice line.

    Ember and narrator lines use their role's voice directly and never
    borrow the other role's voice. Contributor
    and demo lines follow their preference: a recorded capture or the
    contributor's personal voice when one exists, otherwise attributed
    narration ("<Name> said, ...") in the narrator or ember voice. The
    ``text`` preference always narrates with attribution.

    Every produced handle is registered with ``registry``. Raises
    SynthesisFailure or FatalConfiguration when no audio can be produced.
    """
    if block.voice_role in (VoiceRole.EMBER, VoiceRole.NARRATOR):
        voice_id = resources.cast.voice_for(block.voice_role)
        if not voice_id:
            raise FatalConfiguration(f"No {block.voice_role.value} voice configured for {_label(block)}")
        handle = await _synthesize(block.raw_text, voice_id, block, resources, registry)
        return VoiceResolution(SourceKind.GENERIC_NARRATION, handle, block.raw_text, voice_id=voice_id)

    if block.preference is Preference.TEXT:
        return await _narrate(block, resources, registry, SourceKind.GENERIC_NARRATION)

    try:
        if block.preference is Preference.RECORDED:
            return await _resolve_recorded(block, resources, registry)
        return await _resolve_personal(block, resources, registry)
    except ResolutionUnavailable as e:
        logger.info("%s; falling back to narration", e)

    return await _narrate(block, resources, registry, SourceKind.FALLBACK)
