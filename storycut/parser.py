"""Parse story scripts into typed blocks plus a per-block effect table."""

import logging
import re
from dataclasses import dataclass, field, replace

from storycut.constants import (
    DEFAULT_DIRECTIONS,
    FADE_DURATION,
    PAN_DISTANCE,
    PAN_DURATION,
    ZOOM_SCALE,
    ZOOM_DURATION,
    HOLD_COLOR,
    HOLD_DURATION,
    LOADSCREEN_MESSAGE,
    LOADSCREEN_DURATION,
    LOADSCREEN_ICON,
    EMBER_NAME,
    NARRATOR_NAME,
    NO_AUDIO_ID,
)
from storycut.effects import EffectDirective, parse_effect, parse_effects, split_effects, render_effect
from storycut.errors import ParseSkip
from storycut.models import (
    Block,
    DemoRecord,
    EndBlock,
    Fade,
    HoldBlock,
    LoadScreenBlock,
    MediaBlock,
    MediaRef,
    Pan,
    Preference,
    SentenceTiming,
    StartBlock,
    VoiceBlock,
    VoiceRole,
    Zoom,
    ZoomTarget,
    _num,
)

logger = logging.getLogger(__name__)

_NUM = r"(\d+(?:\.\d+)?)"

_VOICE_DECL_RE = re.compile(r"^\[\[VOICE:([^:\]]+):([^\]]+)\]\]$", re.IGNORECASE)
_MEDIA_RE = re.compile(r"^<(.*?)>\s*(.*)$")
_HOLD_LOAD_RE = re.compile(r"^\[\[(HOLD|LOAD SCREEN)\]\]\s*(.*)$", re.IGNORECASE)
# [Name | preference | contributionId] content
_STRUCTURED_RE = re.compile(r"^\[([^|\]]+)\|([^|\]]*)\|([^\]]*)\]\s*(.+)$")
# [Name:preference:contributionId] content
_LEGACY_RE = re.compile(r"^\[([^:\[\]]+)(?::([^:\]]*))?(?::([^:\]]*))?\]\s*(.+)$")

_COLOR_RE = re.compile(r"COLOR:#([0-9A-Fa-f]{6}|[0-9A-Fa-f]{3})\b", re.IGNORECASE)
_HOLD_DURATION_RE = re.compile(rf"^duration={_NUM}s?$", re.IGNORECASE)
_MESSAGE_RE = re.compile(r'message="([^"]+)"', re.IGNORECASE)
_ICON_RE = re.compile(r'icon="([^"]+)"', re.IGNORECASE)
_LOAD_DURATION_RE = re.compile(rf"duration={_NUM}", re.IGNORECASE)
_PATH_RE = re.compile(r"^path=(\S+)(?:\s+fallback=(.+))?$", re.IGNORECASE)

_TAG_RE = re.compile(r"<[^>]*>")
_SPACE_RE = re.compile(r"\s+")

PREFERENCE_WORDS = {
    "recorded": Preference.RECORDED,
    "synth": Preference.PERSONAL,
    "personal": Preference.PERSONAL,
    "text": Preference.TEXT,
}


@dataclass
class EffectTable:
    """Effect parameters keyed by "<effectKind>-<blockId>".

    ``selected`` lists the effect kinds a block actually carries; the
    parameter maps are back-filled with defaults for every block so an
    editor can switch an effect on without inventing values.
    """
    selected: dict = field(default_factory=dict)
    directions: dict = field(default_factory=dict)
    durations: dict = field(default_factory=dict)
    distances: dict = field(default_factory=dict)
    scales: dict = field(default_factory=dict)
    targets: dict = field(default_factory=dict)

    @staticmethod
    def key(kind: str, block_id: int) -> str:
        return f"{kind}-{block_id}"

    def record(self, block_id: int, directive: EffectDirective) -> None:
        """Store the parameters a directive stated explicitly."""
        key = self.key(directive.kind, block_id)
        kinds = self.selected.setdefault(block_id, [])
        if directive.kind not in kinds:
            kinds.append(directive.kind)
        self.directions[key] = directive.direction
        if directive.duration is not None:
            self.durations[key] = directive.duration
        if directive.distance is not None:
            self.distances[key] = directive.distance
        if directive.scale is not None:
            self.scales[key] = directive.scale
        if directive.target is not None:
            self.targets[key] = directive.target

    def backfill(self, block_ids) -> None:
        """Fill unset parameters with defaults, never overwriting parsed ones."""
        for block_id in block_ids:
            for kind, direction in DEFAULT_DIRECTIONS.items():
                self.directions.setdefault(self.key(kind, block_id), direction)
            self.durations.setdefault(self.key("fade", block_id), FADE_DURATION)
            self.durations.setdefault(self.key("pan", block_id), PAN_DURATION)
            self.durations.setdefault(self.key("zoom", block_id), ZOOM_DURATION)
            self.distances.setdefault(self.key("pan", block_id), PAN_DISTANCE)
            self.scales.setdefault(self.key("zoom", block_id), ZOOM_SCALE)

    def get(self, kind: str, block_id: int):
        """Return the effect of this kind on a block, or None."""
        if kind not in self.selected.get(block_id, []):
            return None
        key = self.key(kind, block_id)
        direction = self.directions.get(key, DEFAULT_DIRECTIONS[kind])
        if kind == "fade":
            return Fade(direction=direction, duration=self.durations.get(key, FADE_DURATION))
        if kind == "pan":
            return Pan(
                direction=direction,
                distance=self.distances.get(key, PAN_DISTANCE),
                duration=self.durations.get(key, PAN_DURATION),
            )
        return Zoom(
            direction=direction,
            scale=self.scales.get(key, ZOOM_SCALE),
            duration=self.durations.get(key, ZOOM_DURATION),
            target=self.targets.get(key, ZoomTarget.center()),
        )

    def effects_for(self, block_id: int) -> list:
        return [self.get(kind, block_id) for kind in self.selected.get(block_id, [])]


@dataclass
class ParsedScript:
    blocks: list
    effects: EffectTable
    voice_names: dict = field(default_factory=dict)
    diagnostics: list = field(default_factory=list)

    def __iter__(self):
        # Allows ``blocks, effects = parse_script(text)``
        return iter((self.blocks, self.effects))

    @property
    def content_blocks(self) -> list:
        """Blocks without the start/end markers."""
        return [b for b in self.blocks if b.kind not in ("start", "end")]


def voice_role_for(speaker: str) -> VoiceRole:
    """Derive the voice role from a speaker tag."""
    lowered = speaker.lower()
    if "ember" in lowered:
        return VoiceRole.EMBER
    if "narrator" in lowered:
        return VoiceRole.NARRATOR
    return VoiceRole.CONTRIBUTOR


def collect_voice_declarations(lines) -> dict[str, str]:
    """Collect [[VOICE:role:name]] declarations. The last one per role wins."""
    names = {}
    for line in lines:
        match = _VOICE_DECL_RE.match(line.strip())
        if match:
            names[match.group(1).strip().lower()] = match.group(2).strip()
    return names


def _unquote(value: str) -> str:
    return value.strip().strip('"').strip("'").strip()


def _parse_media_ref(reference: str) -> MediaRef:
    ref = reference.strip()
    lowered = ref.lower()
    if lowered.startswith("id="):
        return MediaRef(id=_unquote(ref[3:]))
    if lowered.startswith("name="):
        return MediaRef(name=_unquote(ref[5:]))
    if lowered.startswith("path="):
        match = _PATH_RE.match(ref)
        if match:
            fallback = _unquote(match.group(2)) if match.group(2) else None
            return MediaRef(path=match.group(1), fallback=fallback)
        return MediaRef(path=_unquote(ref[5:]))
    return MediaRef(name=_unquote(ref))


def _parse_media(match, block_id, table, line_number, line) -> MediaBlock:
    reference, content = match.group(1), match.group(2).strip()
    if not reference.strip():
        raise ParseSkip(line_number, line, "empty media reference")
    ref = _parse_media_ref(reference)
    for directive in parse_effects(content):
        table.record(block_id, directive)
    return MediaBlock(id=block_id, ref=ref)


def _parse_hold(content: str, block_id: int, table: EffectTable) -> HoldBlock:
    inner = content.strip()
    if inner.startswith("(") and inner.endswith(")"):
        inner = inner[1:-1]

    color = HOLD_COLOR
    duration = HOLD_DURATION
    fade = None
    for token in split_effects(inner):
        directive = parse_effect(token)
        if directive is not None:
            if directive.kind == "fade" and fade is None:
                table.record(block_id, directive)
                fade = directive.to_effect()
            continue
        color_match = _COLOR_RE.search(token)
        if color_match:
            color = _expand_hex(color_match.group(1))
            continue
        duration_match = _HOLD_DURATION_RE.match(token.strip())
        if duration_match and float(duration_match.group(1)) > 0:
            duration = float(duration_match.group(1))

    return HoldBlock(id=block_id, color=color, duration=duration, fade=fade)


def _expand_hex(digits: str) -> str:
    if len(digits) == 3:
        digits = "".join(ch * 2 for ch in digits)
    return f"#{digits}"


def _parse_loadscreen(content: str, block_id: int) -> LoadScreenBlock:
    message = _MESSAGE_RE.search(content)
    duration = _LOAD_DURATION_RE.search(content)
    icon = _ICON_RE.search(content)
    seconds = float(duration.group(1)) if duration else LOADSCREEN_DURATION
    return LoadScreenBlock(
        id=block_id,
        message=message.group(1) if message else LOADSCREEN_MESSAGE,
        duration=seconds if seconds > 0 else LOADSCREEN_DURATION,
        icon=icon.group(1) if icon else LOADSCREEN_ICON,
    )


def _clean_voice_content(content: str) -> tuple[str, str]:
    """Return (raw_text, display_text) for a voice line's content.

    Content wrapped as ``<text>`` is unwrapped; visual-action tags are kept
    in the display text and stripped from the raw text.
    """
    text = content.strip()
    if text.startswith("<") and text.endswith(">"):
        inner = text[1:-1].strip()
        if "<" not in _TAG_RE.sub("", inner) and ">" not in _TAG_RE.sub("", inner):
            text = inner
    display = _SPACE_RE.sub(" ", text).strip()
    raw = _SPACE_RE.sub(" ", _TAG_RE.sub("", text)).strip()
    return raw, display


def _parse_preference(word: str | None, role: VoiceRole, line_number: int) -> Preference:
    if word and word.strip():
        preference = PREFERENCE_WORDS.get(word.strip().lower())
        if preference is not None:
            return preference
        logger.warning("Line %d: unknown audio preference %r, using default", line_number, word)
    if role in (VoiceRole.EMBER, VoiceRole.NARRATOR):
        return Preference.TEXT
    return Preference.RECORDED


def _parse_voice(line, block_id, names, demos, line_number) -> VoiceBlock:
    match = _STRUCTURED_RE.match(line) or _LEGACY_RE.match(line)
    if not match:
        raise ParseSkip(line_number, line, "unrecognized line")

    speaker = match.group(1).strip()
    if not speaker:
        raise ParseSkip(line_number, line, "voice line without a speaker")
    raw_text, display_text = _clean_voice_content(match.group(4))
    if not raw_text:
        raise ParseSkip(line_number, line, "voice line has no text")

    role = voice_role_for(speaker)
    preference = _parse_preference(match.group(2), role, line_number)
    contribution_id = (match.group(3) or "").strip() or None
    if contribution_id in (NO_AUDIO_ID, "null"):
        contribution_id = None

    if role in (VoiceRole.EMBER, VoiceRole.NARRATOR):
        display_name = names.get(role.value, speaker)
    else:
        display_name = speaker

    demo = demos.get(contribution_id) if demos and contribution_id else None
    if demo is not None and role is VoiceRole.CONTRIBUTOR:
        role = VoiceRole.DEMO

    return VoiceBlock(
        id=block_id,
        speaker=speaker,
        voice_role=role,
        raw_text=raw_text,
        display_text=display_text,
        preference=preference,
        display_name=display_name,
        contribution_id=contribution_id,
        demo=demo,
    )


def _classify(line, line_number, block_id, names, table, demos) -> Block:
    media_match = _MEDIA_RE.match(line)
    if media_match:
        return _parse_media(media_match, block_id, table, line_number, line)

    hold_match = _HOLD_LOAD_RE.match(line)
    if hold_match:
        if hold_match.group(1).upper() == "HOLD":
            return _parse_hold(hold_match.group(2), block_id, table)
        return _parse_loadscreen(hold_match.group(2), block_id)

    if line.startswith("[["):
        raise ParseSkip(line_number, line, "malformed block tag")

    return _parse_voice(line, block_id, names, demos, line_number)


def parse_script(
    text: str,
    voice_names: dict | None = None,
    demos: dict[str, DemoRecord] | None = None,
) -> ParsedScript:
    """Parse a story script into blocks and an effect table.

    Never raises on malformed lines: each unclassifiable line is logged,
    recorded in ``diagnostics`` and dropped. ``voice_names`` supplies the
    ember/narrator display names that script declarations override.
    """
    lines = (text or "").splitlines()
    names = {"ember": EMBER_NAME, "narrator": NARRATOR_NAME}
    names.update(voice_names or {})
    names.update(collect_voice_declarations(lines))

    table = EffectTable()
    diagnostics = []
    blocks = [StartBlock(id=1)]
    block_id = 2

    for line_number, line in enumerate(lines, 1):
        stripped = line.strip()
        if not stripped or _VOICE_DECL_RE.match(stripped):
            continue
        try:
            block = _classify(stripped, line_number, block_id, names, table, demos)
        except ParseSkip as skip:
            logger.warning("Skipping script %s", skip)
            diagnostics.append(skip)
            continue
        blocks.append(block)
        block_id += 1

    blocks.append(EndBlock(id=block_id))
    table.backfill(b.id for b in blocks)

    blocks = [
        replace(b, effects=tuple(table.effects_for(b.id))) if isinstance(b, MediaBlock) else b
        for b in blocks
    ]
    logger.debug("Parsed %d blocks (%d lines skipped)", len(blocks), len(diagnostics))
    return ParsedScript(blocks=blocks, effects=table, voice_names=names, diagnostics=diagnostics)


# --- Re-rendering ---

def _render_ref(ref: MediaRef) -> str:
    if ref.path:
        return f"path={ref.path}" + (f" fallback={ref.fallback}" if ref.fallback else "")
    if ref.id:
        return f"id={ref.id}"
    return f"name={ref.name or 'media'}"


def render_block(block: Block, effect_table: EffectTable | None = None) -> str:
    """Render one block as a script line (markers render as "")."""
    if isinstance(block, VoiceBlock):
        preference = "synth" if block.preference is Preference.PERSONAL else block.preference.value
        contribution = block.contribution_id or NO_AUDIO_ID
        return f"[{block.speaker} | {preference} | {contribution}] <{block.display_text}>"
    if isinstance(block, MediaBlock):
        effects = effect_table.effects_for(block.id) if effect_table is not None else block.effects
        effects = ", ".join(render_effect(effect) for effect in effects)
        return f"<{_render_ref(block.ref)}> {effects}".rstrip()
    if isinstance(block, HoldBlock):
        parts = [f"COLOR:{block.color}", f"duration={_num(block.duration)}"]
        if block.fade is not None:
            parts.append(f"FADE-{block.fade.direction.upper()}:duration={_num(block.fade.duration)}")
        return f"[[HOLD]] ({','.join(parts)})"
    if isinstance(block, LoadScreenBlock):
        return (
            f'[[LOAD SCREEN]] (message="{block.message}",'
            f'duration={_num(block.duration)},icon="{block.icon}")'
        )
    return ""


def render_script(blocks: list, effect_table: EffectTable | None = None) -> str:
    """Render blocks back to the structured script dialect.

    Media effects come from ``effect_table`` when given, so edits made to
    the table are reflected in the output.
    """
    lines = []
    declared = set()
    for block in blocks:
        if isinstance(block, VoiceBlock) and block.voice_role in (VoiceRole.EMBER, VoiceRole.NARRATOR):
            role = block.voice_role.value
            if role not in declared and block.display_name:
                lines.append(f"[[VOICE:{role}:{block.display_name}]]")
                declared.add(role)
    for block in blocks:
        line = render_block(block, effect_table)
        if line:
            lines.append(line)
    return "\n".join(lines)


# --- Captions ---

def split_sentences(text: str) -> list[str]:
    """Split text into sentences, keeping their end punctuation."""
    if not text or not text.strip():
        return []
    sentences = [s.strip() for s in re.findall(r"[^.!?]*[.!?]+|[^.!?]+$", text)]
    sentences = [s for s in sentences if s]
    return sentences or [text.strip()]


def estimate_sentence_timings(sentences: list[str], total_duration: float) -> list[SentenceTiming]:
    """Apportion a clip's duration across its sentences by character share."""
    if not sentences:
        return []
    total_chars = sum(len(s) for s in sentences) or 1
    timings = []
    elapsed = 0.0
    for index, sentence in enumerate(sentences):
        duration = total_duration * len(sentence) / total_chars
        timings.append(SentenceTiming(sentence=sentence, start=elapsed, duration=duration, index=index))
        elapsed += duration
    return timings
