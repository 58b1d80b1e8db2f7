"""Visual effect directives: FADE, PAN and ZOOM tokens on media lines."""

import logging
import re
from dataclasses import dataclass

from storycut.constants import (
    FADE_DURATION,
    PAN_DISTANCE,
    PAN_DURATION,
    ZOOM_SCALE,
    ZOOM_DURATION,
    MIN_EFFECT_DURATION,
)
from storycut.models import Fade, Pan, Zoom, ZoomTarget, Effect, _num

logger = logging.getLogger(__name__)

DIRECTIONS = {
    "fade": ("in", "out"),
    "pan": ("left", "right"),
    "zoom": ("in", "out"),
}

_NUM = r"(\d+(?:\.\d+)?)"
_COORDS = r"-?\d+(?:\.\d+)?\s*,\s*-?\d+(?:\.\d+)?"

_EFFECT_START_RE = re.compile(r"\s*(?:FADE|PAN|ZOOM)-", re.IGNORECASE)
_DIRECTIVE_RE = re.compile(r"^(FADE|PAN|ZOOM)-([A-Za-z]+)\b(.*)$", re.IGNORECASE | re.DOTALL)

# target=person:ID | target=custom:x,y | target=x,y | target=center
_TARGET_RE = re.compile(
    rf"target=(person:[^\s,:]+|custom:{_COORDS}|{_COORDS}|[^\s,:]+)",
    re.IGNORECASE,
)
_DURATION_KV_RE = re.compile(rf"duration={_NUM}s?", re.IGNORECASE)
_SCALE_KV_RE = re.compile(rf"scale={_NUM}[xs]?", re.IGNORECASE)
_DISTANCE_KV_RE = re.compile(rf"distance={_NUM}%?", re.IGNORECASE)
# Bare forms: "3s", "1.5x", "40%"
_DURATION_RE = re.compile(rf"(?<![\w.=]){_NUM}s\b", re.IGNORECASE)
_SCALE_RE = re.compile(rf"(?<![\w.=]){_NUM}x\b", re.IGNORECASE)
_DISTANCE_RE = re.compile(rf"(?<![\w.=]){_NUM}%")


@dataclass(frozen=True)
class EffectDirective:
    """One parsed effect token. Parameters the token did not state are None."""
    kind: str
    direction: str
    duration: float | None = None
    distance: float | None = None
    scale: float | None = None
    target: ZoomTarget | None = None

    def to_effect(self) -> Effect:
        """Build the effect, filling unstated parameters with defaults."""
        if self.kind == "fade":
            return Fade(direction=self.direction, duration=self.duration or FADE_DURATION)
        if self.kind == "pan":
            return Pan(
                direction=self.direction,
                distance=self.distance if self.distance is not None else PAN_DISTANCE,
                duration=self.duration or PAN_DURATION,
            )
        return Zoom(
            direction=self.direction,
            scale=self.scale or ZOOM_SCALE,
            duration=self.duration or ZOOM_DURATION,
            target=self.target or ZoomTarget.center(),
        )


def split_effects(content: str) -> list[str]:
    """Split a comma-separated effect list.

    A comma inside a ``target=`` coordinate pair is kept; the target closes
    once the text after a comma starts a new FADE-/PAN-/ZOOM- keyword.
    """
    effects = []
    current = []
    inside_target = False
    i = 0
    while i < len(content):
        if content[i:i + 7].lower() == "target=":
            inside_target = True
            current.append(content[i:i + 7])
            i += 7
            continue

        char = content[i]
        if char == ",":
            if inside_target and not _EFFECT_START_RE.match(content, i + 1):
                current.append(char)
            else:
                inside_target = False
                piece = "".join(current).strip()
                if piece:
                    effects.append(piece)
                current = []
        else:
            current.append(char)
        i += 1

    piece = "".join(current).strip()
    if piece:
        effects.append(piece)
    return effects


def _parse_target(raw: str) -> ZoomTarget:
    value = raw.strip()
    lowered = value.lower()
    if lowered == "center":
        return ZoomTarget.center()
    if lowered.startswith("person:"):
        return ZoomTarget.person(value[len("person:"):])
    if lowered.startswith("custom:"):
        value = value[len("custom:"):]
    if "," in value:
        x, y = (part.strip() for part in value.split(",", 1))
        return ZoomTarget.custom(float(x), float(y))
    # A bare token names a tagged person
    return ZoomTarget.person(value)


def _take(pattern: re.Pattern, text: str) -> tuple[float | None, str]:
    """Return the first numeric capture of pattern and text with it removed."""
    match = pattern.search(text)
    if not match:
        return None, text
    return float(match.group(1)), text[:match.start()] + " " + text[match.end():]


def _positive(value: float | None, token: str) -> float | None:
    if value is None:
        return None
    if value <= 0:
        logger.debug("Ignoring non-positive duration in effect %r", token)
        return None
    return max(MIN_EFFECT_DURATION, value)


def parse_effect(token: str) -> EffectDirective | None:
    """Parse one effect token, or return None if it is not an effect."""
    match = _DIRECTIVE_RE.match(token.strip())
    if not match:
        return None

    kind = match.group(1).lower()
    direction = match.group(2).lower()
    if direction not in DIRECTIONS[kind]:
        return None
    rest = match.group(3)

    target = None
    target_match = _TARGET_RE.search(rest)
    if target_match:
        if kind == "zoom":
            target = _parse_target(target_match.group(1))
        rest = rest[:target_match.start()] + " " + rest[target_match.end():]

    duration, rest = _take(_DURATION_KV_RE, rest)
    scale, rest = _take(_SCALE_KV_RE, rest)
    distance, rest = _take(_DISTANCE_KV_RE, rest)
    if duration is None:
        duration, rest = _take(_DURATION_RE, rest)
    if scale is None:
        scale, rest = _take(_SCALE_RE, rest)
    if distance is None:
        distance, rest = _take(_DISTANCE_RE, rest)

    return EffectDirective(
        kind=kind,
        direction=direction,
        duration=_positive(duration, token),
        distance=distance if kind == "pan" else None,
        scale=(scale or None) if kind == "zoom" else None,
        target=target,
    )


def parse_effects(content: str) -> list[EffectDirective]:
    """Parse every effect in a media line's content.

    Tokens that match no grammar are skipped. A block carries at most one
    effect of each kind; a later token of the same kind replaces the earlier.
    """
    by_kind = {}
    for token in split_effects(content):
        directive = parse_effect(token)
        if directive is None:
            logger.debug("Not an effect directive: %r", token)
            continue
        if directive.kind in by_kind:
            logger.debug("Replacing earlier %s effect with %r", directive.kind, token)
        by_kind[directive.kind] = directive
    return list(by_kind.values())


def render_effect(effect: Effect) -> str:
    """Render an effect back to its compact script form."""
    name = f"{effect.kind.upper()}-{effect.direction.upper()}"
    if isinstance(effect, Fade):
        return f"{name} {_num(effect.duration)}s"
    if isinstance(effect, Pan):
        return f"{name} {_num(effect.distance)}% {_num(effect.duration)}s"
    text = f"{name} {_num(effect.scale)}x {_num(effect.duration)}s"
    if effect.target.kind != "center":
        text += f" target={effect.target.render()}"
    return text
