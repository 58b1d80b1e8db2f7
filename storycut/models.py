"""Data models for story script playback."""

from dataclasses import dataclass, field
from enum import Enum
from typing import ClassVar, Union

from storycut.constants import LOADSCREEN_ICON


class VoiceRole(str, Enum):
    EMBER = "ember"
    NARRATOR = "narrator"
    CONTRIBUTOR = "contributor"
    DEMO = "demo"


class Preference(str, Enum):
    RECORDED = "recorded"
    PERSONAL = "personal"
    TEXT = "text"


class SourceKind(str, Enum):
    RECORDED_CAPTURE = "recorded_capture"
    PERSONAL_VOICE = "personal_voice"
    GENERIC_NARRATION = "generic_narration"
    FALLBACK = "fallback"


# --- Effects ---

@dataclass(frozen=True)
class ZoomTarget:
    kind: str = "center"            # "center", "person" or "custom"
    person_id: str | None = None
    x: float | None = None
    y: float | None = None

    @classmethod
    def center(cls) -> "ZoomTarget":
        return cls()

    @classmethod
    def person(cls, person_id: str) -> "ZoomTarget":
        return cls(kind="person", person_id=person_id)

    @classmethod
    def custom(cls, x: float, y: float) -> "ZoomTarget":
        return cls(kind="custom", x=x, y=y)

    def render(self) -> str:
        """Script form of the target, e.g. "person:abc" or "120,240"."""
        if self.kind == "person":
            return f"person:{self.person_id}"
        if self.kind == "custom":
            return f"{_num(self.x)},{_num(self.y)}"
        return "center"


@dataclass(frozen=True)
class Fade:
    kind: ClassVar[str] = "fade"
    direction: str                  # "in" or "out"
    duration: float


@dataclass(frozen=True)
class Pan:
    kind: ClassVar[str] = "pan"
    direction: str                  # "left" or "right"
    distance: float                 # percent
    duration: float


@dataclass(frozen=True)
class Zoom:
    kind: ClassVar[str] = "zoom"
    direction: str                  # "in" or "out"
    scale: float
    duration: float
    target: ZoomTarget = field(default_factory=ZoomTarget)


Effect = Union[Fade, Pan, Zoom]


# --- Blocks ---

@dataclass(frozen=True)
class MediaRef:
    """A reference to a photo or supporting media item."""
    id: str | None = None
    name: str | None = None
    path: str | None = None
    fallback: str | None = None

    def describe(self) -> str:
        return self.path or self.id or self.name or "media"


@dataclass(frozen=True)
class DemoRecord:
    """Self-contained recorded/personal sources for a pre-authored sample line."""
    audio_url: str | None = None
    transcript: str | None = None
    personal_voice_id: str | None = None
    duration_seconds: float | None = None


@dataclass(frozen=True)
class StartBlock:
    kind: ClassVar[str] = "start"
    id: int


@dataclass(frozen=True)
class EndBlock:
    kind: ClassVar[str] = "end"
    id: int


@dataclass(frozen=True)
class VoiceBlock:
    kind: ClassVar[str] = "voice"
    id: int
    speaker: str                    # tag as written in the script
    voice_role: VoiceRole
    raw_text: str                   # cleaned text used for synthesis
    display_text: str               # caption text, visual-action tags kept
    preference: Preference
    display_name: str = ""          # declared voice name for ember/narrator, else speaker
    contribution_id: str | None = None
    user_id: str | None = None
    demo: DemoRecord | None = None


@dataclass(frozen=True)
class MediaBlock:
    kind: ClassVar[str] = "media"
    id: int
    ref: MediaRef
    effects: tuple = ()

    @property
    def media_id(self) -> str | None:
        return self.ref.id

    @property
    def media_name(self) -> str | None:
        return self.ref.name

    @property
    def media_path(self) -> str | None:
        return self.ref.path


@dataclass(frozen=True)
class HoldBlock:
    kind: ClassVar[str] = "hold"
    id: int
    color: str
    duration: float
    fade: Fade | None = None


@dataclass(frozen=True)
class LoadScreenBlock:
    kind: ClassVar[str] = "loadscreen"
    id: int
    message: str
    duration: float
    icon: str


Block = Union[StartBlock, EndBlock, VoiceBlock, MediaBlock, HoldBlock, LoadScreenBlock]


# --- Playback ---

@dataclass
class VoiceResolution:
    source_kind: SourceKind
    audio_handle: object            # storycut.audio.AudioHandle
    spoken_text: str
    attribution_applied: bool = False
    voice_id: str | None = None

    def __post_init__(self):
        if not self.spoken_text or not self.spoken_text.strip():
            raise ValueError("VoiceResolution.spoken_text must not be empty")


@dataclass(frozen=True)
class SentenceTiming:
    sentence: str
    start: float
    duration: float
    index: int


@dataclass(frozen=True)
class Caption:
    speaker: str
    role: VoiceRole | None
    text: str
    sentences: tuple = ()


@dataclass(frozen=True)
class VisualState:
    media_url: str | None = None
    effects: tuple = ()
    color: str | None = None
    fade: Fade | None = None
    loading: bool = False
    loading_message: str = ""
    loading_icon: str = LOADSCREEN_ICON


BASELINE_VISUAL = VisualState()
EMPTY_CAPTION = Caption(speaker="", role=None, text="")


@dataclass(frozen=True)
class TimelineStep:
    index: int
    block: Block
    start_offset: float             # sum of estimates of every earlier step
    estimate: float


def _num(value: float | None) -> str:
    """Render a number without a trailing .0 for whole values."""
    if value is None:
        return ""
    if float(value).is_integer():
        return str(int(value))
    return str(value)
