"""Collaborator interfaces and a JSON-backed story library implementing them."""

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Protocol

from storycut.constants import FUZZY_CONTAINS_MIN_CHARS, FUZZY_PREFIX_CHARS
from storycut.errors import StoryCutError
from storycut.models import DemoRecord, MediaRef

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PersonalVoice:
    available: bool
    voice_id: str | None = None
    voice_name: str | None = None


@dataclass(frozen=True)
class RecordedAudio:
    """A previously captured answer to a story prompt."""
    audio_url: str | None
    transcript: str | None = None
    user_id: str | None = None
    user_first_name: str | None = None
    duration_seconds: float | None = None
    created_at: str | None = None


class ContentStore(Protocol):
    async def resolve_media(self, ref: MediaRef, scope_id: str | None = None) -> str | None: ...

    async def has_personal_voice(self, user_id: str) -> PersonalVoice: ...


class RecordedAudioIndex(Protocol):
    async def lookup_recorded_audio(self, message_id: str) -> RecordedAudio | None: ...


def _normalize(text: str | None) -> str:
    return " ".join((text or "").lower().split())


@dataclass
class StoryLibrary:
    """In-memory Content Store and Recorded-Audio Index for one story."""
    scope_id: str | None = None
    image_url: str | None = None
    photos: list = field(default_factory=list)
    supporting_media: list = field(default_factory=list)
    voice_models: dict = field(default_factory=dict)
    messages: dict = field(default_factory=dict)
    demos: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "StoryLibrary":
        messages = {
            str(message_id): RecordedAudio(
                audio_url=info.get("audio_url"),
                transcript=info.get("transcript"),
                user_id=info.get("user_id"),
                user_first_name=info.get("user_first_name"),
                duration_seconds=info.get("duration_seconds"),
                created_at=info.get("created_at"),
            )
            for message_id, info in data.get("messages", {}).items()
        }
        demos = {
            str(contribution_id): DemoRecord(
                audio_url=info.get("audio_url"),
                transcript=info.get("transcript"),
                personal_voice_id=info.get("personal_voice_id"),
                duration_seconds=info.get("duration_seconds"),
            )
            for contribution_id, info in data.get("demos", {}).items()
        }
        return cls(
            scope_id=data.get("scope_id"),
            image_url=data.get("image_url"),
            photos=list(data.get("photos", [])),
            supporting_media=list(data.get("supporting_media", [])),
            voice_models=dict(data.get("voice_models", {})),
            messages=messages,
            demos=demos,
        )

    @classmethod
    def from_file(cls, path: str) -> "StoryLibrary":
        """Load a library JSON file. Raises StoryCutError if it is malformed."""
        with open(path) as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as e:
                raise StoryCutError(f"Malformed library file {path}: {e}") from e
        if not isinstance(data, dict):
            raise StoryCutError(f"Library file {path} must contain a JSON object")
        library = cls.from_dict(data)
        logger.info(
            "Loaded library %s: %d photos, %d media, %d messages",
            os.path.basename(path), len(library.photos),
            len(library.supporting_media), len(library.messages),
        )
        return library

    # --- Content Store ---

    async def resolve_media(self, ref: MediaRef, scope_id: str | None = None) -> str | None:
        """Resolve a media reference to a playable URL.

        A path is already a URL. An id is tried as a photo, then as
        supporting media, then as the scope's main image, and finally used
        as a legacy direct URL. A name matches a display name or filename.
        """
        if ref.path:
            return ref.path
        if ref.id:
            return self._resolve_id(ref.id)
        if ref.name:
            return self._resolve_name(ref.name)
        return None

    def _resolve_id(self, media_id: str) -> str | None:
        for photo in self.photos:
            if str(photo.get("id")) == media_id and photo.get("storage_url"):
                return photo["storage_url"]
        for item in self.supporting_media:
            if str(item.get("id")) == media_id and item.get("file_url"):
                return item["file_url"]
        if media_id in ("main", self.scope_id) and self.image_url:
            return self.image_url
        logger.debug("Media id %s not in library, using it as a direct URL", media_id)
        return media_id

    def _resolve_name(self, name: str) -> str | None:
        wanted = name.strip().lower()
        for photo in self.photos:
            names = (photo.get("display_name"), photo.get("original_filename"))
            if any(n and n.strip().lower() == wanted for n in names):
                return photo.get("storage_url")
        for item in self.supporting_media:
            names = (item.get("display_name"), item.get("file_name"))
            if any(n and n.strip().lower() == wanted for n in names):
                return item.get("file_url")
        return None

    async def has_personal_voice(self, user_id: str) -> PersonalVoice:
        model = self.voice_models.get(str(user_id))
        if not model or not model.get("voice_id"):
            return PersonalVoice(available=False)
        return PersonalVoice(
            available=True,
            voice_id=model["voice_id"],
            voice_name=model.get("voice_name"),
        )

    # --- Recorded-Audio Index ---

    async def lookup_recorded_audio(self, message_id: str) -> RecordedAudio | None:
        return self.messages.get(str(message_id))

    def match_contribution(self, speaker: str, text: str, used: set) -> str | None:
        """Best-effort match of a line without an id to one of the speaker's messages.

        Tries an exact transcript match, then containment for longer lines,
        then a shared prefix. Matched ids are added to ``used`` so one
        message is not matched twice.
        """
        first_name = _normalize(speaker).split(" ")[0] if speaker else ""
        wanted = _normalize(text)
        if not first_name or not wanted:
            return None

        candidates = sorted(
            (
                (message_id, message)
                for message_id, message in self.messages.items()
                if message_id not in used
                and _normalize(message.user_first_name) == first_name
                and message.transcript
            ),
            key=lambda pair: pair[1].created_at or "",
        )

        rules = (
            lambda t: t == wanted,
            lambda t: len(wanted) > FUZZY_CONTAINS_MIN_CHARS and (wanted in t or t in wanted),
            lambda t: t[:FUZZY_PREFIX_CHARS] == wanted[:FUZZY_PREFIX_CHARS],
        )
        for rule in rules:
            for message_id, message in candidates:
                if rule(_normalize(message.transcript)):
                    used.add(message_id)
                    logger.info("Matched line by %s to message %s", speaker, message_id)
                    return message_id
        return None
