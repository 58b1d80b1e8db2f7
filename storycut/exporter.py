"""Export a story timeline as audio clips plus a JSON manifest."""

import json
import logging
import os
from datetime import datetime, timezone

from storycut.audio import AudioRegistry
from storycut.constants import TTS_AUDIO_FORMAT, VERSION
from storycut.errors import StoryCutError
from storycut.models import HoldBlock, LoadScreenBlock, MediaBlock, VoiceBlock
from storycut.parser import render_block
from storycut.timeline import build_steps, resolve_media_url
from storycut.voices import PlaybackResources, resolve_voice

logger = logging.getLogger(__name__)


def _clip_filename(index: int, block: VoiceBlock) -> str:
    speaker_slug = block.speaker.strip().replace(" ", "_").lower()
    return f"{index:03d}_{speaker_slug}.{TTS_AUDIO_FORMAT}"


async def export_timeline(
    blocks: list,
    resources: PlaybackResources,
    out_dir: str,
    source: str = "",
    progress=None,
) -> str:
    """Resolve every block once and write the results to ``out_dir``.

    Creates:
      - <out_dir>/clips/NNN_<speaker>.mp3 (synthesized voice lines)
      - <out_dir>/timeline.json (manifest of every step)

    Recorded captures are referenced by URL rather than downloaded.
    Blocks that fail are listed under "errors" and skipped, like playback
    does. Returns the manifest path.
    """
    clips_dir = os.path.join(out_dir, "clips")
    os.makedirs(clips_dir, exist_ok=True)

    registry = AudioRegistry()
    steps = build_steps(blocks)
    entries = []
    errors = []
    voice_total = sum(1 for s in steps if isinstance(s.block, VoiceBlock))
    voice_done = 0

    try:
        for step in steps:
            block = step.block
            entry = {
                "index": step.index,
                "kind": block.kind,
                "start_offset": round(step.start_offset, 3),
                "estimate": round(step.estimate, 3),
                "script": render_block(block),
            }
            try:
                if isinstance(block, VoiceBlock):
                    voice_done += 1
                    if progress is not None:
                        progress(voice_done, voice_total, block)
                    entry.update(await _export_voice(step.index, block, resources, registry, clips_dir))
                elif isinstance(block, MediaBlock):
                    entry["media_url"] = await resolve_media_url(block, resources)
                elif isinstance(block, HoldBlock):
                    entry.update({"color": block.color, "duration": block.duration})
                elif isinstance(block, LoadScreenBlock):
                    entry.update({"message": block.message, "duration": block.duration})
            except StoryCutError as e:
                logger.warning("Export skipped block %d: %s", step.index, e)
                errors.append({"index": step.index, "reason": str(e)})
                entry["error"] = str(e)
            entries.append(entry)
    finally:
        registry.clear_all()

    manifest = {
        "source": source,
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "storycut_version": VERSION,
        "stats": {
            "blocks": len(steps),
            "voice_lines": voice_total,
            "errors": len(errors),
            "estimated_seconds": round(sum(s.estimate for s in steps), 1),
        },
        "steps": entries,
        "errors": errors,
    }

    manifest_path = os.path.join(out_dir, "timeline.json")
    with open(manifest_path, "w") as f:
        json.dump(manifest, f, indent=2)

    return manifest_path


async def _export_voice(index, block, resources, registry, clips_dir) -> dict:
    resolution = await resolve_voice(block, resources, registry)
    handle = resolution.audio_handle
    entry = {
        "speaker": block.display_name or block.speaker,
        "role": block.voice_role.value,
        "source": resolution.source_kind.value,
        "spoken_text": resolution.spoken_text,
        "attribution": resolution.attribution_applied,
        "voice_id": resolution.voice_id,
        "duration": round(handle.duration, 3),
    }
    if handle.audio_bytes:
        filename = _clip_filename(index, block)
        with open(os.path.join(clips_dir, filename), "wb") as f:
            f.write(handle.audio_bytes)
        entry["clip"] = os.path.join("clips", filename)
    if handle.url:
        entry["audio_url"] = handle.url
    registry.release(handle)
    return entry
