"""CLI interface with subcommand routing."""

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import asdict

from storycut.audio import ClockAudioPlayer
from storycut.constants import OUTPUT_DIR, TTS_RATE, VERSION
from storycut.errors import StoryCutError
from storycut.exporter import export_timeline
from storycut.parser import ParsedScript, parse_script, render_script
from storycut.store import StoryLibrary
from storycut.timeline import State, TimelineObserver, create_timeline
from storycut.tts import EdgeSpeechSynthesizer, list_voices
from storycut.voices import PlaybackResources, build_cast, load_cast


def _read_script(file_path: str) -> str:
    """Read a script file, exiting with an error if missing or empty."""
    if not os.path.exists(file_path):
        print(f"Error: File not found: {file_path}", file=sys.stderr)
        raise SystemExit(1)

    with open(file_path) as f:
        text = f.read()

    if not text.strip():
        print(f"Error: File is empty: {file_path}", file=sys.stderr)
        raise SystemExit(1)
    return text


def _load_library(path: str | None) -> StoryLibrary:
    if not path:
        return StoryLibrary()
    if not os.path.exists(path):
        print(f"Error: Library not found: {path}", file=sys.stderr)
        raise SystemExit(1)
    return StoryLibrary.from_file(path)


def _load(args) -> tuple[ParsedScript, dict, StoryLibrary]:
    """Parse the script named in args using its cast sidecar and library."""
    text = _read_script(args.script)
    cast_data = load_cast(args.script)
    library = _load_library(getattr(args, "library", None))
    names = build_cast(cast_data).names()
    parsed = parse_script(text, voice_names=names, demos=library.demos)
    for skip in parsed.diagnostics:
        print(f"  [skip] {skip}", file=sys.stderr)
    if not parsed.content_blocks:
        print(f"Error: Could not parse any blocks from: {args.script}", file=sys.stderr)
        raise SystemExit(1)
    return parsed, cast_data, library


def _resources(args, parsed, cast_data, library) -> PlaybackResources:
    speed = getattr(args, "speed", 1.0)
    if speed <= 0:
        print("Error: --speed must be positive", file=sys.stderr)
        raise SystemExit(1)
    return PlaybackResources(
        content_store=library,
        recorded_audio=library,
        synthesizer=EdgeSpeechSynthesizer(rate=args.rate),
        player=ClockAudioPlayer(time_scale=1.0 / speed),
        cast=build_cast(cast_data, parsed.voice_names),
        scope_id=library.scope_id,
        legacy_matching=args.legacy_matching,
    )


def _describe(block) -> str:
    if block.kind == "voice":
        name = block.display_name or block.speaker
        return f"{name} ({block.voice_role.value}, {block.preference.value}): {block.display_text}"
    if block.kind == "media":
        effects = ", ".join(e.kind for e in block.effects)
        return block.ref.describe() + (f" [{effects}]" if effects else "")
    if block.kind == "hold":
        return f"{block.color} for {block.duration}s"
    if block.kind == "loadscreen":
        return f'"{block.message}" for {block.duration}s'
    return ""


def _parsed_json(parsed: ParsedScript) -> dict:
    table = parsed.effects
    return {
        "blocks": [{"kind": b.kind, **asdict(b)} for b in parsed.blocks],
        "effects": {
            "selected": table.selected,
            "directions": table.directions,
            "durations": table.durations,
            "distances": table.distances,
            "scales": table.scales,
            "targets": {k: t.render() for k, t in table.targets.items()},
        },
        "voice_names": parsed.voice_names,
        "diagnostics": [
            {"line": d.line_number, "reason": d.reason, "text": d.line} for d in parsed.diagnostics
        ],
    }


def cmd_parse(args):
    """Parse a script and list its blocks."""
    parsed, _, _ = _load(args)
    if args.json:
        print(json.dumps(_parsed_json(parsed), indent=2))
        return
    print(f"{len(parsed.content_blocks)} blocks:")
    for block in parsed.content_blocks:
        print(f"  [{block.id}] {block.kind:<10} {_describe(block)}")


def cmd_render(args):
    """Re-render a script in the structured dialect."""
    parsed, _, _ = _load(args)
    print(render_script(parsed.blocks, parsed.effects))


def _print_visual(state):
    if state.loading:
        print(f"  [loading] {state.loading_message}")
    elif state.color:
        print(f"  [hold] {state.color}")
    elif state.media_url:
        effects = ", ".join(e.kind for e in state.effects)
        print(f"  [media] {state.media_url}" + (f" ({effects})" if effects else ""))


def _print_caption(caption):
    if caption.text:
        print(f"  {caption.speaker}: {caption.text}")


def cmd_play(args):
    """Play a script headlessly, printing visuals and captions as they happen."""
    parsed, cast_data, library = _load(args)
    resources = _resources(args, parsed, cast_data, library)
    observer = TimelineObserver(
        on_visual_state_change=_print_visual,
        on_caption_change=_print_caption,
        on_error=lambda index, reason: print(f"  [error] block {index}: {reason}", file=sys.stderr),
        on_complete=lambda: print("Playback complete."),
    )
    timeline = create_timeline(parsed.blocks, resources, observer=observer,
                               time_scale=resources.player.time_scale, progress_interval=None)
    print(f"Playing {args.script} (~{timeline.total_estimate:.1f}s)")
    try:
        state = asyncio.run(timeline.play())
    except KeyboardInterrupt:
        print("\nStopped.")
        return
    if state is State.STOPPED:
        print("Stopped.")


def cmd_export(args):
    """Resolve a script's audio and write clips plus a timeline manifest."""
    parsed, cast_data, library = _load(args)
    resources = _resources(args, parsed, cast_data, library)
    out_dir = args.out or os.path.join(OUTPUT_DIR, os.path.splitext(os.path.basename(args.script))[0])

    def progress(done, total, block):
        print(f"  Resolving voice line {done}/{total}: {block.speaker}")

    manifest_path = asyncio.run(export_timeline(
        parsed.blocks, resources, out_dir, source=os.path.abspath(args.script), progress=progress,
    ))
    print(f"Wrote {manifest_path}")


def cmd_voices(args):
    """List available voices."""
    voices = list_voices(args.filter)
    if not voices:
        print("No matching voices found.")
        return
    print("Available voices:")
    for v in voices:
        print(f"  {v}")


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="storycut",
        description="StoryCut: parse and play story scripts with narration, photos and effects",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # parse
    parse_parser = subparsers.add_parser("parse", help="Parse a script and list its blocks")
    parse_parser.add_argument("script", help="Path to the story script")
    parse_parser.add_argument("--json", action="store_true", help="Print blocks and effects as JSON")
    parse_parser.add_argument("--library", help="Story library JSON (for demo contributions)")
    parse_parser.set_defaults(func=cmd_parse)

    # render
    render_parser = subparsers.add_parser("render", help="Re-render a script in the structured dialect")
    render_parser.add_argument("script", help="Path to the story script")
    render_parser.set_defaults(func=cmd_render)

    # play / export share resolution options
    for name, func, help_text in (
        ("play", cmd_play, "Play a script headlessly"),
        ("export", cmd_export, "Export voice clips and a timeline manifest"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("script", help="Path to the story script")
        sub.add_argument("--library", help="Story library JSON (media, voices, recordings)")
        sub.add_argument("--rate", default=TTS_RATE, help="Speech rate, e.g. -10%%")
        sub.add_argument("--legacy-matching", action="store_true",
                         help="Match lines without an id to recordings by text")
        sub.set_defaults(func=func)
        if name == "play":
            sub.add_argument("--speed", type=float, default=1.0, help="Playback speed multiplier")
        else:
            sub.add_argument("--out", help="Output directory")

    # voices
    voices_parser = subparsers.add_parser("voices", help="List available voices")
    voices_parser.add_argument("--filter", help="Filter voices by substring")
    voices_parser.set_defaults(func=cmd_voices)

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if not args.command:
        parser.print_help()
        return

    try:
        args.func(args)
    except StoryCutError as e:
        print(f"Error: {e}", file=sys.stderr)
        raise SystemExit(1)
