"""CLI interface with subcommand routing."""

import argparse
import asyncio
import contextlib
import logging
import os
import shutil
import signal
import sys

from ebook_narrator.batch import BatchPipeline, DecisionProvider
from ebook_narrator.cache import UnitCache
from ebook_narrator.constants import (
    DEFAULT_SERVER_URL,
    MAX_UNIT_LENGTH,
    OUTPUT_DIR,
    REMOTE_VOICE_PREFIX,
    SERVER_URL_ENV,
    VERSION,
)
from ebook_narrator.devices import PydubAudioPlayer, Pyttsx3SpeechEngine
from ebook_narrator.errors import NarratorError, SynthesisError
from ebook_narrator.exporter import export, write_text_exports
from ebook_narrator.models import SpeakableUnit
from ebook_narrator.playback import PlaybackOrchestrator
from ebook_narrator.reader import load_document
from ebook_narrator.segmenter import segment
from ebook_narrator.synthesis import (
    EdgeSynthesisTransport,
    HttpSynthesisTransport,
    SynthesisClient,
)
from ebook_narrator.voices import default_voice, is_remote_voice, rank_voices

logger = logging.getLogger(__name__)


class ConsoleDecisionProvider(DecisionProvider):
    """Asks on the terminal; non-interactive runs stop unless --yes was given."""

    def __init__(self, assume_yes: bool = False):
        self.assume_yes = assume_yes

    def should_continue(self, message: str) -> bool:
        print(f"\n{message}")
        if self.assume_yes:
            print("Continuing (--yes)")
            return True
        if not sys.stdin.isatty():
            print("Not an interactive terminal; stopping.")
            return False
        response = input("Continue? [Y/n] ").strip().lower()
        return response != "n"


def _check_ffmpeg():
    """Verify ffmpeg and ffplay are installed."""
    missing = [tool for tool in ("ffmpeg", "ffplay") if not shutil.which(tool)]
    if missing:
        print(f"Error: {' and '.join(missing)} required but not found.", file=sys.stderr)
        print("Install with: brew install ffmpeg", file=sys.stderr)
        raise SystemExit(1)


def _build_client(args) -> SynthesisClient:
    if args.edge:
        return SynthesisClient(EdgeSynthesisTransport())
    return SynthesisClient(HttpSynthesisTransport(args.server))


def _load_units(file_path: str, max_length: int = MAX_UNIT_LENGTH) -> list[SpeakableUnit]:
    if not os.path.exists(file_path):
        print(f"Error: File not found: {file_path}", file=sys.stderr)
        raise SystemExit(1)

    units = segment(load_document(file_path), max_unit_length=max_length)
    if not units:
        print(f"Error: No readable text in: {file_path}", file=sys.stderr)
        raise SystemExit(1)
    return units


def _resolve_voice(voice: str | None, remote_only: bool = False) -> str:
    if not voice:
        return default_voice([])
    if remote_only and not is_remote_voice(voice):
        return REMOTE_VOICE_PREFIX + voice
    return voice


def cmd_segment(args):
    """Print the units a document is split into."""
    units = _load_units(args.file, args.max_length)
    for i, unit in enumerate(units, 1):
        marker = " (heading)" if unit.is_structural else ""
        print(f"[{i:>4}] {unit.text}{marker}")
    structural = sum(1 for u in units if u.is_structural)
    print(f"{len(units)} units ({structural} headings)")


async def _list_voices(args) -> list:
    client = _build_client(args)
    try:
        remote = await client.list_voices()
    except SynthesisError as e:
        print(f"Warning: remote voices unavailable: {e}", file=sys.stderr)
        remote = []
    finally:
        await client.aclose()

    local = Pyttsx3SpeechEngine().voices() if args.local else []
    return rank_voices(remote, local)


def cmd_voices(args):
    """List available voices, recommended first."""
    options = asyncio.run(_list_voices(args))
    filter_str = args.filter.lower() if args.filter else None
    if filter_str:
        options = [o for o in options if filter_str in o.value.lower() or filter_str in o.display_name.lower()]
    if not options:
        print("No matching voices found.")
        return
    print("Available voices:")
    for o in options:
        star = " *" if o.is_recommended else ""
        print(f"  {o.value:<40} {o.display_name} [{o.kind}]{star}")


async def _check_health(args) -> bool:
    client = _build_client(args)
    try:
        return await client.check_health()
    finally:
        await client.aclose()


def cmd_health(args):
    """Probe the synthesis service."""
    target = "edge-tts" if args.edge else args.server
    if asyncio.run(_check_health(args)):
        print(f"Service healthy: {target}")
        return
    print(f"Error: Service unreachable: {target}", file=sys.stderr)
    raise SystemExit(1)


async def _run_export(args, units: list[SpeakableUnit], voice: str):
    client = _build_client(args)
    pipeline = BatchPipeline(
        client,
        ConsoleDecisionProvider(assume_yes=args.yes),
        cache=UnitCache(),
        on_progress=lambda i, total: print(f"  Synthesizing unit {i + 1}/{total}"),
    )
    job = pipeline.create_job(units, voice, args.speed)

    loop = asyncio.get_running_loop()
    with contextlib.suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGINT, job.cancel)
    try:
        return await pipeline.run(job)
    finally:
        with contextlib.suppress(NotImplementedError):
            loop.remove_signal_handler(signal.SIGINT)
        await client.aclose()


def cmd_export(args):
    """Synthesize a whole document into one MP3."""
    units = _load_units(args.file)
    voice = _resolve_voice(args.voice, remote_only=True)
    print(f"Exporting {len(units)} units with {voice} at {args.speed}x...")

    result = asyncio.run(_run_export(args, units, voice))
    if not result.complete:
        print(
            f"Error: Export stopped at unit {result.resume_index + 1} "
            f"({result.succeeded}/{result.total_units} units synthesized); no file written.",
            file=sys.stderr,
        )
        raise SystemExit(1)

    output_path = export(result, args.output_dir, os.path.abspath(args.file), voice, args.speed)
    print(f"Synthesized {result.succeeded}/{result.total_units} units")
    if result.retried_indices:
        print(f"Units that needed retries: {', '.join(str(i + 1) for i in result.retried_indices)}")
    if result.failed_indices:
        print(f"Failed units: {', '.join(str(i + 1) for i in result.failed_indices)}")
    print(f"Done: {output_path}")


def cmd_ssml(args):
    """Write text and SSML exports of the segmented document."""
    units = _load_units(args.file)
    voice = _resolve_voice(args.voice)
    for path in write_text_exports(units, args.output_dir, voice, args.speed):
        print(f"Wrote {path}")


async def _narrate(args, units: list[SpeakableUnit], voice: str):
    client = _build_client(args)
    orchestrator = PlaybackOrchestrator(
        client,
        PydubAudioPlayer(),
        Pyttsx3SpeechEngine(),
        on_notice=lambda notice: print(f"[{notice.level}] {notice.message}"),
        on_progress=lambda i, total: logger.debug("Progress %d/%d", i, total),
    )
    orchestrator.load(units, voice, args.speed)
    if args.start > 1:
        orchestrator.seek(args.start - 1)

    loop = asyncio.get_running_loop()
    with contextlib.suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGINT, orchestrator.stop)
    try:
        orchestrator.start()
        await orchestrator.wait_until_stopped()
    finally:
        with contextlib.suppress(NotImplementedError):
            loop.remove_signal_handler(signal.SIGINT)
        orchestrator.stop()
        await client.aclose()


def cmd_read(args):
    """Narrate a document aloud."""
    units = _load_units(args.file)
    voice = _resolve_voice(args.voice)
    if is_remote_voice(voice):
        _check_ffmpeg()
    if not 1 <= args.start <= len(units):
        print(f"Error: --start must be between 1 and {len(units)}", file=sys.stderr)
        raise SystemExit(1)

    print(f"Reading {len(units)} units with {voice} (Ctrl-C to stop)")
    try:
        asyncio.run(_narrate(args, units, voice))
    except KeyboardInterrupt:
        pass
    print("Stopped.")


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="ebook-narrator",
        description="Ebook Narrator: read .txt/.epub books aloud and export them as MP3",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument(
        "--server",
        default=os.environ.get(SERVER_URL_ENV, DEFAULT_SERVER_URL),
        help=f"Synthesis service base URL (env {SERVER_URL_ENV})",
    )
    parser.add_argument("--edge", action="store_true", help="Call edge-tts directly instead of the service")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # segment
    segment_parser = subparsers.add_parser("segment", help="Show how a document is split into units")
    segment_parser.add_argument("file", help="Path to a .txt or .epub file")
    segment_parser.add_argument("--max-length", type=int, default=MAX_UNIT_LENGTH, help="Maximum unit length")
    segment_parser.set_defaults(func=cmd_segment)

    # voices
    voices_parser = subparsers.add_parser("voices", help="List available voices")
    voices_parser.add_argument("--filter", help="Filter voices by substring")
    voices_parser.add_argument("--local", action="store_true", help="Include on-device voices")
    voices_parser.set_defaults(func=cmd_voices)

    # health
    health_parser = subparsers.add_parser("health", help="Check the synthesis service")
    health_parser.set_defaults(func=cmd_health)

    # export
    export_parser = subparsers.add_parser("export", help="Export a document as one MP3")
    export_parser.add_argument("file", help="Path to a .txt or .epub file")
    export_parser.add_argument("--voice", help="Remote voice, e.g. zh-CN-XiaoxiaoNeural")
    export_parser.add_argument("--speed", type=float, default=1.0, help="Speed multiplier (0.5-2.0)")
    export_parser.add_argument("--output-dir", default=OUTPUT_DIR, help="Directory for the MP3")
    export_parser.add_argument("--yes", action="store_true", help="Keep retrying without asking")
    export_parser.set_defaults(func=cmd_export)

    # ssml
    ssml_parser = subparsers.add_parser("ssml", help="Write text and SSML exports")
    ssml_parser.add_argument("file", help="Path to a .txt or .epub file")
    ssml_parser.add_argument("--voice", help="Voice name for the SSML wrapper")
    ssml_parser.add_argument("--speed", type=float, default=1.0, help="Prosody rate")
    ssml_parser.add_argument("--output-dir", default=OUTPUT_DIR, help="Directory for the exports")
    ssml_parser.set_defaults(func=cmd_ssml)

    # read
    read_parser = subparsers.add_parser("read", help="Narrate a document aloud")
    read_parser.add_argument("file", help="Path to a .txt or .epub file")
    read_parser.add_argument("--voice", help="online:<name> for remote voices, else an on-device voice")
    read_parser.add_argument("--speed", type=float, default=1.0, help="Speed multiplier (0.5-2.0)")
    read_parser.add_argument("--start", type=int, default=1, help="Unit number to start from")
    read_parser.set_defaults(func=cmd_read)

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        args.func(args)
    except NarratorError as e:
        print(f"Error: {e}", file=sys.stderr)
        raise SystemExit(1)
