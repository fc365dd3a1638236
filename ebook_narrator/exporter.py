"""Write the merged narration and its text/SSML companions to disk."""

import json
import os
import time
from datetime import datetime, timezone
from xml.sax.saxutils import escape

from ebook_narrator.constants import (
    EXPORT_PREFIX,
    SSML_BREAK_MS,
    SSML_LANGUAGE,
    VERSION,
)
from ebook_narrator.models import BatchResult, SpeakableUnit
from ebook_narrator.voices import remote_voice_id

_XML_ENTITIES = {'"': "&quot;", "'": "&apos;"}


def export_filename(timestamp_ms: int | None = None) -> str:
    """ebook-tts-<epoch ms>.mp3"""
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    return f"{EXPORT_PREFIX}-{timestamp_ms}.mp3"


def export(
    result: BatchResult,
    output_dir: str,
    source: str = "",
    voice: str = "",
    speed: float = 1.0,
    timestamp_ms: int | None = None,
) -> str:
    """Write the merged MP3 and a provenance manifest.

    Creates:
      - <output_dir>/ebook-tts-<ms>.mp3 (the narration)
      - <output_dir>/ebook-tts-<ms>.json (manifest)

    Returns path to the MP3 file.
    """
    os.makedirs(output_dir, exist_ok=True)
    output_path = os.path.join(output_dir, export_filename(timestamp_ms))
    with open(output_path, "wb") as f:
        f.write(result.audio)

    manifest = {
        "source": source,
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "narrator_version": VERSION,
        "settings": {
            "voice": remote_voice_id(voice),
            "speed": speed,
        },
        "stats": {
            "units": result.total_units,
            "succeeded": result.succeeded,
            # 1-based, as shown to people
            "failed_units": [i + 1 for i in result.failed_indices],
            "retried_units": [i + 1 for i in result.retried_indices],
            "bytes": len(result.audio),
        },
    }
    manifest_path = os.path.splitext(output_path)[0] + ".json"
    with open(manifest_path, "w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2, ensure_ascii=False)

    return output_path


def generate_ssml(units: list[SpeakableUnit], voice: str, speed: float) -> str:
    """One <s> per unit inside a single voice/prosody wrapper, with breaks between."""
    lines = [
        '<?xml version="1.0" encoding="UTF-8"?>',
        f'<speak version="1.0" xmlns="http://www.w3.org/2001/10/synthesis" xml:lang="{SSML_LANGUAGE}">',
        f'  <voice name="{escape(remote_voice_id(voice), _XML_ENTITIES)}">',
        f'    <prosody rate="{format(speed, "g")}">',
    ]
    for i, unit in enumerate(units):
        lines.append(f"      <s>{escape(unit.text, _XML_ENTITIES)}</s>")
        if i < len(units) - 1:
            lines.append(f'      <break time="{SSML_BREAK_MS}ms"/>')
    lines += [
        "    </prosody>",
        "  </voice>",
        "</speak>",
    ]
    return "\n".join(lines)


def export_text(units: list[SpeakableUnit]) -> str:
    return "\n\n".join(unit.text for unit in units)


def write_text_exports(
    units: list[SpeakableUnit],
    output_dir: str,
    voice: str,
    speed: float,
    now: datetime | None = None,
) -> list[str]:
    """Write <base>.txt and <base>.ssml side by side. Returns both paths."""
    now = now or datetime.now()
    base = f"{EXPORT_PREFIX}-{now.strftime('%Y-%m-%dT%H-%M-%S')}"
    os.makedirs(output_dir, exist_ok=True)

    paths = []
    for ext, content in ((".txt", export_text(units)), (".ssml", generate_ssml(units, voice, speed))):
        path = os.path.join(output_dir, base + ext)
        with open(path, "w", encoding="utf-8") as f:
            f.write(content)
        paths.append(path)
    return paths
