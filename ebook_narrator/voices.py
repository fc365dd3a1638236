"""Voice routing, rate damping, and voice catalog ranking."""

import logging

from ebook_narrator.constants import (
    DEFAULT_VOICES,
    FALLBACK_LOCAL_VOICE,
    LOCAL_RATE_CEILING,
    LOCAL_RATE_DAMPING,
    MAX_SPEED,
    MIN_SPEED,
    RECOMMENDED_VOICE_MARKERS,
    REMOTE_VOICE_PREFIX,
    UNSTABLE_VOICE_MARKERS,
    VOICE_LANGUAGE_PREFIX,
)
from ebook_narrator.models import Voice, VoiceOption

logger = logging.getLogger(__name__)


def is_remote_voice(voice: str) -> bool:
    return voice.startswith(REMOTE_VOICE_PREFIX)


def remote_voice_id(voice: str) -> str:
    """Strip the routing prefix: "online:zh-CN-XiaoxiaoNeural" → "zh-CN-XiaoxiaoNeural"."""
    if is_remote_voice(voice):
        return voice[len(REMOTE_VOICE_PREFIX):]
    return voice


def is_unstable_voice(voice: str) -> bool:
    """Voices that garble or stall when driven fast and need extra spacing."""
    lowered = voice.lower()
    return any(marker in lowered for marker in UNSTABLE_VOICE_MARKERS)


def local_rate(voice: str, speed: float) -> float:
    """Speaking rate for the on-device engine, damped for unstable voices."""
    if is_unstable_voice(voice):
        return min(speed * LOCAL_RATE_DAMPING, LOCAL_RATE_CEILING)
    return speed


def clamp_speed(speed: float) -> float:
    return round(min(max(speed, MIN_SPEED), MAX_SPEED), 2)


def simplify_display_name(name: str) -> str:
    """Drop vendor noise: "Microsoft Yunyang Online (Natural)" → "Yunyang (Natural)"."""
    return name.replace("Microsoft ", "").replace(" Online", "").strip()


def _is_chinese(voice: Voice) -> bool:
    return voice.language.lower().startswith(VOICE_LANGUAGE_PREFIX)


def _local_priority(voice: Voice) -> int:
    if is_unstable_voice(voice.name):
        return 3
    if "microsoft" in voice.name.lower():
        return 4
    return 5


def rank_voices(remote: list[Voice], local: list[Voice] | None = None) -> list[VoiceOption]:
    """Merge remote and on-device voices into one ranked option list.

    Priority: recommended remote → other remote → local Yunyang → other
    Microsoft local → remaining local. Only Chinese voices are offered. When
    nothing qualifies the built-in default catalog is returned instead.
    """
    options = []
    for voice in remote:
        if not _is_chinese(voice):
            continue
        recommended = voice.is_recommended or any(
            marker in voice.name for marker in RECOMMENDED_VOICE_MARKERS
        )
        options.append(VoiceOption(
            value=REMOTE_VOICE_PREFIX + voice.name,
            display_name=simplify_display_name(voice.display_name or voice.name),
            kind="online",
            is_recommended=recommended,
            priority=1 if recommended else 2,
        ))

    for voice in local or []:
        if not _is_chinese(voice):
            continue
        options.append(VoiceOption(
            value=voice.name,
            display_name=voice.display_name or voice.name,
            kind="local",
            priority=_local_priority(voice),
        ))

    if not options:
        logger.warning("No Chinese voices available; using built-in defaults")
        return [
            VoiceOption(
                value=REMOTE_VOICE_PREFIX + name,
                display_name=display,
                kind="default",
                is_recommended=name == FALLBACK_LOCAL_VOICE,
                priority=1 if name == FALLBACK_LOCAL_VOICE else 2,
            )
            for name, display in DEFAULT_VOICES
        ]

    # stable sort keeps catalog order within a priority band
    return sorted(options, key=lambda o: o.priority)


def default_voice(options: list[VoiceOption]) -> str:
    if options:
        return options[0].value
    return REMOTE_VOICE_PREFIX + FALLBACK_LOCAL_VOICE
