"""On-device speech engine and audio player adapters.

Both adapters report back through an ``on_event(event, code=None)`` callback
that may fire on a worker thread; callers are responsible for marshalling it
onto their own event loop.
"""

import io
import logging
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum

from pydub import AudioSegment
from pydub.exceptions import CouldntDecodeError

from ebook_narrator.constants import LOCAL_BASE_WPM
from ebook_narrator.models import Voice

logger = logging.getLogger(__name__)

PLAYER_COMMAND = ("ffplay", "-nodisp", "-autoexit", "-loglevel", "quiet", "-")


class SpeechEvent(Enum):
    COMPLETED = "completed"
    ERROR = "error"
    INTERRUPTED = "interrupted"


@dataclass
class Utterance:
    text: str
    voice: str
    rate: float = 1.0     # multiplier of the engine's base speaking rate


class LocalSpeechEngine(ABC):
    """Speaks text with a voice installed on this machine."""

    supports_resume = False

    @abstractmethod
    def speak(self, utterance: Utterance, on_event) -> None:
        """Start speaking; on_event fires once when the utterance ends."""

    @abstractmethod
    def pause(self) -> None: ...

    @abstractmethod
    def resume(self) -> bool:
        """Continue a paused utterance. Returns False if it cannot."""

    @abstractmethod
    def cancel(self) -> None: ...

    @abstractmethod
    def voices(self) -> list[Voice]: ...


class AudioPlayer(ABC):
    """Plays one encoded audio buffer at a time."""

    @abstractmethod
    def play(self, audio: bytes, on_event, offset: float = 0.0) -> None:
        """Start playing audio from offset seconds; on_event fires when it ends."""

    @abstractmethod
    def pause(self) -> float:
        """Stop playback silently and return the offset reached, in seconds."""

    @abstractmethod
    def stop(self) -> None: ...


def _decode_language(languages) -> str:
    if not languages:
        return ""
    lang = languages[0]
    if isinstance(lang, bytes):
        # espeak reports b"\x05zh" style entries
        lang = lang.decode("utf-8", errors="ignore")
    return "".join(ch for ch in lang if ch.isprintable()).strip()


class _Speaking:
    def __init__(self):
        self.cancelled = False


class Pyttsx3SpeechEngine(LocalSpeechEngine):
    """LocalSpeechEngine backed by pyttsx3.

    pyttsx3 cannot pause mid-utterance, so pause() cancels and resume()
    reports False; the caller restarts the unit instead.
    """

    supports_resume = False

    def __init__(self, engine=None):
        if engine is None:
            import pyttsx3

            engine = pyttsx3.init()
        self._engine = engine
        self._lock = threading.Lock()
        self._current: _Speaking | None = None

    def voices(self) -> list[Voice]:
        return [
            Voice(
                name=v.name,
                display_name=v.name,
                language=_decode_language(getattr(v, "languages", None)),
                gender=getattr(v, "gender", None) or "",
            )
            for v in self._engine.getProperty("voices")
        ]

    def _apply_voice(self, name: str) -> None:
        for v in self._engine.getProperty("voices"):
            if name in (v.id, v.name):
                self._engine.setProperty("voice", v.id)
                return
        logger.debug("Voice %s not installed; keeping engine default", name)

    def speak(self, utterance: Utterance, on_event) -> None:
        self.cancel()
        state = _Speaking()
        self._current = state
        threading.Thread(
            target=self._run, args=(utterance, on_event, state), daemon=True
        ).start()

    def _run(self, utterance: Utterance, on_event, state: _Speaking) -> None:
        with self._lock:
            if state.cancelled:
                on_event(SpeechEvent.INTERRUPTED)
                return
            try:
                self._apply_voice(utterance.voice)
                self._engine.setProperty("rate", int(LOCAL_BASE_WPM * utterance.rate))
                self._engine.say(utterance.text)
                self._engine.runAndWait()
            except (RuntimeError, OSError) as e:
                logger.warning("Speech engine failed: %s", e)
                on_event(SpeechEvent.ERROR, type(e).__name__)
                return
        on_event(SpeechEvent.INTERRUPTED if state.cancelled else SpeechEvent.COMPLETED)

    def pause(self) -> None:
        self.cancel()

    def resume(self) -> bool:
        return False

    def cancel(self) -> None:
        if self._current is not None and not self._current.cancelled:
            self._current.cancelled = True
            self._engine.stop()


class _Playback:
    def __init__(self, offset: float):
        self.offset = offset
        self.process = None
        self.started_at: float | None = None
        self.stopped = False
        self.lock = threading.Lock()

    @property
    def position(self) -> float:
        if self.started_at is None:
            return self.offset
        return self.offset + (time.monotonic() - self.started_at)


class PydubAudioPlayer(AudioPlayer):
    """Decodes MP3 with pydub and pipes WAV into ffplay.

    Decoding and playback both run on a worker thread, so play() returns
    immediately.
    """

    def __init__(self, command: tuple[str, ...] = PLAYER_COMMAND):
        self.command = command
        self._current: _Playback | None = None

    @property
    def position(self) -> float:
        return self._current.position if self._current else 0.0

    def play(self, audio: bytes, on_event, offset: float = 0.0) -> None:
        self.stop()
        playback = _Playback(offset)
        self._current = playback
        threading.Thread(
            target=self._run, args=(playback, audio, on_event), daemon=True
        ).start()

    def _decode(self, audio: bytes, offset: float) -> bytes:
        segment = AudioSegment.from_file(io.BytesIO(audio), format="mp3")
        wav = io.BytesIO()
        segment[int(offset * 1000):].export(wav, format="wav")
        return wav.getvalue()

    def _run(self, playback: _Playback, audio: bytes, on_event) -> None:
        try:
            data = self._decode(audio, playback.offset)
        except CouldntDecodeError as e:
            logger.warning("Could not decode audio: %s", e)
            on_event(SpeechEvent.ERROR, "decode")
            return

        with playback.lock:
            if playback.stopped:
                on_event(SpeechEvent.INTERRUPTED)
                return
            try:
                playback.process = subprocess.Popen(
                    self.command,
                    stdin=subprocess.PIPE,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                )
            except OSError as e:
                logger.warning("Could not start %s: %s", self.command[0], e)
                on_event(SpeechEvent.ERROR, "player-unavailable")
                return
            playback.started_at = time.monotonic()

        playback.process.communicate(data)
        if playback.stopped:
            on_event(SpeechEvent.INTERRUPTED)
        elif playback.process.returncode != 0:
            on_event(SpeechEvent.ERROR, f"exit-{playback.process.returncode}")
        else:
            on_event(SpeechEvent.COMPLETED)

    def pause(self) -> float:
        if self._current is None:
            return 0.0
        offset = self._current.position
        self.stop()
        return offset

    def stop(self) -> None:
        playback, self._current = self._current, None
        if playback is None:
            return
        with playback.lock:
            if playback.stopped:
                return
            playback.stopped = True
            if playback.process is not None and playback.process.poll() is None:
                playback.process.terminate()
