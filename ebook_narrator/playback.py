"""Unit-by-unit narration with pause, resume, and seek.

The orchestrator runs on a single asyncio event loop. Every audio source it
starts captures the session's generation number; stop, seek, and each new
source bump that number, so a completion that arrives late from an abandoned
source is ignored instead of advancing the narration twice.
"""

import asyncio
import logging
import math
from dataclasses import dataclass
from functools import partial

from ebook_narrator.cache import UnitCache
from ebook_narrator.constants import (
    FALLBACK_LOCAL_VOICE,
    LOCAL_ADVANCE_DELAY,
    LOCAL_ERROR_DELAY,
    LOCAL_SPACED_ADVANCE_DELAY,
    LOCAL_START_DELAY,
    LOCAL_WATCHDOG,
    PLAYBACK_MAX_UNIT_LENGTH,
    REMOTE_ADVANCE_DELAY,
    REMOTE_ERROR_DELAY,
    SEEK_SETTLE_DELAY,
    SKIP_DELAY,
)
from ebook_narrator.devices import SpeechEvent, Utterance
from ebook_narrator.errors import SynthesisError
from ebook_narrator.models import (
    CacheKey,
    Notice,
    PlaybackSession,
    PlaybackStatus,
    SpeakableUnit,
)
from ebook_narrator.synthesis import rate_descriptor
from ebook_narrator.voices import (
    clamp_speed,
    is_remote_voice,
    is_unstable_voice,
    local_rate,
    remote_voice_id,
)

logger = logging.getLogger(__name__)

REMOTE = "remote"
LOCAL = "local"


@dataclass
class PlaybackTimings:
    """Delays (seconds) between playback steps."""

    remote_advance: float = REMOTE_ADVANCE_DELAY
    remote_error: float = REMOTE_ERROR_DELAY
    local_start: float = LOCAL_START_DELAY
    local_advance: float = LOCAL_ADVANCE_DELAY
    local_spaced_advance: float = LOCAL_SPACED_ADVANCE_DELAY
    local_error: float = LOCAL_ERROR_DELAY
    watchdog: float = LOCAL_WATCHDOG
    seek_settle: float = SEEK_SETTLE_DELAY
    skip: float = SKIP_DELAY


class PlaybackOrchestrator:
    """Narrates a loaded unit sequence through a remote or on-device voice.

    Voices prefixed with "online:" are synthesized remotely (through the
    shared UnitCache) and played on the AudioPlayer; any other voice is
    spoken by the LocalSpeechEngine. A remote failure falls back to the
    on-device voice for that unit only.

    All public methods must be called from the event loop thread.
    """

    def __init__(
        self,
        client,
        player,
        engine,
        cache: UnitCache | None = None,
        timings: PlaybackTimings | None = None,
        on_notice=None,
        on_progress=None,
        on_complete=None,
        max_unit_length: int = PLAYBACK_MAX_UNIT_LENGTH,
        fallback_voice: str = FALLBACK_LOCAL_VOICE,
    ):
        self.client = client
        self.player = player
        self.engine = engine
        self.cache = cache if cache is not None else UnitCache()
        self.timings = timings or PlaybackTimings()
        self.on_notice = on_notice
        self.on_progress = on_progress
        self.on_complete = on_complete
        self.max_unit_length = max_unit_length
        self.fallback_voice = fallback_voice

        self.session: PlaybackSession | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._watchdog: asyncio.TimerHandle | None = None
        self._task: asyncio.Task | None = None
        self._preloads: set[asyncio.Task] = set()
        self._stopped = asyncio.Event()

        # What is producing sound for the current unit
        self._backend: str | None = None
        self._current_audio: bytes | None = None
        self._local_voice: str | None = None
        self._speaking = False
        self._local_paused = False

    # -- public API --------------------------------------------------------

    @property
    def status(self) -> PlaybackStatus:
        return self.session.status if self.session else PlaybackStatus.IDLE

    def load(self, units: list[SpeakableUnit], voice: str, speed: float = 1.0) -> None:
        if self.session is not None:
            self.stop()
        self.session = PlaybackSession(units=list(units), voice=voice, speed=clamp_speed(speed))
        self._stopped.clear()
        self._report_progress()

    def start(self) -> None:
        session = self.session
        if session is None or not session.units:
            raise ValueError("Nothing to narrate: load a non-empty unit sequence first")
        if session.status is PlaybackStatus.PAUSED:
            self.resume()
            return
        if session.status is PlaybackStatus.PLAYING:
            return
        session.status = PlaybackStatus.PLAYING
        session.paused_offset = 0.0
        self._stopped.clear()
        self._play_current()

    def toggle(self) -> None:
        if self.status is PlaybackStatus.PLAYING:
            self.pause()
        else:
            self.start()

    def pause(self) -> None:
        session = self.session
        if session is None or session.status is not PlaybackStatus.PLAYING:
            return
        session.status = PlaybackStatus.PAUSED
        self._cancel_timer()
        self._cancel_watchdog()
        self._cancel_task()

        if self._backend == REMOTE and self._current_audio is not None:
            session.paused_offset = self.player.pause()
        elif self._backend == LOCAL and self._speaking:
            self.engine.pause()
            self._local_paused = True
        self._notify("info", "Playback paused")

    def resume(self) -> None:
        session = self.session
        if session is None or session.status is not PlaybackStatus.PAUSED:
            return
        session.status = PlaybackStatus.PLAYING

        if self._backend == REMOTE and self._current_audio is not None and session.paused_offset > 0:
            offset, session.paused_offset = session.paused_offset, 0.0
            session.generation += 1
            self.player.play(
                self._current_audio,
                self._device_callback(session.generation, self._on_audio_event),
                offset=offset,
            )
            self._notify("info", "Resuming from paused position")
            return

        if self._backend == LOCAL and self._local_paused and self.engine.supports_resume:
            self._local_paused = False
            if self.engine.resume():
                self._arm_watchdog(session.generation)
                self._notify("info", "Resuming from paused position")
                return

        session.paused_offset = 0.0
        self._play_current()

    def seek(self, index: int) -> None:
        session = self.session
        if session is None or not 0 <= index < len(session.units):
            total = len(session.units) if session else 0
            raise IndexError(f"Unit index {index} out of range (0..{total - 1})")

        was_playing = session.status is PlaybackStatus.PLAYING
        session.generation += 1
        self._teardown()
        session.current_index = index
        session.paused_offset = 0.0
        self._report_progress()
        self._notify("info", f"Jumped to unit {index + 1}")
        if was_playing:
            self._schedule(self.timings.seek_settle, self._play_current)

    def seek_fraction(self, fraction: float) -> None:
        """Seek to a relative position, e.g. 0.5 for the middle of the text."""
        session = self.session
        if session is None or not session.units:
            raise IndexError("No units loaded")
        index = math.floor(fraction * len(session.units))
        self.seek(max(0, min(index, len(session.units) - 1)))

    def stop(self) -> None:
        session = self.session
        if session is None:
            return
        session.generation += 1
        self._teardown()
        session.status = PlaybackStatus.STOPPED
        session.current_index = 0
        session.paused_offset = 0.0
        self._report_progress()
        self._stopped.set()

    def set_speed(self, speed: float) -> float:
        """Change speed; applies from the next unit."""
        session = self._require_session()
        session.speed = clamp_speed(speed)
        return session.speed

    def adjust_speed(self, delta: float) -> float:
        speed = self.set_speed(self._require_session().speed + delta)
        self._notify("info", f"Speed set to {speed:.1f}x")
        return speed

    def set_voice(self, voice: str) -> None:
        """Change voice; applies from the next unit."""
        self._require_session().voice = voice

    async def wait_until_stopped(self) -> None:
        await self._stopped.wait()

    # -- narration steps ---------------------------------------------------

    def _play_current(self) -> None:
        self._timer = None
        session = self.session
        if session is None or session.status is not PlaybackStatus.PLAYING:
            return
        if session.current_index >= len(session.units):
            self._finish()
            return

        unit = session.units[session.current_index]
        if len(unit.text) > self.max_unit_length:
            logger.warning(
                "Skipping unit %d: %d chars exceeds %d",
                session.current_index + 1, len(unit.text), self.max_unit_length,
            )
            self._advance(self.timings.skip)
            return

        session.generation += 1
        gen = session.generation
        if is_remote_voice(session.voice):
            self._task = asyncio.get_running_loop().create_task(self._play_remote(unit, gen))
        else:
            self._play_local(unit, session.voice, gen)

    async def _play_remote(self, unit: SpeakableUnit, gen: int) -> None:
        session = self.session
        voice_id = remote_voice_id(session.voice)
        rate = rate_descriptor(session.speed)
        key = CacheKey(voice_id, unit.text, rate)

        audio = self.cache.get(key)
        if audio is None:
            try:
                audio = await self.client.synthesize(unit.text, voice_id, rate)
            except SynthesisError as e:
                logger.warning("Remote synthesis failed for unit %d: %s", session.current_index + 1, e)
                self._fall_back_local(unit, gen, e)
                return
            except Exception as e:
                # the task must never die with the session still PLAYING
                logger.exception("Unexpected synthesis error for unit %d", session.current_index + 1)
                self._fall_back_local(unit, gen, e)
                return
            self.cache.put(key, audio)

        if gen != session.generation or session.status is not PlaybackStatus.PLAYING:
            return
        self._task = None
        self._backend = REMOTE
        self._current_audio = audio
        self.player.play(audio, self._device_callback(gen, self._on_audio_event))

    def _fall_back_local(self, unit: SpeakableUnit, gen: int, error: Exception) -> None:
        session = self.session
        if gen != session.generation or session.status is not PlaybackStatus.PLAYING:
            return
        self._task = None
        self._notify("error", f"Remote voice failed: {error}; switching to local voice")
        self._play_local(unit, self.fallback_voice, gen)

    def _on_audio_event(self, gen: int, event: SpeechEvent, code: str | None = None) -> None:
        session = self.session
        if session is None or gen != session.generation or session.status is not PlaybackStatus.PLAYING:
            return
        if event is SpeechEvent.INTERRUPTED:
            return

        self._backend = None
        self._current_audio = None
        if event is SpeechEvent.COMPLETED:
            self._advance(self.timings.remote_advance)
            self._preload(session.current_index + 1)
        else:
            logger.warning("Audio playback failed for unit %d: %s", session.current_index + 1, code)
            self._notify("error", "Audio playback failed, skipping to next unit")
            self._advance(self.timings.remote_error)

    def _preload(self, index: int) -> None:
        session = self.session
        if index >= len(session.units) or not is_remote_voice(session.voice):
            return
        voice_id = remote_voice_id(session.voice)
        rate = rate_descriptor(session.speed)
        key = CacheKey(voice_id, session.units[index].text, rate)
        if key in self.cache:
            return
        task = asyncio.get_running_loop().create_task(self._preload_unit(key))
        self._preloads.add(task)
        task.add_done_callback(self._preloads.discard)

    async def _preload_unit(self, key: CacheKey) -> None:
        try:
            audio = await self.client.synthesize(key.text, key.voice_id, key.rate)
        except SynthesisError as e:
            logger.debug("Preload failed: %s", e)
            return
        self.cache.put(key, audio)

    def _play_local(self, unit: SpeakableUnit, voice: str, gen: int) -> None:
        session = self.session
        self._backend = LOCAL
        self._local_voice = voice
        self._local_paused = False
        utterance = Utterance(unit.text, voice, local_rate(voice, session.speed))
        self.engine.cancel()
        self._schedule(self.timings.local_start, partial(self._speak, utterance, gen))

    def _speak(self, utterance: Utterance, gen: int) -> None:
        self._timer = None
        session = self.session
        if gen != session.generation or session.status is not PlaybackStatus.PLAYING:
            return
        self._speaking = True
        self._arm_watchdog(gen)
        self.engine.speak(utterance, self._device_callback(gen, self._on_speech_event))

    def _on_speech_event(self, gen: int, event: SpeechEvent, code: str | None = None) -> None:
        session = self.session
        if session is None or gen != session.generation or session.status is not PlaybackStatus.PLAYING:
            return
        # expected whenever we cancel on purpose
        if event is SpeechEvent.INTERRUPTED:
            return

        self._cancel_watchdog()
        self._speaking = False
        self._backend = None
        if event is SpeechEvent.COMPLETED:
            spaced = is_unstable_voice(self._local_voice or "")
            self._advance(self.timings.local_spaced_advance if spaced else self.timings.local_advance)
        else:
            logger.warning("Speech engine error on unit %d: %s", session.current_index + 1, code)
            self._notify("warning", f"Speech error ({code}), continuing with next unit")
            self._advance(self.timings.local_error)

    def _arm_watchdog(self, gen: int) -> None:
        self._cancel_watchdog()
        self._watchdog = asyncio.get_running_loop().call_later(
            self.timings.watchdog, self._on_watchdog, gen
        )

    def _on_watchdog(self, gen: int) -> None:
        self._watchdog = None
        session = self.session
        if gen != session.generation or session.status is not PlaybackStatus.PLAYING:
            return
        logger.warning("Unit %d timed out on the local voice; skipping", session.current_index + 1)
        session.generation += 1
        self._speaking = False
        self._backend = None
        self.engine.cancel()
        self._advance(0)

    def _advance(self, delay: float) -> None:
        self.session.current_index += 1
        self._report_progress()
        self._schedule(delay, self._play_current)

    def _finish(self) -> None:
        self.stop()
        self._notify("success", "Narration complete")
        if self.on_complete:
            self.on_complete()

    # -- plumbing ----------------------------------------------------------

    def _device_callback(self, gen: int, handler):
        """Wrap handler so device threads hand events back to the loop."""
        loop = asyncio.get_running_loop()

        def callback(event: SpeechEvent, code: str | None = None) -> None:
            if not loop.is_closed():
                loop.call_soon_threadsafe(handler, gen, event, code)

        return callback

    def _schedule(self, delay: float, callback) -> None:
        self._cancel_timer()
        self._timer = asyncio.get_running_loop().call_later(delay, callback)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _cancel_watchdog(self) -> None:
        if self._watchdog is not None:
            self._watchdog.cancel()
            self._watchdog = None

    def _cancel_task(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    def _teardown(self) -> None:
        """Silence every source and cancel every pending step."""
        self._cancel_timer()
        self._cancel_watchdog()
        self._cancel_task()
        for task in list(self._preloads):
            task.cancel()
        self._preloads.clear()
        self.player.stop()
        self.engine.cancel()
        self._backend = None
        self._current_audio = None
        self._speaking = False
        self._local_paused = False

    def _require_session(self) -> PlaybackSession:
        if self.session is None:
            raise ValueError("No units loaded")
        return self.session

    def _notify(self, level: str, message: str) -> None:
        if self.on_notice:
            self.on_notice(Notice(level, message))

    def _report_progress(self) -> None:
        if self.on_progress and self.session is not None:
            self.on_progress(self.session.current_index, len(self.session.units))
