"""Shared fixtures and device fakes for ebook narrator tests."""

import asyncio
from dataclasses import fields

import pytest

from ebook_narrator.devices import AudioPlayer, LocalSpeechEngine, SpeechEvent
from ebook_narrator.errors import SynthesisServiceError
from ebook_narrator.models import SpeakableUnit
from ebook_narrator.playback import PlaybackTimings
from ebook_narrator.synthesis import RetryPolicy, SynthesisClient


class FakeTransport:
    """In-memory synthesis transport.

    failures maps unit text to how many times it should fail before
    succeeding; a negative count fails forever.
    """

    def __init__(self):
        self.calls = []
        self.failures = {}
        self.healthy = True
        self.health_checks = 0
        self.voices = []
        self.on_synthesize = None

    def texts(self):
        return [text for text, _, _ in self.calls]

    async def synthesize(self, text, voice, options):
        self.calls.append((text, voice, options))
        if self.on_synthesize:
            self.on_synthesize(text)
        remaining = self.failures.get(text, 0)
        if remaining:
            if remaining > 0:
                self.failures[text] = remaining - 1
            raise SynthesisServiceError(500, "boom")
        return f"audio:{text}".encode()

    async def list_voices(self):
        return self.voices

    async def check_health(self):
        self.health_checks += 1
        return self.healthy

    async def aclose(self):
        pass


class FakeAudioPlayer(AudioPlayer):
    """Records plays; tests end playback by calling finish()."""

    def __init__(self):
        self.played = []
        self.active = None
        self.overlaps = 0
        self.stops = 0
        self.pause_offset = 1.5

    def play(self, audio, on_event, offset=0.0):
        if self.active is not None:
            self.overlaps += 1
        self.played.append((audio, offset))
        self.active = on_event

    def finish(self, event=SpeechEvent.COMPLETED, code=None):
        callback, self.active = self.active, None
        callback(event, code)

    def pause(self):
        self.active = None
        return self.pause_offset

    def stop(self):
        self.stops += 1
        self.active = None


class FakeSpeechEngine(LocalSpeechEngine):
    """Records utterances; tests end speech by calling finish()."""

    def __init__(self, supports_resume=False):
        self.supports_resume = supports_resume
        self.spoken = []
        self.active = None
        self.cancels = 0
        self.paused = False
        self.resumes = 0

    def speak(self, utterance, on_event):
        self.spoken.append(utterance)
        self.active = on_event

    def finish(self, event=SpeechEvent.COMPLETED, code=None):
        callback, self.active = self.active, None
        callback(event, code)

    def pause(self):
        self.paused = True

    def resume(self):
        if not self.paused:
            return False
        self.paused = False
        self.resumes += 1
        return True

    def cancel(self):
        self.cancels += 1
        self.active = None

    def voices(self):
        return []


class ScriptedDecisions:
    """DecisionProvider that replays canned answers and records prompts."""

    def __init__(self, answers):
        self.answers = list(answers)
        self.messages = []

    def should_continue(self, message):
        self.messages.append(message)
        return self.answers.pop(0)


async def settle(rounds=5):
    """Let scheduled callbacks and tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0.01)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def client(transport):
    """SynthesisClient with a single attempt per call and no backoff."""
    return SynthesisClient(transport, RetryPolicy(max_retries=1, timeout=1.0))


@pytest.fixture
def player():
    return FakeAudioPlayer()


@pytest.fixture
def engine():
    return FakeSpeechEngine()


@pytest.fixture
def instant_timings():
    """PlaybackTimings with every delay zeroed and a long watchdog."""
    timings = PlaybackTimings(**{f.name: 0 for f in fields(PlaybackTimings)})
    timings.watchdog = 15.0
    return timings


@pytest.fixture
def sample_units():
    return [
        SpeakableUnit(text="第一章", is_structural=True),
        SpeakableUnit(text="天色已晚。", has_trailing_break=True),
        SpeakableUnit(text="他推开了门。"),
    ]
