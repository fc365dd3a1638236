"""Tests for the playback orchestrator."""

import asyncio
from unittest.mock import patch

import pytest

from conftest import FakeSpeechEngine, settle
from ebook_narrator.cache import UnitCache
from ebook_narrator.constants import FALLBACK_LOCAL_VOICE
from ebook_narrator.devices import SpeechEvent
from ebook_narrator.models import CacheKey, PlaybackStatus, SpeakableUnit
from ebook_narrator.playback import PlaybackOrchestrator
from ebook_narrator.synthesis import EdgeSynthesisTransport, RetryPolicy, SynthesisClient

REMOTE = "online:zh-CN-XiaoxiaoNeural"
LOCAL = "Microsoft Huihui Desktop"


def _orchestrator(client, player, engine, timings, **kwargs):
    notices = []
    orch = PlaybackOrchestrator(
        client, player, engine,
        cache=kwargs.pop("cache", UnitCache()),
        timings=timings,
        on_notice=notices.append,
        **kwargs,
    )
    return orch, notices


def _audio(unit):
    return f"audio:{unit.text}".encode()


# --- lifecycle ---

@pytest.mark.asyncio
async def test_start_without_units_raises(client, player, engine, instant_timings):
    orch, _ = _orchestrator(client, player, engine, instant_timings)
    with pytest.raises(ValueError):
        orch.start()
    orch.load([], REMOTE)
    with pytest.raises(ValueError):
        orch.start()


@pytest.mark.asyncio
async def test_remote_narrates_in_order_and_completes(client, player, engine, instant_timings, sample_units):
    """Each completion advances to the next unit; the end stops and notifies."""
    completed = []
    orch, notices = _orchestrator(
        client, player, engine, instant_timings, on_complete=lambda: completed.append(True)
    )
    orch.load(sample_units, REMOTE)
    orch.start()

    for unit in sample_units:
        await settle()
        assert player.played[-1] == (_audio(unit), 0.0)
        player.finish()
    await settle()

    assert completed == [True]
    assert orch.status is PlaybackStatus.STOPPED
    assert orch.session.current_index == 0
    assert notices[-1].level == "success"
    assert player.overlaps == 0


@pytest.mark.asyncio
async def test_remote_uses_cache_and_preloads(client, transport, player, engine, instant_timings, sample_units):
    """Every unit is synthesized once: playback and preload share the cache."""
    cache = UnitCache()
    orch, _ = _orchestrator(client, player, engine, instant_timings, cache=cache)
    orch.load(sample_units, REMOTE)
    orch.start()
    for _ in sample_units:
        await settle()
        player.finish()
    await settle()

    texts = transport.texts()
    assert sorted(texts) == sorted(u.text for u in sample_units)
    assert CacheKey("zh-CN-XiaoxiaoNeural", sample_units[2].text, "+0%") in cache


@pytest.mark.asyncio
async def test_cached_unit_skips_synthesis(client, transport, player, engine, instant_timings, sample_units):
    cache = UnitCache()
    cache.put(CacheKey("zh-CN-XiaoxiaoNeural", sample_units[0].text, "+0%"), b"cached")
    orch, _ = _orchestrator(client, player, engine, instant_timings, cache=cache)
    orch.load(sample_units, REMOTE)
    orch.start()
    await settle()
    assert player.played == [(b"cached", 0.0)]
    assert transport.calls == []


@pytest.mark.asyncio
async def test_stop_resets_position(client, player, engine, instant_timings, sample_units):
    orch, _ = _orchestrator(client, player, engine, instant_timings)
    orch.load(sample_units, REMOTE)
    orch.start()
    await settle()
    player.finish()
    await settle()
    assert orch.session.current_index == 1

    orch.stop()
    assert orch.status is PlaybackStatus.STOPPED
    assert orch.session.current_index == 0
    assert player.active is None


@pytest.mark.asyncio
async def test_wait_until_stopped(client, player, engine, instant_timings, sample_units):
    orch, _ = _orchestrator(client, player, engine, instant_timings)
    orch.load(sample_units, REMOTE)
    orch.start()
    waiter = asyncio.ensure_future(orch.wait_until_stopped())
    await settle()
    assert not waiter.done()
    orch.stop()
    await asyncio.wait_for(waiter, 1.0)


# --- seek ---

@pytest.mark.asyncio
async def test_stale_completion_after_seek_is_ignored(client, player, engine, instant_timings, sample_units):
    """A completion from the abandoned unit must not move the new position."""
    orch, _ = _orchestrator(client, player, engine, instant_timings)
    orch.load(sample_units, REMOTE)
    orch.start()
    await settle()
    stale = player.active

    orch.seek(2)
    await settle()
    assert player.played[-1] == (_audio(sample_units[2]), 0.0)

    stale(SpeechEvent.COMPLETED)
    await settle()
    assert orch.session.current_index == 2
    assert len(player.played) == 2
    assert player.overlaps == 0


@pytest.mark.asyncio
async def test_seek_during_synthesis_discards_result(transport, client, player, engine, instant_timings, sample_units):
    """Audio synthesized for an abandoned unit is never played."""
    gate = asyncio.Event()
    original = transport.synthesize

    async def slow_first(text, voice, options):
        if text == sample_units[0].text:
            await gate.wait()
        return await original(text, voice, options)

    transport.synthesize = slow_first
    orch, _ = _orchestrator(client, player, engine, instant_timings)
    orch.load(sample_units, REMOTE)
    orch.start()
    await settle()
    orch.seek(1)
    gate.set()
    await settle()
    assert [audio for audio, _ in player.played] == [_audio(sample_units[1])]


@pytest.mark.asyncio
async def test_seek_out_of_range(client, player, engine, instant_timings, sample_units):
    orch, _ = _orchestrator(client, player, engine, instant_timings)
    orch.load(sample_units, REMOTE)
    with pytest.raises(IndexError):
        orch.seek(3)
    with pytest.raises(IndexError):
        orch.seek(-1)


@pytest.mark.asyncio
async def test_seek_while_idle_sets_start(client, player, engine, instant_timings, sample_units):
    orch, _ = _orchestrator(client, player, engine, instant_timings)
    orch.load(sample_units, REMOTE)
    orch.seek(1)
    assert player.played == []
    orch.start()
    await settle()
    assert player.played[-1][0] == _audio(sample_units[1])


@pytest.mark.asyncio
async def test_seek_fraction(client, player, engine, instant_timings, sample_units):
    orch, _ = _orchestrator(client, player, engine, instant_timings)
    orch.load(sample_units, REMOTE)
    orch.seek_fraction(0.7)
    assert orch.session.current_index == 2
    orch.seek_fraction(1.5)
    assert orch.session.current_index == 2


# --- pause / resume ---

@pytest.mark.asyncio
async def test_remote_pause_resume_from_offset(client, player, engine, instant_timings, sample_units):
    """Resume replays the paused unit's audio from the captured offset."""
    orch, _ = _orchestrator(client, player, engine, instant_timings)
    orch.load(sample_units, REMOTE)
    orch.start()
    await settle()
    stale = player.active

    orch.pause()
    assert orch.status is PlaybackStatus.PAUSED
    assert orch.session.paused_offset == 1.5

    orch.toggle()
    assert orch.status is PlaybackStatus.PLAYING
    assert player.played[-1] == (_audio(sample_units[0]), 1.5)
    assert orch.session.paused_offset == 0.0

    # the pre-pause source can no longer advance narration
    stale(SpeechEvent.COMPLETED)
    await settle()
    assert orch.session.current_index == 0

    player.finish()
    await settle()
    assert orch.session.current_index == 1


@pytest.mark.asyncio
async def test_pause_cancels_scheduled_advance(client, player, engine, instant_timings, sample_units):
    """Pausing between units stops the next unit from starting."""
    instant_timings.remote_advance = 0.05
    orch, _ = _orchestrator(client, player, engine, instant_timings)
    orch.load(sample_units, REMOTE)
    orch.start()
    await settle()
    player.finish()
    await asyncio.sleep(0)
    orch.pause()
    await asyncio.sleep(0.1)
    assert len(player.played) == 1
    assert orch.session.current_index == 1

    orch.resume()
    await settle()
    assert player.played[-1][0] == _audio(sample_units[1])


@pytest.mark.asyncio
async def test_local_pause_resume_native(client, player, instant_timings, sample_units):
    """An engine that can resume continues the same utterance."""
    engine = FakeSpeechEngine(supports_resume=True)
    orch, _ = _orchestrator(client, player, engine, instant_timings)
    orch.load(sample_units, LOCAL)
    orch.start()
    await settle()
    assert len(engine.spoken) == 1

    orch.pause()
    assert engine.paused is True
    orch.resume()
    assert engine.resumes == 1
    assert len(engine.spoken) == 1

    engine.finish()
    await settle()
    assert orch.session.current_index == 1


@pytest.mark.asyncio
async def test_local_pause_resume_restarts_unit(client, player, engine, instant_timings, sample_units):
    """Without native resume the current unit is spoken again."""
    orch, _ = _orchestrator(client, player, engine, instant_timings)
    orch.load(sample_units, LOCAL)
    orch.start()
    await settle()
    orch.pause()
    orch.resume()
    await settle()
    assert [u.text for u in engine.spoken] == [sample_units[0].text, sample_units[0].text]


# --- local voice ---

@pytest.mark.asyncio
async def test_local_narration_advances(client, player, engine, instant_timings, sample_units):
    orch, _ = _orchestrator(client, player, engine, instant_timings)
    orch.load(sample_units, LOCAL, speed=1.2)
    orch.start()
    await settle()
    assert engine.spoken[0].voice == LOCAL
    assert engine.spoken[0].rate == 1.2
    engine.finish()
    await settle()
    assert engine.spoken[-1].text == sample_units[1].text


@pytest.mark.asyncio
async def test_local_rate_damped_for_yunyang(client, player, engine, instant_timings, sample_units):
    orch, _ = _orchestrator(client, player, engine, instant_timings)
    orch.load(sample_units, "Microsoft Yunyang", speed=2.0)
    orch.start()
    await settle()
    assert engine.spoken[0].rate == 1.5


@pytest.mark.asyncio
async def test_local_interrupted_is_ignored(client, player, engine, instant_timings, sample_units):
    orch, _ = _orchestrator(client, player, engine, instant_timings)
    orch.load(sample_units, LOCAL)
    orch.start()
    await settle()
    engine.finish(SpeechEvent.INTERRUPTED)
    await settle()
    assert orch.session.current_index == 0
    assert len(engine.spoken) == 1


@pytest.mark.asyncio
async def test_local_error_advances_with_warning(client, player, engine, instant_timings, sample_units):
    orch, notices = _orchestrator(client, player, engine, instant_timings)
    orch.load(sample_units, LOCAL)
    orch.start()
    await settle()
    engine.finish(SpeechEvent.ERROR, "synthesis-failed")
    await settle()
    assert orch.session.current_index == 1
    assert any(n.level == "warning" and "synthesis-failed" in n.message for n in notices)


@pytest.mark.asyncio
async def test_local_watchdog_forces_advance(client, player, engine, instant_timings):
    """A hung utterance is abandoned after the watchdog fires."""
    instant_timings.watchdog = 0.02
    units = [SpeakableUnit(text=f"第{i}句。") for i in range(20)]
    orch, _ = _orchestrator(client, player, engine, instant_timings)
    orch.load(units, LOCAL)
    orch.start()
    await settle()
    assert orch.session.current_index >= 1
    assert len(engine.spoken) >= 2


@pytest.mark.asyncio
async def test_long_unit_skipped(client, player, engine, instant_timings):
    """Units over the playback guard length are skipped, not spoken."""
    units = [SpeakableUnit(text="长" * 201), SpeakableUnit(text="短句。")]
    orch, _ = _orchestrator(client, player, engine, instant_timings)
    orch.load(units, LOCAL)
    orch.start()
    await settle()
    assert [u.text for u in engine.spoken] == ["短句。"]


# --- failure handling ---

@pytest.mark.asyncio
async def test_remote_failure_falls_back_to_local(transport, client, player, engine, instant_timings, sample_units):
    """A unit the service cannot synthesize is spoken by the on-device voice."""
    transport.failures[sample_units[0].text] = -1
    orch, notices = _orchestrator(client, player, engine, instant_timings)
    orch.load(sample_units, REMOTE)
    orch.start()
    await settle()

    assert player.played == []
    assert engine.spoken[0].text == sample_units[0].text
    assert engine.spoken[0].voice == FALLBACK_LOCAL_VOICE
    assert notices[0].level == "error"

    # narration carries on with the remote voice
    engine.finish()
    await settle()
    assert player.played[-1][0] == _audio(sample_units[1])


@pytest.mark.asyncio
async def test_unexpected_synthesis_error_falls_back(transport, client, player, engine, instant_timings, sample_units):
    """Errors outside the synthesis hierarchy still hand the unit to the local voice."""
    def explode(text):
        raise RuntimeError("transport bug")

    transport.on_synthesize = explode
    orch, notices = _orchestrator(client, player, engine, instant_timings)
    orch.load(sample_units, REMOTE)
    orch.start()
    await settle()

    assert orch.status is PlaybackStatus.PLAYING
    assert engine.spoken[0].voice == FALLBACK_LOCAL_VOICE
    assert "transport bug" in notices[0].message


@pytest.mark.asyncio
@patch("ebook_narrator.synthesis.edge_tts.Communicate", side_effect=ValueError("Invalid voice 'bogus'."))
async def test_invalid_edge_voice_narrates_locally(mock_comm, player, engine, instant_timings):
    """An unknown edge-tts voice does not stall narration."""
    units = [SpeakableUnit(text="你好。"), SpeakableUnit(text="再见。")]
    client = SynthesisClient(EdgeSynthesisTransport(), RetryPolicy(max_retries=1, timeout=1.0))
    orch, _ = _orchestrator(client, player, engine, instant_timings)
    orch.load(units, "online:bogus")
    orch.start()
    await settle()
    assert [u.text for u in engine.spoken] == ["你好。"]

    engine.finish()
    await settle()
    assert [u.text for u in engine.spoken] == ["你好。", "再见。"]

    engine.finish()
    await settle()
    assert orch.status is PlaybackStatus.STOPPED
    assert player.played == []


@pytest.mark.asyncio
async def test_audio_error_skips_unit(client, player, engine, instant_timings, sample_units):
    orch, notices = _orchestrator(client, player, engine, instant_timings)
    orch.load(sample_units, REMOTE)
    orch.start()
    await settle()
    player.finish(SpeechEvent.ERROR, "decode")
    await settle()
    assert orch.session.current_index == 1
    assert notices[-1].level == "error"


# --- settings ---

@pytest.mark.asyncio
async def test_speed_change_applies_to_next_unit(client, transport, player, engine, instant_timings, sample_units):
    orch, notices = _orchestrator(client, player, engine, instant_timings)
    orch.load(sample_units, REMOTE)
    orch.start()
    await settle()
    assert orch.adjust_speed(0.2) == 1.2
    assert "1.2x" in notices[-1].message
    player.finish()
    await settle()
    rates = [options["rate"] for text, _, options in transport.calls if text == sample_units[1].text]
    assert rates == ["+20%"]


def test_set_speed_clamps(client, player, engine, instant_timings, sample_units):
    orch, _ = _orchestrator(client, player, engine, instant_timings)
    orch.load(sample_units, REMOTE)
    assert orch.set_speed(5.0) == 2.0
    assert orch.set_speed(0.1) == 0.5


def test_set_voice(client, player, engine, instant_timings, sample_units):
    orch, _ = _orchestrator(client, player, engine, instant_timings)
    orch.load(sample_units, REMOTE)
    orch.set_voice(LOCAL)
    assert orch.session.voice == LOCAL
