"""Batch synthesis of a whole unit sequence into one merged audio artifact."""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

from ebook_narrator.cache import UnitCache
from ebook_narrator.constants import (
    BATCH_COOLDOWN_DELAY,
    BATCH_FAILURE_THRESHOLD,
    BATCH_RETRY_DELAY,
    BATCH_SUCCESS_DELAY,
)
from ebook_narrator.errors import NoAudioProduced, SynthesisError, UserCancelled
from ebook_narrator.models import BatchJob, BatchResult, CacheKey, SpeakableUnit
from ebook_narrator.synthesis import rate_descriptor
from ebook_narrator.voices import clamp_speed, is_remote_voice, remote_voice_id

logger = logging.getLogger(__name__)


class DecisionProvider(ABC):
    """Asks the user whether a struggling export should keep going."""

    @abstractmethod
    def should_continue(self, message: str) -> bool: ...


@dataclass
class BatchConfig:
    failure_threshold: int = BATCH_FAILURE_THRESHOLD
    success_delay: float = BATCH_SUCCESS_DELAY
    retry_delay: float = BATCH_RETRY_DELAY
    cooldown_delay: float = BATCH_COOLDOWN_DELAY


class BatchPipeline:
    """Synthesizes every unit of a job in order and merges the audio.

    A failing unit is retried in place rather than skipped. After
    failure_threshold consecutive failures the service is probed and the
    DecisionProvider is asked once whether to keep trying; declining ends
    the run with a partial result that can be resumed later.
    """

    def __init__(
        self,
        client,
        decisions: DecisionProvider,
        config: BatchConfig | None = None,
        cache: UnitCache | None = None,
        on_progress=None,
    ):
        self.client = client
        self.decisions = decisions
        self.config = config or BatchConfig()
        self.cache = cache
        self.on_progress = on_progress

    def create_job(self, units: list[SpeakableUnit], voice: str, speed: float = 1.0) -> BatchJob:
        if not is_remote_voice(voice):
            raise ValueError(f"Export needs a remote voice (online:...), got {voice!r}")
        return BatchJob(
            units=list(units),
            voice_id=remote_voice_id(voice),
            rate=rate_descriptor(clamp_speed(speed)),
        )

    async def run(self, job: BatchJob, resume_from: int = 0) -> BatchResult:
        total = len(job.units)
        if not 0 <= resume_from <= total:
            raise IndexError(f"resume_from {resume_from} out of range (0..{total})")
        i = resume_from
        while i < total:
            self._check_cancelled(job)
            job.next_index = i
            if job.unit_buffers[i]:
                i += 1
                continue

            if self.on_progress:
                self.on_progress(i, total)

            cached = self._cached_unit(job, i)
            if cached:
                job.unit_buffers[i] = cached
                job.consecutive_failures = 0
                i += 1
                continue

            audio = await self._synthesize_unit(job, i)
            if audio:
                job.unit_buffers[i] = audio
                job.consecutive_failures = 0
                i += 1
                await asyncio.sleep(self.config.success_delay)
                continue

            job.failed_indices.add(i)
            job.consecutive_failures += 1
            if job.consecutive_failures >= self.config.failure_threshold:
                healthy = await self.client.check_health()
                message = self._stuck_message(job, i, healthy)
                if not self.decisions.should_continue(message):
                    logger.info("Export stopped by user at unit %d", i + 1)
                    return self._partial(job, i)
                job.consecutive_failures = 0
                if not healthy:
                    self._check_cancelled(job)
                    logger.info("Service unreachable; waiting %.1fs", self.config.cooldown_delay)
                    await asyncio.sleep(self.config.cooldown_delay)
            else:
                self._check_cancelled(job)
                await asyncio.sleep(self.config.retry_delay)

        job.next_index = total
        return self._merge(job)

    def _cached_unit(self, job: BatchJob, index: int) -> bytes | None:
        if self.cache is None:
            return None
        return self.cache.get(CacheKey(job.voice_id, job.units[index].text, job.rate))

    async def _synthesize_unit(self, job: BatchJob, index: int) -> bytes | None:
        text = job.units[index].text
        key = CacheKey(job.voice_id, text, job.rate)
        try:
            audio = await self.client.synthesize(text, job.voice_id, job.rate)
        except SynthesisError as e:
            logger.warning("Unit %d failed: %s", index + 1, e)
            return None
        if self.cache is not None:
            self.cache.put(key, audio)
        return audio

    def _check_cancelled(self, job: BatchJob) -> None:
        if job.cancelled:
            raise UserCancelled(job)

    def _stuck_message(self, job: BatchJob, index: int, healthy: bool) -> str:
        failed = ", ".join(str(i + 1) for i in sorted(job.failed_indices))
        lines = [
            f"{job.consecutive_failures} consecutive attempts failed; "
            f"service {'reachable' if healthy else 'unreachable'}.",
            f"Stuck at unit {index + 1}",
            f"Succeeded: {job.succeeded}",
            f"Failed units: {failed}",
        ]
        if not healthy:
            lines.append("Check the network connection before retrying.")
        return "\n".join(lines)

    def _partial(self, job: BatchJob, index: int) -> BatchResult:
        if not job.succeeded:
            raise NoAudioProduced(job.unresolved_failures())
        result = self._build_result(job)
        result.complete = False
        result.resume_index = index
        return result

    def _merge(self, job: BatchJob) -> BatchResult:
        if not job.succeeded:
            raise NoAudioProduced(job.unresolved_failures())
        return self._build_result(job)

    def _build_result(self, job: BatchJob) -> BatchResult:
        # MP3 frames concatenate cleanly, so a raw join is a valid stream
        audio = b"".join(buf for buf in job.unit_buffers if buf)
        return BatchResult(
            audio=audio,
            total_units=len(job.units),
            succeeded=job.succeeded,
            failed_indices=job.unresolved_failures(),
            retried_indices=sorted(job.failed_indices),
        )
