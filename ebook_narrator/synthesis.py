"""Remote TTS synthesis with timeout, retry, and exponential backoff."""

import asyncio
import logging
import math
from dataclasses import dataclass

import aiohttp
import edge_tts
import httpx

from ebook_narrator.constants import (
    DEFAULT_PITCH,
    DEFAULT_SERVER_URL,
    DEFAULT_VOLUME,
    HEALTH_TIMEOUT,
    RECOMMENDED_VOICE_MARKERS,
    SYNTH_BACKOFF_BASE,
    SYNTH_BACKOFF_CAP,
    SYNTH_MAX_RETRIES,
    SYNTH_TIMEOUT,
)
from ebook_narrator.errors import (
    SynthesisError,
    SynthesisNetworkError,
    SynthesisServiceError,
    SynthesisTimeout,
)
from ebook_narrator.models import Voice

logger = logging.getLogger(__name__)


def rate_descriptor(speed: float) -> str:
    """Convert a speed multiplier to a signed percentage: 1.2 → "+20%", 0.5 → "-50%"."""
    percent = math.floor((speed - 1) * 100 + 0.5)  # round half up
    return f"+{percent}%" if percent >= 0 else f"{percent}%"


def synthesis_options(rate: str) -> dict:
    return {"rate": rate, "volume": DEFAULT_VOLUME, "pitch": DEFAULT_PITCH}


def _is_recommended(name: str) -> bool:
    return any(marker in name for marker in RECOMMENDED_VOICE_MARKERS)


@dataclass
class RetryPolicy:
    max_retries: int = SYNTH_MAX_RETRIES
    backoff_base: float = SYNTH_BACKOFF_BASE
    backoff_cap: float = SYNTH_BACKOFF_CAP
    timeout: float = SYNTH_TIMEOUT

    def backoff(self, attempt: int) -> float:
        """Delay after the given 1-based failed attempt."""
        return min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_cap)


class HttpSynthesisTransport:
    """Talks to the synthesis service over HTTP (POST /synthesize, GET /voices, GET /health)."""

    def __init__(self, base_url: str = DEFAULT_SERVER_URL, client: httpx.AsyncClient | None = None):
        self.base_url = base_url.rstrip("/")
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=SYNTH_TIMEOUT)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def synthesize(self, text: str, voice: str, options: dict) -> bytes:
        payload = {"text": text, "voice": voice, "options": options}
        try:
            response = await self._get_client().post(f"{self.base_url}/synthesize", json=payload)
        except httpx.TimeoutException as e:
            raise SynthesisTimeout(SYNTH_TIMEOUT) from e
        except httpx.RequestError as e:
            raise SynthesisNetworkError(str(e) or type(e).__name__) from e

        if not response.is_success:
            raise SynthesisServiceError(response.status_code, _error_message(response))
        if not response.content:
            raise SynthesisServiceError(response.status_code, "empty audio response")
        return response.content

    async def list_voices(self) -> list[Voice]:
        try:
            response = await self._get_client().get(f"{self.base_url}/voices")
        except httpx.RequestError as e:
            raise SynthesisNetworkError(str(e) or type(e).__name__) from e
        if not response.is_success:
            raise SynthesisServiceError(response.status_code, _error_message(response))
        data = response.json()
        return [
            Voice(
                name=v["name"],
                display_name=v.get("displayName", v["name"]),
                language=v.get("language", ""),
                gender=v.get("gender", ""),
                is_recommended=bool(v.get("isRecommended", False)),
            )
            for v in data.get("voices", [])
        ]

    async def check_health(self) -> bool:
        try:
            response = await self._get_client().get(f"{self.base_url}/health", timeout=HEALTH_TIMEOUT)
        except httpx.HTTPError as e:
            logger.warning("Health check failed: %s", e)
            return False
        return response.is_success


def _error_message(response: httpx.Response) -> str:
    """Pull the error string out of a {success: false, error} envelope."""
    try:
        data = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(data, dict):
        return str(data.get("error", ""))
    return ""


class EdgeSynthesisTransport:
    """Synthesizes directly through Microsoft Edge TTS via edge-tts."""

    async def synthesize(self, text: str, voice: str, options: dict) -> bytes:
        audio = bytearray()
        try:
            communicate = edge_tts.Communicate(
                text,
                voice,
                rate=options.get("rate", "+0%"),
                volume=options.get("volume", DEFAULT_VOLUME),
                pitch=options.get("pitch", DEFAULT_PITCH),
            )
            async for chunk in communicate.stream():
                if chunk["type"] == "audio":
                    audio.extend(chunk["data"])
        except ValueError as e:
            # edge-tts validates voice, rate, volume and pitch up front
            raise SynthesisServiceError(0, str(e)) from e
        except (
            edge_tts.exceptions.NoAudioReceived,
            edge_tts.exceptions.UnexpectedResponse,
            edge_tts.exceptions.UnknownResponse,
            edge_tts.exceptions.WebSocketError,
        ) as e:
            raise SynthesisServiceError(0, str(e)) from e
        except (aiohttp.ClientError, OSError) as e:
            raise SynthesisNetworkError(str(e) or type(e).__name__) from e

        # 0-byte output counts as failure
        if not audio:
            raise SynthesisServiceError(0, f"no audio for: {text[:50]}")
        return bytes(audio)

    async def list_voices(self) -> list[Voice]:
        try:
            raw = await edge_tts.list_voices()
        except (aiohttp.ClientError, OSError) as e:
            raise SynthesisNetworkError(str(e) or type(e).__name__) from e
        return [
            Voice(
                name=v["ShortName"],
                display_name=v.get("FriendlyName", v["ShortName"]),
                language=v.get("Locale", ""),
                gender=v.get("Gender", ""),
                is_recommended=_is_recommended(v["ShortName"]),
            )
            for v in raw
        ]

    async def check_health(self) -> bool:
        try:
            voices = await asyncio.wait_for(edge_tts.list_voices(), HEALTH_TIMEOUT)
        except (asyncio.TimeoutError, aiohttp.ClientError, OSError) as e:
            logger.warning("Health check failed: %s", e)
            return False
        return bool(voices)

    async def aclose(self) -> None:
        pass


class SynthesisClient:
    """Synthesizes one unit at a time, retrying transient failures.

    Each attempt is cut off after policy.timeout seconds and counts as one
    attempt. Failures before the last attempt are logged and retried after
    an exponential backoff; only the final failure is raised. No caching is
    done here.
    """

    def __init__(self, transport, policy: RetryPolicy | None = None):
        self.transport = transport
        self.policy = policy or RetryPolicy()

    async def synthesize(
        self,
        text: str,
        voice_id: str,
        rate: str = "+0%",
        timeout: float | None = None,
    ) -> bytes:
        timeout = self.policy.timeout if timeout is None else timeout
        attempts = max(1, self.policy.max_retries)
        last_error: SynthesisError | None = None

        for attempt in range(1, attempts + 1):
            try:
                return await asyncio.wait_for(
                    self.transport.synthesize(text, voice_id, synthesis_options(rate)),
                    timeout,
                )
            except asyncio.TimeoutError:
                last_error = SynthesisTimeout(timeout)
            except SynthesisError as e:
                last_error = e

            if attempt < attempts:
                delay = self.policy.backoff(attempt)
                logger.warning(
                    "Synthesis attempt %d/%d failed: %s; retrying in %.1fs",
                    attempt, attempts, last_error, delay,
                )
                await asyncio.sleep(delay)

        logger.error("Synthesis failed after %d attempts: %s", attempts, last_error)
        raise last_error

    async def list_voices(self) -> list[Voice]:
        return await self.transport.list_voices()

    async def check_health(self) -> bool:
        return await self.transport.check_health()

    async def aclose(self) -> None:
        await self.transport.aclose()
