"""
Audio Synthesis Gateway.

Text -> audio bytes through the configured provider, with a short-lived cache
keyed on the exact (text, voice) pair. System-authored phrases (retry prompts,
transfer announcements) repeat on nearly every call, and Twilio fetches each
<Play> URL right after the turn pre-synthesized it, so most fetches are hits.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import structlog

from src.caller.config import get_config
from src.caller.speech_providers.base import SpeechProvider, SynthesisError
from src.caller.speech_providers.elevenlabs import ElevenLabsSpeech
from src.caller.speech_providers.openai_speech import OpenAISpeech
from src.caller.store import InMemoryStore, KeyValueStore

logger = structlog.get_logger(__name__)

__all__ = ["SpeechGateway", "SynthesisError", "CachedAudio", "create_speech_provider"]

DEFAULT_CACHE_TTL_SECONDS = 300.0


@dataclass(frozen=True)
class CachedAudio:
    text: str
    voice_id: str
    audio: bytes
    created_at: float


def create_speech_provider(config: Optional[Any] = None) -> SpeechProvider:
    config = config or get_config()
    tts = (config.tts_provider or "elevenlabs").strip().lower()

    if tts == "elevenlabs":
        return ElevenLabsSpeech(config)
    if tts == "openai":
        return OpenAISpeech(config)

    raise ValueError(f"Unsupported TTS_PROVIDER: {config.tts_provider}")


def _cache_key(text: str, voice_id: str) -> str:
    return f"{voice_id}\x00{text}"


class SpeechGateway:
    """Cached front for a SpeechProvider."""

    def __init__(
        self,
        provider: SpeechProvider,
        *,
        default_voice_id: str,
        ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        store: Optional[KeyValueStore[CachedAudio]] = None,
    ):
        self._provider = provider
        self.default_voice_id = default_voice_id
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._cache: KeyValueStore[CachedAudio] = store if store is not None else InMemoryStore()
        self.hits = 0
        self.misses = 0

    @property
    def content_type(self) -> str:
        return self._provider.content_type

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    def _is_stale(self, entry: CachedAudio, now: float) -> bool:
        return now - entry.created_at >= self.ttl_seconds

    def cached(self, text: str, voice_id: Optional[str] = None) -> Optional[bytes]:
        """Fresh cached audio or None; never calls the provider."""
        voice = voice_id or self.default_voice_id
        entry = self._cache.get(_cache_key(text, voice))
        if entry is None or self._is_stale(entry, self._clock()):
            return None
        return entry.audio

    async def synthesize(self, text: str, voice_id: Optional[str] = None) -> bytes:
        """
        Audio for `text` in `voice_id` (default voice when omitted).

        Raises:
            SynthesisError: empty text, or the provider failed
        """
        if not text or not text.strip():
            raise SynthesisError("Cannot synthesize empty text")

        voice = voice_id or self.default_voice_id
        audio = self.cached(text, voice)
        if audio is not None:
            self.hits += 1
            logger.debug("Audio cache hit", text_preview=text[:50], voice_id=voice)
            return audio

        self.misses += 1
        start_time = time.time()
        try:
            audio = await self._provider.synthesize(text, voice_id=voice)
        except SynthesisError:
            raise
        except Exception as e:
            raise SynthesisError(f"Speech provider failed: {e}") from e

        self._store(text, voice, audio)
        logger.info(
            "Audio synthesized",
            text_preview=text[:50],
            voice_id=voice,
            audio_bytes=len(audio),
            total_ms=round((time.time() - start_time) * 1000, 2),
        )
        return audio

    def _store(self, text: str, voice: str, audio: bytes) -> None:
        now = self._clock()
        self._cache.set(
            _cache_key(text, voice),
            CachedAudio(text=text, voice_id=voice, audio=audio, created_at=now),
        )
        swept = self._cache.sweep(lambda entry: self._is_stale(entry, now))
        if swept:
            logger.debug("Audio cache swept", removed=swept, remaining=len(self._cache))

    async def close(self) -> None:
        await self._provider.close()
