from __future__ import annotations

import time
from typing import Any, Optional

import httpx
import structlog

from src.caller.config import get_config
from src.caller.speech_providers.base import SpeechProvider, SynthesisError

logger = structlog.get_logger(__name__)

ELEVENLABS_BASE_URL = "https://api.elevenlabs.io"
ELEVENLABS_OUTPUT_FORMAT = "mp3_44100_128"

# Low-latency settings for the flash model.
VOICE_SETTINGS = {
    "stability": 0.3,
    "similarity_boost": 0.3,
    "style": 0.1,
    "use_speaker_boost": False,
}


class ElevenLabsSpeech(SpeechProvider):
    """
    ElevenLabs text-to-speech over the REST API.

    Returns a complete MP3 which Twilio fetches through the audio endpoint.
    """

    def __init__(self, config: Optional[Any] = None, *, client: Optional[httpx.AsyncClient] = None):
        self.config = config or get_config()
        self._client = client or httpx.AsyncClient(base_url=ELEVENLABS_BASE_URL, timeout=15.0)

    async def synthesize(self, text: str, *, voice_id: str) -> bytes:
        if not self.config.elevenlabs_api_key:
            raise SynthesisError("ELEVENLABS_API_KEY is not configured")

        start_time = time.time()
        try:
            response = await self._client.post(
                f"/v1/text-to-speech/{voice_id}",
                params={
                    "output_format": ELEVENLABS_OUTPUT_FORMAT,
                    "optimize_streaming_latency": 4,
                },
                headers={
                    "xi-api-key": self.config.elevenlabs_api_key,
                    "Content-Type": "application/json",
                    "Accept": "audio/mpeg",
                },
                json={
                    "text": text,
                    "model_id": self.config.elevenlabs_model_id,
                    "voice_settings": VOICE_SETTINGS,
                },
            )
        except httpx.HTTPError as e:
            raise SynthesisError(f"ElevenLabs request failed: {e}") from e

        if response.status_code != 200:
            logger.error(
                "ElevenLabs synthesis rejected",
                status_code=response.status_code,
                response=response.text[:200],
            )
            raise SynthesisError(f"ElevenLabs returned status {response.status_code}")

        audio = response.content
        if not audio:
            raise SynthesisError("ElevenLabs returned no audio")

        logger.debug(
            "ElevenLabs synthesis done",
            characters=len(text),
            audio_bytes=len(audio),
            total_ms=round((time.time() - start_time) * 1000, 2),
        )
        return audio

    async def close(self) -> None:
        await self._client.aclose()
