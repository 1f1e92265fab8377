from __future__ import annotations

import asyncio
from typing import Any, Optional

import structlog

from src.caller.config import get_config
from src.caller.speech_providers.base import SpeechProvider, SynthesisError

logger = structlog.get_logger(__name__)


class OpenAISpeech(SpeechProvider):
    """
    OpenAI Text-to-Speech provider.

    `voice_id` is an OpenAI voice name (alloy, verse, ...).
    """

    def __init__(self, config: Optional[Any] = None):
        self.config = config or get_config()

    async def _generate_mp3(self, text: str, voice: str) -> bytes:
        from openai import OpenAI  # Local import to keep module import light

        client = OpenAI(api_key=self.config.openai_api_key)

        def _call() -> bytes:
            resp = client.audio.speech.create(
                model=self.config.openai_tts_model,
                voice=voice,
                input=text,
                response_format="mp3",
            )
            # SDKs have varied over time; handle several shapes.
            data = getattr(resp, "content", None)
            if isinstance(data, (bytes, bytearray)):
                return bytes(data)
            read = getattr(resp, "read", None)
            if callable(read):
                return read()
            return bytes(resp)

        return await asyncio.to_thread(_call)

    async def synthesize(self, text: str, *, voice_id: str) -> bytes:
        if not self.config.openai_api_key:
            raise SynthesisError("OPENAI_API_KEY is not configured")

        try:
            audio = await self._generate_mp3(text, voice_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("OpenAI TTS failed", error=str(e))
            raise SynthesisError(f"OpenAI speech request failed: {e}") from e

        if not audio:
            raise SynthesisError("OpenAI speech returned no audio")
        return audio
