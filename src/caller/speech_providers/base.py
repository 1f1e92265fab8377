from __future__ import annotations

from abc import ABC, abstractmethod


class SynthesisError(Exception):
    """Speech encoder unreachable, misconfigured, or rejected the input."""


class SpeechProvider(ABC):
    """Text in, complete audio file out."""

    content_type: str = "audio/mpeg"

    @abstractmethod
    async def synthesize(self, text: str, *, voice_id: str) -> bytes:
        raise NotImplementedError

    async def close(self) -> None:
        return None
