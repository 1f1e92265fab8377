"""
Pytest configuration and fixtures.
"""

import os
from typing import List, Optional
from unittest.mock import patch

import pytest

from src.caller.models import DisputeContext
from src.caller.speech_providers.base import SpeechProvider, SynthesisError


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "PUBLIC_HOST": "test.ngrok.io",
        "PORT": "7860",
        "LOG_LEVEL": "DEBUG",
        "TWILIO_ACCOUNT_SID": "ACtest123456789",
        "TWILIO_AUTH_TOKEN": "test_auth_token",
        "TWILIO_PHONE_NUMBER": "+15550001111",
        "LLM_PROVIDER": "groq",
        "GROQ_API_KEY": "test_groq_key",
        "GROQ_MODEL": "llama-3.3-70b-versatile",
        "OPENAI_API_KEY": "test_openai_key",
        "TTS_PROVIDER": "elevenlabs",
        "ELEVENLABS_API_KEY": "test_elevenlabs_key",
        "ELEVENLABS_VOICE_ID": "voice-1",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.caller.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSpeechProvider(SpeechProvider):
    """Returns deterministic bytes per text; can be told to fail."""

    def __init__(self):
        self.calls: List[tuple] = []
        self.fail_on: Optional[str] = None
        self.fail_all = False
        self.closed = False

    async def synthesize(self, text: str, *, voice_id: str) -> bytes:
        self.calls.append((text, voice_id))
        if self.fail_all or (self.fail_on is not None and self.fail_on in text):
            raise SynthesisError("encoder down")
        return f"mp3:{voice_id}:{text}".encode()

    async def close(self) -> None:
        self.closed = True


class FakeDialogue:
    """Stands in for DialogueGenerator."""

    def __init__(self, greeting: str = "Hi, this is Jane Doe about account 123.", reply: str = "The charge of $88.00 is wrong."):
        self.greeting = greeting
        self.reply = reply
        self.opening_calls: List[DisputeContext] = []
        self.reply_calls: List[tuple] = []
        self.fail_reply: Optional[Exception] = None
        self.fail_opening: Optional[Exception] = None

    async def opening_line(self, context: DisputeContext) -> str:
        self.opening_calls.append(context)
        if self.fail_opening is not None:
            raise self.fail_opening
        return self.greeting

    async def next_utterance(self, transcript, context: DisputeContext) -> str:
        self.reply_calls.append((list(transcript), context))
        if self.fail_reply is not None:
            raise self.fail_reply
        return self.reply

    async def classify_outcome(self, transcript):
        from src.caller.models import CallOutcome, OutcomeKind
        return CallOutcome(outcome=OutcomeKind.RESOLVED, summary="Refund agreed")


@pytest.fixture
def config():
    from src.caller.config import get_config
    return get_config()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def speech_provider():
    return FakeSpeechProvider()


@pytest.fixture
def speech(speech_provider, clock):
    from src.caller.speech import SpeechGateway
    return SpeechGateway(speech_provider, default_voice_id="voice-1", ttl_seconds=300, clock=clock)


@pytest.fixture
def dialogue():
    return FakeDialogue()


@pytest.fixture
def contexts():
    from src.caller.store import DisputeContextStore
    return DisputeContextStore()


@pytest.fixture
def sessions():
    from src.caller.sessions import CallSessionRegistry
    return CallSessionRegistry()


@pytest.fixture
def urls():
    from src.caller.twiml import WebhookUrls
    return WebhookUrls("https://test.ngrok.io")


@pytest.fixture
def orchestrator(contexts, sessions, dialogue, speech, urls, config):
    from src.caller.orchestrator import TurnOrchestrator
    return TurnOrchestrator(
        contexts=contexts,
        sessions=sessions,
        dialogue=dialogue,
        speech=speech,
        urls=urls,
        config=config,
    )


@pytest.fixture
def jane_context():
    return DisputeContext(
        dispute_id="d1",
        customer_name="Jane Doe",
        company="Acme Power",
        amount=88.0,
        account_number="123",
    )
