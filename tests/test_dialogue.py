"""
Tests for the dialogue generator and outcome parsing.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.caller.dialogue import (
    FAILED_OUTCOME,
    FALLBACK_OPENING_LINE,
    UNCLEAR_OUTCOME,
    DialogueGenerator,
    GenerationError,
    OutcomeParseError,
    parse_outcome,
    parse_outcome_or_default,
)
from src.caller.models import OutcomeKind, Speaker, Utterance


def _completion(text):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=text))])


def _client(*, returns=None, raises=None):
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=returns, side_effect=raises)
    return client


class TestParseOutcome:
    """Tests for parse_outcome."""

    def test_valid_json(self):
        outcome = parse_outcome('{"outcome": "resolved", "summary": "Refund issued", "nextSteps": "Watch statement"}')

        assert outcome.outcome == OutcomeKind.RESOLVED
        assert outcome.summary == "Refund issued"
        assert outcome.next_steps == "Watch statement"

    def test_code_fenced_json(self):
        outcome = parse_outcome('```json\n{"outcome": "Escalated", "summary": "Sent to billing"}\n```')

        assert outcome.outcome == OutcomeKind.ESCALATED
        assert outcome.next_steps is None

    def test_blank_next_steps_and_padding(self):
        outcome = parse_outcome('{"outcome": " PENDING ", "summary": "  Awaiting callback ", "next_steps": ""}')

        assert outcome.outcome == OutcomeKind.PENDING
        assert outcome.summary == "Awaiting callback"
        assert outcome.next_steps is None

    @pytest.mark.parametrize("raw", [
        "not json",
        "[1, 2]",
        '{"outcome": "won", "summary": "x"}',
        '{"outcome": "resolved"}',
        '{"outcome": "resolved", "summary": "   "}',
        '{"outcome": "resolved", "summary": "ok", "nextSteps": {"a": 1}}',
        '{"outcome": "resolved", "summary": 42}',
    ])
    def test_unusable_reply_raises(self, raw):
        with pytest.raises(OutcomeParseError):
            parse_outcome(raw)

    def test_default_supplied_by_caller(self):
        assert parse_outcome_or_default("garbage", UNCLEAR_OUTCOME) is UNCLEAR_OUTCOME


class TestDialogueGenerator:
    """Tests for DialogueGenerator."""

    @pytest.mark.asyncio
    async def test_next_utterance(self, config, jane_context):
        client = _client(returns=_completion("  That charge is not mine.  "))
        generator = DialogueGenerator(config, client=client)
        transcript = [Utterance(Speaker.CALLER, "Hello"), Utterance(Speaker.COUNTERPARTY, "How can I help?")]

        text = await generator.next_utterance(transcript, jane_context)

        assert text == "That charge is not mine."
        kwargs = client.chat.completions.create.await_args.kwargs
        assert kwargs["model"] == "llama-3.3-70b-versatile"
        assert kwargs["max_tokens"] == 80
        assert "Human: How can I help?" in kwargs["messages"][0]["content"]

    @pytest.mark.asyncio
    async def test_next_utterance_raises_on_failure(self, config, jane_context):
        generator = DialogueGenerator(config, client=_client(raises=RuntimeError("timeout")))

        with pytest.raises(GenerationError):
            await generator.next_utterance([], jane_context)

    @pytest.mark.asyncio
    async def test_next_utterance_rejects_empty_reply(self, config, jane_context):
        generator = DialogueGenerator(config, client=_client(returns=_completion("   ")))

        with pytest.raises(GenerationError):
            await generator.next_utterance([], jane_context)

    @pytest.mark.asyncio
    async def test_opening_line_receives_context_fields(self, config, jane_context):
        client = _client(returns=_completion("Hi, Jane Doe here about account 123."))
        generator = DialogueGenerator(config, client=client)

        text = await generator.opening_line(jane_context)

        assert text == "Hi, Jane Doe here about account 123."
        system_prompt = client.chat.completions.create.await_args.kwargs["messages"][0]["content"]
        for value in ("Jane Doe", "Acme Power", "$88.00", "123"):
            assert value in system_prompt

    @pytest.mark.asyncio
    async def test_opening_line_falls_back(self, config, jane_context):
        generator = DialogueGenerator(config, client=_client(raises=RuntimeError("down")))

        assert await generator.opening_line(jane_context) == FALLBACK_OPENING_LINE

    @pytest.mark.asyncio
    async def test_classify_outcome(self, config):
        client = _client(returns=_completion('{"outcome": "pending", "summary": "Callback promised"}'))
        generator = DialogueGenerator(config, client=client)

        outcome = await generator.classify_outcome([Utterance(Speaker.COUNTERPARTY, "We'll call you back.")])

        assert outcome.outcome == OutcomeKind.PENDING
        assert outcome.summary == "Callback promised"

    @pytest.mark.asyncio
    async def test_classify_outcome_unparseable(self, config):
        generator = DialogueGenerator(config, client=_client(returns=_completion("It went fine I think")))

        assert await generator.classify_outcome([]) == UNCLEAR_OUTCOME

    @pytest.mark.asyncio
    async def test_classify_outcome_upstream_failure(self, config):
        generator = DialogueGenerator(config, client=_client(raises=RuntimeError("down")))

        assert await generator.classify_outcome([]) == FAILED_OUTCOME
