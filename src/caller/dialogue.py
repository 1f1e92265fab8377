"""
Dialogue Generator.

Wraps the chat model behind three calls:
- next_utterance: the next line the caller speaks (raises on failure)
- opening_line: the first line of the call (never raises)
- classify_outcome: post-call classification parsed from JSON
"""

import re
import time
from typing import Any, Optional, Sequence

import structlog
from openai import AsyncOpenAI
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from src.caller.config import get_config
from src.caller.llm import create_llm_client, model_name
from src.caller.models import CallOutcome, DisputeContext, OutcomeKind, Utterance
from src.caller.prompts import (
    DIALOGUE_USER_MESSAGE,
    OPENING_USER_MESSAGE,
    OUTCOME_USER_MESSAGE,
    dialogue_system_prompt,
    opening_system_prompt,
    outcome_system_prompt,
)

logger = structlog.get_logger(__name__)

FALLBACK_OPENING_LINE = (
    "Hello, I'm calling about an incorrect charge on my recent bill that I'd like to dispute."
)

UNCLEAR_OUTCOME = CallOutcome(
    outcome=OutcomeKind.PENDING,
    summary="Call completed but outcome unclear",
)
FAILED_OUTCOME = CallOutcome(
    outcome=OutcomeKind.FAILED,
    summary="Error analyzing call outcome",
)

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


class GenerationError(Exception):
    """Model unreachable or returned an unexpected shape."""


class OutcomeParseError(ValueError):
    """Model output is not a usable outcome classification."""


class OutcomeVerdict(BaseModel):
    """The classifier's JSON reply."""

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    outcome: OutcomeKind
    summary: str = Field(min_length=1)
    next_steps: Optional[str] = Field(default=None, alias="nextSteps")

    @field_validator("outcome", mode="before")
    @classmethod
    def _normalize_outcome(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value

    def to_outcome(self) -> CallOutcome:
        return CallOutcome(
            outcome=self.outcome,
            summary=self.summary,
            next_steps=self.next_steps or None,
        )


def parse_outcome(raw: str) -> CallOutcome:
    """
    Parse the classifier's JSON reply.

    Raises:
        OutcomeParseError: not a JSON object, unknown outcome, no summary, or non-text next steps
    """
    text = _FENCE_RE.sub("", (raw or "").strip())
    try:
        return OutcomeVerdict.model_validate_json(text).to_outcome()
    except ValidationError as e:
        raise OutcomeParseError(f"Unusable outcome classification: {e}") from e


def parse_outcome_or_default(raw: str, default: CallOutcome) -> CallOutcome:
    try:
        return parse_outcome(raw)
    except OutcomeParseError as e:
        logger.warning("Outcome classification unparseable", error=str(e), raw=(raw or "")[:200])
        return default


class DialogueGenerator:
    """Chat-model client for the dispute conversation."""

    def __init__(self, config: Optional[Any] = None, client: Optional[AsyncOpenAI] = None):
        if config is None:
            config = get_config()

        self.config = config
        self.model = model_name(config)
        self._client = client or create_llm_client(config)

    async def _complete(
        self,
        system_prompt: str,
        user_message: str,
        *,
        max_tokens: int,
        temperature: float,
        purpose: str,
    ) -> str:
        start_time = time.time()
        try:
            response = await self._client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_message},
                ],
                max_tokens=max_tokens,
                temperature=temperature,
            )
        except Exception as e:
            logger.error("LLM request failed", purpose=purpose, error=str(e))
            raise GenerationError(f"LLM request failed: {e}") from e

        try:
            text = (response.choices[0].message.content or "").strip()
        except (AttributeError, IndexError, TypeError) as e:
            raise GenerationError(f"Unexpected LLM response shape: {e}") from e

        if not text:
            raise GenerationError("LLM returned an empty response")

        logger.info(
            "LLM response generated",
            purpose=purpose,
            total_ms=round((time.time() - start_time) * 1000, 2),
            text_preview=text[:50],
        )
        return text

    async def next_utterance(self, transcript: Sequence[Utterance], context: DisputeContext) -> str:
        """
        Next line for the caller given the conversation so far.

        Raises:
            GenerationError: model unreachable or unusable reply
        """
        return await self._complete(
            dialogue_system_prompt(context, transcript),
            DIALOGUE_USER_MESSAGE,
            max_tokens=80,
            temperature=0.7,
            purpose="dialogue",
        )

    async def opening_line(self, context: DisputeContext) -> str:
        """First line of the call. Falls back to a fixed sentence, never raises."""
        try:
            return await self._complete(
                opening_system_prompt(context),
                OPENING_USER_MESSAGE,
                max_tokens=100,
                temperature=0.8,
                purpose="opening",
            )
        except GenerationError as e:
            logger.warning("Opening line generation failed, using fallback", dispute_id=context.dispute_id, error=str(e))
            return FALLBACK_OPENING_LINE

    async def classify_outcome(self, transcript: Sequence[Utterance]) -> CallOutcome:
        """Classify a finished call. Not on the latency-critical path."""
        try:
            raw = await self._complete(
                outcome_system_prompt(transcript),
                OUTCOME_USER_MESSAGE,
                max_tokens=300,
                temperature=0.3,
                purpose="outcome",
            )
        except GenerationError as e:
            logger.error("Outcome classification failed", error=str(e))
            return FAILED_OUTCOME

        return parse_outcome_or_default(raw, UNCLEAR_OUTCOME)
