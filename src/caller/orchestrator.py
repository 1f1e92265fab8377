"""
Turn Orchestrator.

Drives one phone call across stateless Twilio webhooks. Each webhook is one
turn: rebuild state (session registry + URL-carried context), decide what
the caller says next, synthesize it, and answer with a control document.

Per-call states:

    GREETING -> AWAITING_SPEECH -> PROCESSING_TURN -> AWAITING_SPEECH ...
                                                   -> TERMINATED

Turn kinds:
- initial: generate the opening line; on silence Twilio replays a short
  retry phrase and redirects back here (bounded by MAX_GREETING_ATTEMPTS)
- speech: append the other party's line, generate the reply, append it
- no speech: no generation; one quick re-listen, then transfer and hang up

Every turn pre-synthesizes all audio its document references. The fixed
retry phrase starts synthesizing before generation begins and is awaited
together with the reply audio, so generation and synthesis overlap.

Turn handlers never raise: any failure becomes a terminal apology document.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Optional, Sequence

import structlog

from src.caller.config import get_config
from src.caller.dialogue import DialogueGenerator
from src.caller.models import CallPhase, CallSession, DisputeContext, Speaker
from src.caller.sessions import CallSessionRegistry
from src.caller.speech import SpeechGateway, SynthesisError
from src.caller.store import DisputeContextStore
from src.caller.twiml import (
    ControlDocument,
    Hangup,
    ListenDirective,
    PlayAudio,
    Redirect,
    SayText,
    WebhookUrls,
    render_document,
)

logger = structlog.get_logger(__name__)

GREETING_RETRY_PHRASE = "I didn't receive a response. Let me try again."
TURN_RETRY_PHRASE = "I didn't hear anything."
NO_SPEECH_PHRASE = "I didn't hear anything. Could you please repeat that?"
TRANSFER_PHRASE = "I'm having trouble hearing you. Let me transfer you to a human representative."
APOLOGY_PHRASE = (
    "I'm sorry, I'm having technical difficulties. Let me transfer you to a human representative."
)

# Consecutive silent turns tolerated before the call is handed off.
NO_INPUT_RETRIES = 1


async def _discard(task: "asyncio.Task[Any]") -> None:
    """Cancel a side task whose result is no longer needed and reap it."""
    if not task.done():
        task.cancel()
    try:
        await task
    except (asyncio.CancelledError, Exception):
        pass


class TurnOrchestrator:
    """Webhook turn -> TwiML document."""

    def __init__(
        self,
        *,
        contexts: DisputeContextStore,
        sessions: CallSessionRegistry,
        dialogue: DialogueGenerator,
        speech: SpeechGateway,
        urls: WebhookUrls,
        config: Optional[Any] = None,
    ):
        self.config = config or get_config()
        self._contexts = contexts
        self._sessions = sessions
        self._dialogue = dialogue
        self._speech = speech
        self._urls = urls
        self.turns_handled = 0

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _play(self, text: str) -> PlayAudio:
        return PlayAudio(self._urls.audio(text, self._speech.default_voice_id))

    def _data_param(self, context: DisputeContext) -> Optional[str]:
        if not self.config.carry_context_in_urls or not context.has_facts:
            return None
        if context == DisputeContext.generic(context.dispute_id):
            return None
        return context.to_data_param()

    async def _synthesize_all(self, *pending: Awaitable[bytes]) -> None:
        """Await every synthesis; on the first failure cancel the rest and re-raise."""
        tasks = [asyncio.ensure_future(p) for p in pending]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                await _discard(task)
            raise

    def _finish(self, session: Optional[CallSession], document: ControlDocument) -> str:
        if session is not None:
            session.phase = CallPhase.TERMINATED if document.is_terminal else CallPhase.AWAITING_SPEECH
            logger.debug("Call phase", call_sid=session.call_sid, phase=session.phase.value)
        self.turns_handled += 1
        return render_document(document)

    async def _terminal(self, session: Optional[CallSession], text: str) -> str:
        """Play `text` and hang up. Falls back to Twilio <Say> if our audio is unavailable."""
        try:
            await self._speech.synthesize(text)
            step = self._play(text)
        except SynthesisError as e:
            logger.warning("Terminal phrase synthesis failed, using <Say>", error=str(e))
            step = SayText(text)

        return self._finish(session, ControlDocument(prompt=(step,), ending=Hangup()))

    # ------------------------------------------------------------------
    # Initial turn
    # ------------------------------------------------------------------

    async def initial_turn(
        self,
        *,
        dispute_id: str,
        call_sid: str,
        data: Optional[str] = None,
        attempt: int = 0,
    ) -> str:
        """Opening document for a call (and for every redirect back to the start)."""
        session: Optional[CallSession] = None
        try:
            context = self._contexts.resolve(dispute_id, data)
            session = self._sessions.get_or_create(call_sid, dispute_id)
            return await self._initial_turn(session, context, attempt)
        except Exception:
            logger.exception("Initial turn failed", dispute_id=dispute_id, call_sid=call_sid)
            return await self._terminal(session, APOLOGY_PHRASE)

    async def _initial_turn(self, session: CallSession, context: DisputeContext, attempt: int) -> str:
        max_attempts = self.config.max_greeting_attempts
        if max_attempts > 0 and attempt >= max_attempts:
            logger.info(
                "Greeting retries exhausted",
                dispute_id=context.dispute_id,
                call_sid=session.call_sid,
                attempt=attempt,
            )
            return await self._terminal(session, TRANSFER_PHRASE)

        session.phase = CallPhase.GREETING
        start_time = time.time()

        retry_task = asyncio.ensure_future(self._speech.synthesize(GREETING_RETRY_PHRASE))
        try:
            greeting = await self._dialogue.opening_line(context)
        except BaseException:
            await _discard(retry_task)
            raise
        generation_ms = (time.time() - start_time) * 1000

        synthesis_start = time.time()
        await self._synthesize_all(self._speech.synthesize(greeting), retry_task)
        synthesis_ms = (time.time() - synthesis_start) * 1000
        # Only lines that will actually be played enter the transcript.
        self._sessions.append_utterance(session.call_sid, Speaker.CALLER, greeting)

        data = self._data_param(context)
        document = ControlDocument(
            prompt=(self._play(greeting),),
            listen=ListenDirective(
                action_url=self._urls.speech_turn(session.call_sid, context.dispute_id, data=data),
                timeout=self.config.greeting_timeout_seconds,
                speech_timeout="auto",
                barge_in=True,
            ),
            fallback=(self._play(GREETING_RETRY_PHRASE),),
            ending=Redirect(self._urls.initial_turn(context.dispute_id, data=data, attempt=attempt + 1)),
        )

        logger.info(
            "Initial turn rendered",
            dispute_id=context.dispute_id,
            call_sid=session.call_sid,
            attempt=attempt,
            generation_ms=round(generation_ms, 2),
            synthesis_ms=round(synthesis_ms, 2),
            total_ms=round((time.time() - start_time) * 1000, 2),
        )
        return self._finish(session, document)

    # ------------------------------------------------------------------
    # Speech turns
    # ------------------------------------------------------------------

    async def speech_turn(
        self,
        *,
        call_sid: str,
        dispute_id: str,
        speech_result: Optional[str],
        confidence: float = 0.0,
        data: Optional[str] = None,
        no_input: int = 0,
    ) -> str:
        """Document answering one transcribed (or silent) turn of the other party."""
        session: Optional[CallSession] = None
        try:
            context = self._contexts.resolve(dispute_id, data)
            session = self._sessions.get_or_create(call_sid, dispute_id)

            speech = (speech_result or "").strip()
            if not speech:
                return await self._no_speech_turn(session, context, no_input)
            return await self._reply_turn(session, context, speech, confidence)
        except Exception:
            logger.exception("Speech turn failed", dispute_id=dispute_id, call_sid=call_sid)
            return await self._terminal(session, APOLOGY_PHRASE)

    async def _reply_turn(
        self,
        session: CallSession,
        context: DisputeContext,
        speech: str,
        confidence: float,
    ) -> str:
        session.phase = CallPhase.PROCESSING_TURN
        session.no_input_streak = 0
        start_time = time.time()

        self._sessions.append_utterance(session.call_sid, Speaker.COUNTERPARTY, speech)
        logger.info(
            "Processing speech",
            dispute_id=context.dispute_id,
            call_sid=session.call_sid,
            confidence=confidence,
            speech_preview=speech[:50],
        )

        retry_task = asyncio.ensure_future(self._speech.synthesize(TURN_RETRY_PHRASE))
        try:
            reply = await self._dialogue.next_utterance(list(session.transcript), context)
        except BaseException:
            await _discard(retry_task)
            raise
        generation_ms = (time.time() - start_time) * 1000

        synthesis_start = time.time()
        await self._synthesize_all(self._speech.synthesize(reply), retry_task)
        synthesis_ms = (time.time() - synthesis_start) * 1000
        self._sessions.append_utterance(session.call_sid, Speaker.CALLER, reply)

        data = self._data_param(context)
        document = ControlDocument(
            prompt=(self._play(reply),),
            listen=ListenDirective(
                action_url=self._urls.speech_turn(session.call_sid, context.dispute_id, data=data),
                timeout=self.config.turn_timeout_seconds,
                speech_timeout=self.config.turn_speech_timeout,
                barge_in=True,
            ),
            fallback=(self._play(TURN_RETRY_PHRASE),),
            ending=Redirect(self._urls.initial_turn(context.dispute_id, data=data)),
        )

        logger.info(
            "Speech turn rendered",
            dispute_id=context.dispute_id,
            call_sid=session.call_sid,
            turns=len(session.transcript),
            generation_ms=round(generation_ms, 2),
            synthesis_ms=round(synthesis_ms, 2),
            total_ms=round((time.time() - start_time) * 1000, 2),
        )
        return self._finish(session, document)

    async def _no_speech_turn(self, session: CallSession, context: DisputeContext, no_input: int) -> str:
        streak = max(session.no_input_streak, no_input) + 1
        session.no_input_streak = streak

        if streak > NO_INPUT_RETRIES:
            logger.info(
                "Repeated silence, handing off",
                dispute_id=context.dispute_id,
                call_sid=session.call_sid,
                streak=streak,
            )
            return await self._terminal(session, TRANSFER_PHRASE)

        await self._synthesize_all(
            self._speech.synthesize(NO_SPEECH_PHRASE),
            self._speech.synthesize(TRANSFER_PHRASE),
        )

        data = self._data_param(context)
        document = ControlDocument(
            prompt=(self._play(NO_SPEECH_PHRASE),),
            listen=ListenDirective(
                action_url=self._urls.speech_turn(
                    session.call_sid, context.dispute_id, data=data, no_input=streak
                ),
                timeout=self.config.no_input_timeout_seconds,
                speech_timeout="auto",
                barge_in=True,
            ),
            fallback=(self._play(TRANSFER_PHRASE),),
            ending=Hangup(),
        )

        logger.info(
            "No speech detected, re-listening",
            dispute_id=context.dispute_id,
            call_sid=session.call_sid,
            streak=streak,
        )
        return self._finish(session, document)

    def transcript_of(self, call_sid: str) -> Sequence[str]:
        session = self._sessions.get(call_sid)
        return session.transcript_lines() if session else ()
