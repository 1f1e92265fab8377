"""
Control-Document Renderer (TwiML).

`render_document` is pure: a ControlDocument in, the TwiML text Twilio
executes out. Serialization goes through twilio's VoiceResponse builder, so
reserved characters in URLs (`&` above all) are XML-escaped and parsing the
document gives back the original URL.

Document layout:

    <Response>
      <Gather input="speech" ...>   (only when listening)
        prompt steps                (barge-in interrupts these)
      </Gather>
      fallback steps                (run when the Gather hears nothing)
      <Redirect> | <Hangup/>
    </Response>
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence, Union
from urllib.parse import quote, urlencode

from twilio.twiml.voice_response import Gather, VoiceResponse

TWIML_MEDIA_TYPE = "application/xml"
FALLBACK_SAY_VOICE = "alice"


@dataclass(frozen=True)
class PlayAudio:
    url: str


@dataclass(frozen=True)
class SayText:
    """Twilio's built-in TTS; used only when our own audio is unavailable."""
    text: str
    voice: str = FALLBACK_SAY_VOICE


Step = Union[PlayAudio, SayText]


@dataclass(frozen=True)
class ListenDirective:
    action_url: str
    timeout: int
    speech_timeout: str = "auto"
    barge_in: bool = True
    method: str = "POST"


@dataclass(frozen=True)
class Redirect:
    url: str
    method: str = "POST"


@dataclass(frozen=True)
class Hangup:
    pass


Ending = Union[Redirect, Hangup]


@dataclass(frozen=True)
class ControlDocument:
    prompt: Sequence[Step] = ()
    listen: Optional[ListenDirective] = None
    fallback: Sequence[Step] = ()
    ending: Optional[Ending] = None

    @property
    def is_terminal(self) -> bool:
        return self.listen is None and isinstance(self.ending, Hangup)


def _add_step(parent: Union[VoiceResponse, Gather], step: Step) -> None:
    if isinstance(step, PlayAudio):
        parent.play(step.url)
    elif isinstance(step, SayText):
        parent.say(step.text, voice=step.voice)
    else:
        raise TypeError(f"Unsupported step: {step!r}")


def render_document(document: ControlDocument) -> str:
    """Serialize a ControlDocument to TwiML."""
    response = VoiceResponse()

    if document.listen is not None:
        listen = document.listen
        gather = Gather(
            input="speech",
            action=listen.action_url,
            method=listen.method,
            timeout=listen.timeout,
            speech_timeout=listen.speech_timeout,
            barge_in=listen.barge_in,
        )
        for step in document.prompt:
            _add_step(gather, step)
        response.append(gather)
    else:
        for step in document.prompt:
            _add_step(response, step)

    for step in document.fallback:
        _add_step(response, step)

    if isinstance(document.ending, Redirect):
        response.redirect(document.ending.url, method=document.ending.method)
    elif isinstance(document.ending, Hangup):
        response.hangup()

    return response.to_xml()


def _with_query(base: str, params: dict) -> str:
    clean = {k: v for k, v in params.items() if v is not None and v != ""}
    if not clean:
        return base
    return f"{base}?{urlencode(clean, quote_via=quote)}"


class WebhookUrls:
    """
    Absolute URLs Twilio calls back on.

    Twilio keeps no state between webhooks, so everything a later turn needs
    (dispute id, call id, serialized dispute context, counters) rides in the
    query string.
    """

    INITIAL_TURN_PATH = "/twiml/dispute-call"
    SPEECH_TURN_PATH = "/twiml/process-speech"
    CALL_STATUS_PATH = "/webhooks/call-status"
    RECORDING_STATUS_PATH = "/webhooks/recording-status"
    AUDIO_PATH = "/audio/generate"

    def __init__(self, base_url: str):
        self.base_url = base_url.rstrip("/")

    def initial_turn(self, dispute_id: str, *, data: Optional[str] = None, attempt: int = 0) -> str:
        return _with_query(
            f"{self.base_url}{self.INITIAL_TURN_PATH}",
            {"disputeId": dispute_id, "data": data, "attempt": attempt or None},
        )

    def speech_turn(
        self,
        call_sid: str,
        dispute_id: str,
        *,
        data: Optional[str] = None,
        no_input: int = 0,
    ) -> str:
        return _with_query(
            f"{self.base_url}{self.SPEECH_TURN_PATH}",
            {"callSid": call_sid, "disputeId": dispute_id, "data": data, "noInput": no_input or None},
        )

    def audio(self, text: str, voice_id: Optional[str] = None) -> str:
        return _with_query(f"{self.base_url}{self.AUDIO_PATH}", {"text": text, "voiceId": voice_id})

    @property
    def call_status(self) -> str:
        return f"{self.base_url}{self.CALL_STATUS_PATH}"

    @property
    def recording_status(self) -> str:
        return f"{self.base_url}{self.RECORDING_STATUS_PATH}"
