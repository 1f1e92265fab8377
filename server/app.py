"""
FastAPI server for the Bill Dispute Caller.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- POST /twiml/dispute-call: Initial-turn webhook (greeting)
- POST /twiml/process-speech: Per-turn webhook (transcribed speech)
- POST /webhooks/call-status: Call progress notifications
- POST /webhooks/recording-status: Recording notifications
- GET|POST /audio/generate: Synthesized speech for <Play>
- POST /disputes: Upload a bill and place the dispute call
- GET /disputes/{dispute_id}/calls: Finished calls of a dispute
"""

import logging
import sys
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Dict, Optional

import structlog
import uvicorn
from fastapi import BackgroundTasks, Depends, FastAPI, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse

from src.caller.config import Config, ConfigError, get_config, init_config
from src.caller.dialogue import DialogueGenerator
from src.caller.extract import extract_bill_fields
from src.caller.lifecycle import CallLifecycle
from src.caller.orchestrator import TurnOrchestrator
from src.caller.prompts import format_money
from src.caller.sessions import CallSessionRegistry
from src.caller.speech import SpeechGateway, SynthesisError, create_speech_provider
from src.caller.store import DisputeContextStore
from src.caller.telephony import CallPlacementError, CallPlacer
from src.caller.twiml import TWIML_MEDIA_TYPE, WebhookUrls


# Initialize structured logging
def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if log_level != "DEBUG" else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

logger = structlog.get_logger(__name__)

AUDIO_CACHE_CONTROL = "public, max-age=300"


@dataclass
class ServerMetrics:
    """Server-wide metrics."""
    start_time: float = field(default_factory=time.time)
    disputes_created: int = 0
    errors: int = 0

    def to_dict(self, services: Optional["Services"] = None) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "disputes_created": self.disputes_created,
            "errors": self.errors,
        }
        if services is not None:
            data.update({
                "calls_placed": services.placer.calls_placed,
                "active_calls": len(services.sessions),
                "turns_handled": services.orchestrator.turns_handled,
                "audio_cache_size": services.speech.cache_size,
                "audio_cache_hits": services.speech.hits,
                "audio_cache_misses": services.speech.misses,
            })
        return data


# Global metrics
metrics = ServerMetrics()


@dataclass
class Services:
    """Process-wide collaborators shared by every request."""
    config: Config
    contexts: DisputeContextStore
    sessions: CallSessionRegistry
    dialogue: DialogueGenerator
    speech: SpeechGateway
    urls: WebhookUrls
    orchestrator: TurnOrchestrator
    lifecycle: CallLifecycle
    placer: CallPlacer


def build_services(config: Config) -> Services:
    contexts = DisputeContextStore()
    sessions = CallSessionRegistry()
    dialogue = DialogueGenerator(config)
    speech = SpeechGateway(
        create_speech_provider(config),
        default_voice_id=config.voice_id,
        ttl_seconds=config.audio_cache_ttl_seconds,
    )
    urls = WebhookUrls(config.base_url)

    return Services(
        config=config,
        contexts=contexts,
        sessions=sessions,
        dialogue=dialogue,
        speech=speech,
        urls=urls,
        orchestrator=TurnOrchestrator(
            contexts=contexts,
            sessions=sessions,
            dialogue=dialogue,
            speech=speech,
            urls=urls,
            config=config,
        ),
        lifecycle=CallLifecycle(sessions),
        placer=CallPlacer(contexts=contexts, sessions=sessions, urls=urls, config=config),
    )


@lru_cache(maxsize=1)
def get_services() -> Services:
    return build_services(get_config())


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    logger.info("Starting Bill Dispute Caller server...")

    try:
        config = init_config()
        configure_logging(config.log_level)

        # Validate Groq model at startup
        from src.caller.llm import initialize_llm
        await initialize_llm(config)

        get_services()

        logger.info(
            "Server ready",
            port=config.port,
            public_host=config.public_host,
            base_url=config.base_url,
        )

    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)
    except SystemExit:
        raise
    except Exception as e:
        logger.error("Startup failed", error=str(e))
        sys.exit(1)

    yield

    # Shutdown
    logger.info("Shutting down server...")
    await get_services().speech.close()


# Create FastAPI app
app = FastAPI(
    title="Bill Dispute Caller",
    description="Places outbound phone calls that dispute bill charges",
    version="1.0.0",
    lifespan=lifespan,
)


def _twiml(document: str) -> Response:
    return Response(content=document, media_type=TWIML_MEDIA_TYPE)


def _int_param(value: Optional[str], default: int = 0) -> int:
    try:
        return int(value) if value else default
    except ValueError:
        return default


def _float_param(value: Optional[str], default: float = 0.0) -> float:
    try:
        return float(value) if value else default
    except ValueError:
        return default


@app.get("/health")
async def health_check(services: Services = Depends(get_services)) -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_calls": len(services.sessions),
        }
    )


@app.get("/metrics")
async def get_metrics(services: Services = Depends(get_services)) -> JSONResponse:
    """Metrics endpoint."""
    return JSONResponse(content=metrics.to_dict(services))


@app.post("/twiml/dispute-call")
async def dispute_call(request: Request, services: Services = Depends(get_services)) -> Response:
    """
    Initial-turn webhook.

    Query: disputeId (required), data, attempt. Form: CallSid (required).
    """
    dispute_id = request.query_params.get("disputeId")
    if not dispute_id:
        return PlainTextResponse("Missing disputeId", status_code=400)

    form = await request.form()
    call_sid = form.get("CallSid")
    if not call_sid:
        return PlainTextResponse("Missing CallSid", status_code=400)

    logger.info("Initial turn webhook", dispute_id=dispute_id, call_sid=call_sid)

    document = await services.orchestrator.initial_turn(
        dispute_id=dispute_id,
        call_sid=str(call_sid),
        data=request.query_params.get("data"),
        attempt=_int_param(request.query_params.get("attempt")),
    )
    return _twiml(document)


@app.post("/twiml/process-speech")
async def process_speech(request: Request, services: Services = Depends(get_services)) -> Response:
    """
    Per-turn webhook.

    Query: callSid, disputeId (required), data, noInput.
    Form: SpeechResult, Confidence.
    """
    call_sid = request.query_params.get("callSid")
    dispute_id = request.query_params.get("disputeId")
    if not call_sid or not dispute_id:
        return PlainTextResponse("Missing required parameters", status_code=400)

    form = await request.form()
    speech_result = form.get("SpeechResult")
    confidence = _float_param(form.get("Confidence"))

    document = await services.orchestrator.speech_turn(
        call_sid=call_sid,
        dispute_id=dispute_id,
        speech_result=str(speech_result) if speech_result is not None else None,
        confidence=confidence,
        data=request.query_params.get("data"),
        no_input=_int_param(request.query_params.get("noInput")),
    )
    return _twiml(document)


@app.post("/webhooks/call-status")
async def call_status(
    request: Request,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
) -> JSONResponse:
    """Call progress from Twilio; terminal statuses close the call."""
    form = await request.form()
    call_sid = str(form.get("CallSid") or "")
    status = str(form.get("CallStatus") or "")
    duration = _int_param(form.get("CallDuration"))

    record = services.lifecycle.handle_call_status(call_sid, status, duration)
    if record is not None:
        background_tasks.add_task(services.lifecycle.finalize_outcome, record, services.dialogue)

    return JSONResponse(content={"success": True})


@app.post("/webhooks/recording-status")
async def recording_status(request: Request, services: Services = Depends(get_services)) -> JSONResponse:
    """Recording notifications from Twilio."""
    form = await request.form()
    services.lifecycle.handle_recording_status(
        call_sid=str(form.get("CallSid") or ""),
        recording_sid=str(form.get("RecordingSid") or ""),
        recording_url=form.get("RecordingUrl"),
        status=str(form.get("RecordingStatus") or ""),
        duration=_int_param(form.get("RecordingDuration")),
    )
    return JSONResponse(content={"success": True})


async def _audio_response(services: Services, text: Optional[str], voice_id: Optional[str], missing: str) -> Response:
    if not text:
        return JSONResponse(status_code=400, content={"error": missing})

    try:
        audio = await services.speech.synthesize(text, voice_id or None)
    except SynthesisError as e:
        logger.error("Audio generation failed", text_preview=text[:50], error=str(e))
        metrics.errors += 1
        return JSONResponse(status_code=500, content={"error": "Failed to generate audio"})

    return Response(
        content=audio,
        media_type=services.speech.content_type,
        headers={"Cache-Control": AUDIO_CACHE_CONTROL},
    )


@app.get("/audio/generate")
async def generate_audio(request: Request, services: Services = Depends(get_services)) -> Response:
    """Audio for a <Play> URL: ?text=...&voiceId=..."""
    return await _audio_response(
        services,
        request.query_params.get("text"),
        request.query_params.get("voiceId"),
        "Text parameter is required",
    )


@app.post("/audio/generate")
async def generate_audio_post(request: Request, services: Services = Depends(get_services)) -> Response:
    """Same as GET with a JSON body {"text": ..., "voiceId": ...}."""
    try:
        body = await request.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    return await _audio_response(services, body.get("text"), body.get("voiceId"), "Text is required")


@app.post("/disputes")
async def create_dispute(request: Request, services: Services = Depends(get_services)) -> JSONResponse:
    """
    Upload a bill, extract its facts and place the dispute call.

    Multipart form: file (required), description (required), priority.
    """
    form = await request.form()
    upload = form.get("file")
    description = form.get("description")
    priority = form.get("priority") or "medium"

    if upload is None or isinstance(upload, str):
        return JSONResponse(status_code=400, content={"error": "No file uploaded"})
    if not description:
        return JSONResponse(status_code=400, content={"error": "Description is required"})

    content = await upload.read()
    fields = await extract_bill_fields(
        content,
        upload.content_type or "",
        upload.filename or "",
        config=services.config,
    )

    dispute_id = f"dispute-{int(time.time() * 1000)}"
    context = fields.to_context(dispute_id, description=str(description))
    services.contexts.set_context(context)
    metrics.disputes_created += 1

    call_sid = None
    if context.phone_number:
        try:
            call_sid = await services.placer.place_call(context)
        except CallPlacementError as e:
            logger.error("Error placing dispute call", dispute_id=dispute_id, error=str(e))

    company = context.company or "company"
    amount = format_money(context.amount) if context.amount is not None else "unknown amount"
    if context.phone_number:
        message = f"Dispute created. Found {company} bill for {amount}. Call initiated to {context.phone_number}."
    else:
        message = f"Dispute created. Found {company} bill for {amount}. No phone number found, manual entry required."

    logger.info(
        "Dispute created",
        dispute_id=dispute_id,
        company=context.company,
        priority=priority,
        call_sid=call_sid,
    )

    return JSONResponse(
        content={
            "success": True,
            "dispute": {
                **context.to_payload(),
                "id": dispute_id,
                "priority": priority,
                "callInitiated": call_sid is not None,
                "callSid": call_sid,
            },
            "message": message,
        }
    )


@app.get("/disputes/{dispute_id}/calls")
async def dispute_calls(dispute_id: str, services: Services = Depends(get_services)) -> JSONResponse:
    """Finished calls of a dispute, oldest first."""
    records = services.lifecycle.records_for(dispute_id)
    active = services.sessions.active_for_dispute(dispute_id)
    return JSONResponse(
        content={
            "disputeId": dispute_id,
            "calls": [r.to_dict() for r in records],
            "activeCalls": [s.call_sid for s in active],
        }
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler."""
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        error=str(exc),
    )
    metrics.errors += 1

    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"},
    )


def main() -> None:
    """Run the server."""
    config = get_config()
    configure_logging(config.log_level)

    logger.info(
        "Starting server",
        port=config.port,
    )

    uvicorn.run(
        "server.app:app",
        host="0.0.0.0",
        port=config.port,
        log_level=config.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
