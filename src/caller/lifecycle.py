"""
Lifecycle & Outcome Handlers.

Twilio reports call progress and recordings on separate webhooks. A terminal
call status closes the session and leaves a CallRecord behind; the outcome
classification runs afterwards, off the request path.
"""

from __future__ import annotations

import time
from typing import Dict, List, Optional

import structlog

from src.caller.dialogue import DialogueGenerator
from src.caller.models import CallRecord, RecordingInfo
from src.caller.sessions import CallSessionRegistry
from src.caller.store import InMemoryStore, KeyValueStore

logger = structlog.get_logger(__name__)

TERMINAL_CALL_STATUSES = frozenset({"completed", "busy", "no-answer", "failed", "canceled"})


def _record_status(provider_status: str) -> str:
    return "completed" if provider_status == "completed" else "failed"


class CallLifecycle:
    """Call-status and recording-status handling plus the finished-call records."""

    def __init__(
        self,
        sessions: CallSessionRegistry,
        records: Optional[KeyValueStore[CallRecord]] = None,
    ):
        self._sessions = sessions
        self._records: KeyValueStore[CallRecord] = records if records is not None else InMemoryStore()
        # Recordings can be reported before the call status that closes the call.
        self._pending_recordings: Dict[str, RecordingInfo] = {}

    def handle_call_status(
        self,
        call_sid: str,
        status: str,
        duration: Optional[int] = None,
    ) -> Optional[CallRecord]:
        """
        Apply one call-status notification.

        Returns the new CallRecord for terminal statuses, None otherwise.
        """
        status = (status or "").strip().lower()
        if status not in TERMINAL_CALL_STATUSES:
            logger.info("Call status update", call_sid=call_sid, status=status)
            return None

        if self._records.get(call_sid) is not None:
            logger.info("Duplicate terminal call status ignored", call_sid=call_sid, status=status)
            return None

        session = self._sessions.close(call_sid)
        if session is None:
            logger.warning("Terminal status for unknown call", call_sid=call_sid, status=status)
            return None

        duration_seconds = int(time.time() - session.started_at)
        record = CallRecord(
            call_sid=call_sid,
            dispute_id=session.dispute_id,
            status=_record_status(status),
            provider_status=status,
            started_at=session.started_at,
            duration_seconds=duration_seconds,
            transcript=list(session.transcript),
        )

        recording = self._pending_recordings.pop(call_sid, None)
        if recording is not None:
            record.recording_url = recording.recording_url

        self._records.set(call_sid, record)
        logger.info(
            "Call ended",
            call_sid=call_sid,
            dispute_id=session.dispute_id,
            status=status,
            duration_seconds=duration_seconds,
            provider_duration=duration,
            turns=len(record.transcript),
        )
        return record

    def handle_recording_status(
        self,
        call_sid: str,
        recording_sid: str,
        recording_url: Optional[str],
        status: str,
        duration: int = 0,
    ) -> Optional[RecordingInfo]:
        if (status or "").strip().lower() != "completed" or not recording_url:
            logger.info("Recording status update", call_sid=call_sid, status=status)
            return None

        recording = RecordingInfo(
            call_sid=call_sid,
            recording_sid=recording_sid,
            recording_url=recording_url,
            duration_seconds=duration,
        )

        record = self._records.get(call_sid)
        if record is not None:
            record.recording_url = recording_url
        else:
            self._pending_recordings[call_sid] = recording

        logger.info(
            "Recording completed",
            call_sid=call_sid,
            recording_sid=recording_sid,
            duration_seconds=duration,
            attached=record is not None,
        )
        return recording

    async def finalize_outcome(self, record: CallRecord, dialogue: DialogueGenerator) -> CallRecord:
        """Classify the finished call and store the outcome on its record."""
        if not record.transcript:
            logger.info("Skipping outcome classification for empty transcript", call_sid=record.call_sid)
            return record

        outcome = await dialogue.classify_outcome(record.transcript)
        record.outcome = outcome
        logger.info(
            "Call outcome classified",
            call_sid=record.call_sid,
            dispute_id=record.dispute_id,
            outcome=outcome.outcome.value,
        )
        return record

    def get_record(self, call_sid: str) -> Optional[CallRecord]:
        return self._records.get(call_sid)

    def records_for(self, dispute_id: str) -> List[CallRecord]:
        records = [r for r in self._records.values() if r.dispute_id == dispute_id]
        return sorted(records, key=lambda r: r.started_at)
