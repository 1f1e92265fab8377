"""
Call Session Registry.

Maps a provider call id (Twilio CallSid) to the mutable state of that call.
"""

from __future__ import annotations

from typing import List, Optional

import structlog

from src.caller.models import CallPhase, CallSession, Speaker, Utterance
from src.caller.store import InMemoryStore, KeyValueStore

logger = structlog.get_logger(__name__)


class CallSessionRegistry:
    """Active calls keyed by call id."""

    def __init__(self, store: Optional[KeyValueStore[CallSession]] = None):
        self._store: KeyValueStore[CallSession] = store if store is not None else InMemoryStore()

    def create(self, call_sid: str, dispute_id: str, phone_number: str = "unknown") -> CallSession:
        session = CallSession(call_sid=call_sid, dispute_id=dispute_id, phone_number=phone_number)
        self._store.set(call_sid, session)

        concurrent = [s for s in self.active_for_dispute(dispute_id) if s.call_sid != call_sid]
        if concurrent:
            logger.warning(
                "Dispute already has an active call",
                dispute_id=dispute_id,
                call_sid=call_sid,
                other_calls=[s.call_sid for s in concurrent],
            )

        logger.info("Call session created", call_sid=call_sid, dispute_id=dispute_id)
        return session

    def get(self, call_sid: str) -> Optional[CallSession]:
        return self._store.get(call_sid)

    def get_or_create(self, call_sid: str, dispute_id: str) -> CallSession:
        """
        Session for a webhook turn; never fails.

        A turn can arrive for a call that was never registered here (process
        restart, or the call was placed by another instance), so a minimal
        session is created on the spot.
        """
        session = self._store.get(call_sid)
        if session is not None:
            return session

        logger.info("Call session not found, creating one", call_sid=call_sid, dispute_id=dispute_id)
        return self.create(call_sid, dispute_id)

    def append_utterance(self, call_sid: str, speaker: Speaker, text: str) -> Utterance:
        session = self._store.get(call_sid)
        if session is None:
            raise KeyError(call_sid)

        utterance = Utterance(speaker=speaker, text=text)
        session.transcript.append(utterance)
        return utterance

    def close(self, call_sid: str) -> Optional[CallSession]:
        """Mark inactive and drop from the active set; returns the final snapshot."""
        session = self._store.delete(call_sid)
        if session is None:
            return None

        session.is_active = False
        session.phase = CallPhase.TERMINATED
        logger.info(
            "Call session closed",
            call_sid=call_sid,
            dispute_id=session.dispute_id,
            turns=len(session.transcript),
        )
        return session

    def active_for_dispute(self, dispute_id: str) -> List[CallSession]:
        return [s for s in self._store.values() if s.dispute_id == dispute_id and s.is_active]

    def __len__(self) -> int:
        return len(self._store)
