"""
Outbound call placement through the Twilio REST API.

The call is created with the initial-turn webhook as its URL; from then on
Twilio drives the conversation through the webhooks in server/app.py.
"""

import asyncio
from typing import Any, Optional

import structlog
from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client as TwilioClient

from src.caller.config import get_config
from src.caller.models import DisputeContext
from src.caller.sessions import CallSessionRegistry
from src.caller.store import DisputeContextStore
from src.caller.twiml import WebhookUrls

logger = structlog.get_logger(__name__)

STATUS_CALLBACK_EVENTS = ["initiated", "ringing", "answered", "completed"]


class CallPlacementError(Exception):
    """The outbound call could not be created."""


class CallPlacer:
    """Places dispute calls and registers their sessions."""

    def __init__(
        self,
        *,
        contexts: DisputeContextStore,
        sessions: CallSessionRegistry,
        urls: WebhookUrls,
        config: Optional[Any] = None,
        client: Optional[TwilioClient] = None,
    ):
        self.config = config or get_config()
        self._contexts = contexts
        self._sessions = sessions
        self._urls = urls
        self._client = client
        self.calls_placed = 0

    def _twilio(self) -> TwilioClient:
        if self._client is None:
            if not self.config.twilio_account_sid or not self.config.twilio_auth_token:
                raise CallPlacementError("Twilio credentials not configured")
            self._client = TwilioClient(
                self.config.twilio_account_sid,
                self.config.twilio_auth_token,
            )
        return self._client

    async def place_call(self, context: DisputeContext) -> str:
        """
        Dial the number on the dispute and return the call SID.

        Raises:
            CallPlacementError: no phone number, no credentials, or Twilio refused the call
        """
        if not context.phone_number:
            raise CallPlacementError("No phone number available for dispute")

        client = self._twilio()
        self._contexts.set_context(context)

        data = context.to_data_param() if self.config.carry_context_in_urls else None
        call_params = {
            "to": context.phone_number,
            "from_": self.config.twilio_phone_number,
            "url": self._urls.initial_turn(context.dispute_id, data=data),
            "status_callback": self._urls.call_status,
            "status_callback_event": STATUS_CALLBACK_EVENTS,
            "status_callback_method": "POST",
            "record": True,
            "recording_status_callback": self._urls.recording_status,
        }

        try:
            call = await asyncio.to_thread(lambda: client.calls.create(**call_params))
        except TwilioRestException as e:
            logger.error(
                "Twilio API error placing call",
                dispute_id=context.dispute_id,
                status=e.status,
                code=e.code,
                error=e.msg,
            )
            raise CallPlacementError(f"Twilio refused the call: {e.msg}") from e
        except Exception as e:
            logger.error("Failed to place call", dispute_id=context.dispute_id, error=str(e))
            raise CallPlacementError(f"Failed to place call: {e}") from e

        self._sessions.create(call.sid, context.dispute_id, phone_number=context.phone_number)
        self.calls_placed += 1

        logger.info(
            "Dispute call placed",
            dispute_id=context.dispute_id,
            call_sid=call.sid,
            company=context.company,
        )
        return call.sid
