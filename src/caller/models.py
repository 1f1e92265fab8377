"""
Domain records shared across the dispute caller.

- BillFields / DisputePayload: validated camelCase wire form of bill facts
- DisputeContext: bill facts used to personalize the dialogue
- Utterance / CallSession: live state of one phone call
- CallOutcome / CallRecord: what is left once a call has ended
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

_PLACEHOLDER_TEXT = frozenset({"null", "none", "n/a"})


class BillFields(BaseModel):
    """Structured facts read off a bill."""

    model_config = ConfigDict(populate_by_name=True)

    phone_number: Optional[str] = Field(
        default=None, alias="phoneNumber",
        description="Customer service phone number"
    )
    company: Optional[str] = Field(default=None, description="Company or utility name")
    amount: Optional[float] = Field(default=None, allow_inf_nan=False, description="Main bill amount")
    account_number: Optional[str] = Field(default=None, alias="accountNumber")
    customer_name: Optional[str] = Field(
        default=None, alias="customerName",
        description="Customer or account holder name"
    )
    bill_type: Optional[str] = Field(
        default=None, alias="billType",
        description="Type of bill (Electric, Gas, Phone, etc.)"
    )
    transaction_id: Optional[str] = Field(default=None, alias="transactionId")
    charge_date: Optional[str] = Field(default=None, alias="chargeDate")
    due_date: Optional[str] = Field(default=None, alias="dueDate")
    billing_period: Optional[str] = Field(default=None, alias="billingPeriod")
    previous_balance: Optional[float] = Field(default=None, alias="previousBalance", allow_inf_nan=False)
    current_charges: Optional[float] = Field(default=None, alias="currentCharges", allow_inf_nan=False)
    total_amount: Optional[float] = Field(default=None, alias="totalAmount", allow_inf_nan=False)

    @field_validator("amount", "previous_balance", "current_charges", "total_amount", mode="before")
    @classmethod
    def _parse_money(cls, value: Any) -> Optional[float]:
        if value is None or value == "" or isinstance(value, bool):
            return None
        if isinstance(value, (int, float)):
            amount = float(value)
        elif isinstance(value, str):
            try:
                amount = float(value.replace("$", "").replace(",", "").strip())
            except ValueError:
                return None
        else:
            return None
        # NaN and infinities are unreadable amounts, not money.
        return amount if math.isfinite(amount) else None

    @field_validator(
        "phone_number", "company", "account_number", "customer_name", "bill_type",
        "transaction_id", "charge_date", "due_date", "billing_period",
        mode="before",
    )
    @classmethod
    def _parse_text(cls, value: Any) -> Optional[str]:
        if isinstance(value, bool) or not isinstance(value, (str, int, float)):
            return None
        text = str(value).strip()
        if not text or text.lower() in _PLACEHOLDER_TEXT:
            return None
        return text

    def to_context(self, dispute_id: str, description: Optional[str] = None) -> "DisputeContext":
        values = self.model_dump()
        if description:
            values["description"] = description
        return DisputeContext(dispute_id=dispute_id, **values)


class DisputePayload(BillFields):
    """Bill facts plus the customer's own description; the URL `data` form."""

    description: Optional[str] = None

    @field_validator("description", mode="before")
    @classmethod
    def _parse_description(cls, value: Any) -> Optional[str]:
        if not isinstance(value, str):
            return None
        return value.strip() or None


@dataclass(frozen=True)
class DisputeContext:
    """Bill facts for one dispute. Everything but the id is best-effort."""

    dispute_id: str
    company: Optional[str] = None
    customer_name: Optional[str] = None
    account_number: Optional[str] = None
    amount: Optional[float] = None
    charge_date: Optional[str] = None
    due_date: Optional[str] = None
    billing_period: Optional[str] = None
    previous_balance: Optional[float] = None
    current_charges: Optional[float] = None
    total_amount: Optional[float] = None
    transaction_id: Optional[str] = None
    bill_type: Optional[str] = None
    phone_number: Optional[str] = None
    description: Optional[str] = None

    @classmethod
    def generic(cls, dispute_id: str) -> "DisputeContext":
        """Minimal context used when nothing is known about a dispute."""
        return cls(dispute_id=dispute_id, description="General billing dispute")

    def _payload(self) -> DisputePayload:
        return DisputePayload.model_validate(
            {name: getattr(self, name) for name in DisputePayload.model_fields}
        )

    def to_payload(self) -> Dict[str, Any]:
        """camelCase payload without empty fields."""
        return self._payload().model_dump(by_alias=True, exclude_none=True)

    def to_data_param(self) -> str:
        """Compact JSON for the `data` query parameter."""
        return self._payload().model_dump_json(by_alias=True, exclude_none=True)

    @property
    def has_facts(self) -> bool:
        return any(
            getattr(self, f.name) is not None
            for f in fields(self)
            if f.name != "dispute_id"
        )


class Speaker(str, Enum):
    """Who said a line. Values are the transcript tags."""
    CALLER = "AI"
    COUNTERPARTY = "Human"


@dataclass(frozen=True)
class Utterance:
    """One line of dialogue."""
    speaker: Speaker
    text: str
    timestamp: float = field(default_factory=time.time)

    def render(self) -> str:
        return f"{self.speaker.value}: {self.text}"


class CallPhase(str, Enum):
    """Per-call state of the turn state machine."""
    GREETING = "greeting"
    AWAITING_SPEECH = "awaiting_speech"
    PROCESSING_TURN = "processing_turn"
    TERMINATED = "terminated"


@dataclass
class CallSession:
    """Live state of one active phone call."""
    call_sid: str
    dispute_id: str
    phone_number: str = "unknown"
    transcript: List[Utterance] = field(default_factory=list)
    is_active: bool = True
    started_at: float = field(default_factory=time.time)
    phase: CallPhase = CallPhase.GREETING
    no_input_streak: int = 0

    def transcript_lines(self) -> List[str]:
        return [u.render() for u in self.transcript]

    @property
    def duration_seconds(self) -> int:
        return int(time.time() - self.started_at)


class OutcomeKind(str, Enum):
    RESOLVED = "resolved"
    ESCALATED = "escalated"
    PENDING = "pending"
    FAILED = "failed"


@dataclass(frozen=True)
class CallOutcome:
    """Terminal classification of a finished call."""
    outcome: OutcomeKind
    summary: str
    next_steps: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"outcome": self.outcome.value, "summary": self.summary}
        if self.next_steps:
            data["nextSteps"] = self.next_steps
        return data


@dataclass
class CallRecord:
    """What remains of a call after the provider reports it finished."""
    call_sid: str
    dispute_id: str
    status: str
    provider_status: str
    started_at: float
    duration_seconds: int
    transcript: List[Utterance] = field(default_factory=list)
    outcome: Optional[CallOutcome] = None
    recording_url: Optional[str] = None
    ended_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "callSid": self.call_sid,
            "disputeId": self.dispute_id,
            "status": self.status,
            "providerStatus": self.provider_status,
            "startedAt": self.started_at,
            "endedAt": self.ended_at,
            "durationSeconds": self.duration_seconds,
            "transcript": [u.render() for u in self.transcript],
            "outcome": self.outcome.to_dict() if self.outcome else None,
            "recordingUrl": self.recording_url,
        }


@dataclass(frozen=True)
class RecordingInfo:
    call_sid: str
    recording_sid: str
    recording_url: str
    duration_seconds: int = 0
