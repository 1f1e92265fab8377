"""
Prompt construction for the dispute caller.

Pure functions only: every prompt is a function of the dispute context and
the transcript, so the wording is testable without a model call.

The model speaks as the customer who placed the call, never as customer
service.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

from src.caller.models import DisputeContext, Utterance

MAX_SPOKEN_WORDS = 50


@dataclass(frozen=True)
class BillFact:
    label: str
    attr: str
    missing: str
    money: bool = False


# Every recognized field, in the order the model sees them.
BILL_FACTS: Tuple[BillFact, ...] = (
    BillFact("Your Name", "customer_name", "Not provided"),
    BillFact("Company You're Calling", "company", "Unknown"),
    BillFact("Your Account Number", "account_number", "Not provided"),
    BillFact("Disputed Amount", "amount", "Unknown", money=True),
    BillFact("Charge Date", "charge_date", "Not provided"),
    BillFact("Due Date", "due_date", "Not provided"),
    BillFact("Billing Period", "billing_period", "Not provided"),
    BillFact("Transaction ID", "transaction_id", "Not provided"),
    BillFact("Bill Type", "bill_type", "Unknown"),
    BillFact("Previous Balance", "previous_balance", "Not provided", money=True),
    BillFact("Current Charges", "current_charges", "Not provided", money=True),
    BillFact("Total Amount", "total_amount", "Not provided", money=True),
    BillFact("Your Issue", "description", "Disputing an incorrect charge"),
)

# The opening line only needs the facts a caller leads with.
OPENING_FACTS = ("customer_name", "company", "account_number", "amount", "charge_date", "transaction_id", "description")


def format_money(value: float) -> str:
    return f"${value:,.2f}"


def _fact_value(context: DisputeContext, fact: BillFact) -> str:
    value = getattr(context, fact.attr)
    if value is None:
        return fact.missing
    if fact.money:
        return format_money(value)
    return str(value)


def render_bill_facts(context: DisputeContext, only: Optional[Sequence[str]] = None) -> str:
    """One `- Label: value` line per fact, with the fact's default when missing."""
    lines = []
    for fact in BILL_FACTS:
        if only is not None and fact.attr not in only:
            continue
        lines.append(f"- {fact.label}: {_fact_value(context, fact)}")
    return "\n".join(lines)


def render_transcript(transcript: Sequence[Utterance]) -> str:
    return "\n".join(u.render() for u in transcript)


def _persona(context: DisputeContext) -> str:
    who = context.customer_name or "a customer"
    company = context.company or "customer service"
    return f"You are {who} calling {company} to dispute a charge on your bill."


def dialogue_system_prompt(context: DisputeContext, transcript: Sequence[Utterance]) -> str:
    conversation = render_transcript(transcript) or "(nothing said yet)"
    return f"""{_persona(context)} You INITIATED this call because you have a problem with your bill.

YOUR BILL INFORMATION:
{render_bill_facts(context)}

CRITICAL INSTRUCTIONS:
1. You ARE the customer who CALLED THEM - you are NOT customer service
2. You HAVE all your bill details already - never ask for account information
3. Reference YOUR specific account number, amounts, and dates from above
4. If they ask for ANY bill detail (account number, amounts, dates), provide it immediately from the information above
5. Never refuse to give bill information - you are calling about YOUR OWN bill
6. Be assertive about YOUR dispute - you know what's wrong with YOUR bill
7. Keep responses under {MAX_SPOKEN_WORDS} words - this is spoken audio on a phone call
8. Vary your sentence structure: sometimes make statements, sometimes ask questions, sometimes express frustration
9. Do not end every response with a question or with "please continue"
10. Never reveal or hint that you are automated or an AI - sound like a real person

CURRENT CONVERSATION:
{conversation}

Generate your next response as the customer disputing the bill."""


def opening_system_prompt(context: DisputeContext) -> str:
    facts = render_bill_facts(context, only=OPENING_FACTS) if context.has_facts else "General billing dispute"
    return f"""{_persona(context)} You initiated this call because YOU have a problem with YOUR bill.

YOUR BILL INFORMATION:
{facts}

Generate a natural opening statement (under {MAX_SPOKEN_WORDS} words) that:
1. Introduces yourself by name if available
2. States you're calling about YOUR bill dispute
3. Provides YOUR account number immediately
4. Mentions the specific charge amount and date you're disputing
5. Sounds natural and conversational - like a real person calling customer service
6. Doesn't end with "please continue" or similar prompts

Never reveal that you are automated. Reply with the spoken words only."""


def outcome_system_prompt(transcript: Sequence[Utterance]) -> str:
    return f"""Analyze this customer service call transcript and determine the outcome of a bill dispute.

TRANSCRIPT:
{render_transcript(transcript) or "(empty)"}

Analyze the conversation and provide:
1. Outcome: resolved, escalated, pending, or failed
2. Summary: Brief description of what happened
3. Next steps: What should be done next (if applicable)

Respond in JSON format only:
{{
  "outcome": "resolved|escalated|pending|failed",
  "summary": "Brief summary of the call outcome",
  "nextSteps": "What to do next (optional)"
}}"""


DIALOGUE_USER_MESSAGE = "Generate the next response in this bill dispute conversation."
OPENING_USER_MESSAGE = "Generate the initial greeting for this dispute call."
OUTCOME_USER_MESSAGE = "Analyze this call transcript and determine the outcome."
