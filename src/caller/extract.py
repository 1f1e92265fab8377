"""
Bill extraction from an uploaded document.

Sends the document to an OpenAI vision model and parses the JSON reply into
BillFields:
- images: sent as a base64 data URL image part
- PDFs: sent as a base64 file part
- anything else: decoded as UTF-8 text

Extraction is best-effort. Callers get an empty BillFields when the model is
unreachable or the reply is unusable; the dispute still proceeds with
whatever the customer typed.
"""

import base64
import time
from typing import Any, Dict, List, Optional

import structlog
from openai import AsyncOpenAI
from pydantic import ValidationError

from src.caller.config import get_config
from src.caller.models import BillFields

logger = structlog.get_logger(__name__)

# Text documents longer than this are truncated before prompting.
MAX_TEXT_CHARS = 20000


class ExtractionError(Exception):
    """Bill extraction failed (model unreachable or unusable reply)."""


EXTRACTION_PROMPT = """Analyze this bill/document and extract the following information. Return ONLY a valid JSON object with these exact fields (use null for missing values):

{
  "phoneNumber": "customer service phone number",
  "company": "company/utility name",
  "amount": "main bill amount as number",
  "accountNumber": "account number",
  "customerName": "customer/account holder name",
  "billType": "type of bill (Electric, Gas, Phone, etc.)",
  "transactionId": "transaction or reference ID",
  "chargeDate": "charge/billing date",
  "dueDate": "due date",
  "billingPeriod": "billing period",
  "previousBalance": "previous balance as number",
  "currentCharges": "current charges as number",
  "totalAmount": "total amount due as number"
}

Extract actual values from the document. Be precise and accurate."""


def build_document_content(content: bytes, mime_type: str, filename: str) -> List[Dict[str, Any]]:
    """Chat message content parts carrying the document."""
    mime_type = (mime_type or "").lower()
    encoded = base64.b64encode(content).decode("ascii")

    if mime_type.startswith("image/"):
        return [
            {"type": "text", "text": EXTRACTION_PROMPT},
            {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{encoded}"}},
        ]

    if mime_type == "application/pdf":
        return [
            {"type": "text", "text": EXTRACTION_PROMPT},
            {
                "type": "file",
                "file": {
                    "filename": filename or "bill.pdf",
                    "file_data": f"data:application/pdf;base64,{encoded}",
                },
            },
        ]

    if mime_type and mime_type != "text/plain":
        logger.warning("Unsupported file type, trying as text", mime_type=mime_type, filename=filename)

    text = content.decode("utf-8", errors="replace")[:MAX_TEXT_CHARS]
    return [{"type": "text", "text": f"{EXTRACTION_PROMPT}\n\nDocument text:\n{text}"}]


def parse_bill_fields(raw: str) -> BillFields:
    """
    Raises:
        ExtractionError: reply is not a JSON object of bill fields
    """
    try:
        return BillFields.model_validate_json(raw or "")
    except ValidationError as e:
        raise ExtractionError(f"Extraction reply failed validation: {e}") from e


async def extract_bill_fields(
    content: bytes,
    mime_type: str,
    filename: str = "",
    *,
    client: Optional[AsyncOpenAI] = None,
    config: Optional[Any] = None,
) -> BillFields:
    """
    Extract bill facts from an uploaded document.

    Args:
        content: Raw file bytes
        mime_type: Declared content type of the upload
        filename: Original file name (used for PDFs)

    Returns:
        BillFields; empty when extraction fails
    """
    config = config or get_config()
    start_time = time.time()

    try:
        if client is None:
            client = AsyncOpenAI(api_key=config.openai_api_key)

        try:
            response = await client.chat.completions.create(
                model=config.extraction_model,
                messages=[{"role": "user", "content": build_document_content(content, mime_type, filename)}],
                response_format={"type": "json_object"},
                max_tokens=1000,
                temperature=0,
            )
            raw = response.choices[0].message.content or ""
        except Exception as e:
            raise ExtractionError(f"Extraction request failed: {e}") from e

        fields = parse_bill_fields(raw)

    except ExtractionError as e:
        logger.error("Bill extraction failed", filename=filename, mime_type=mime_type, error=str(e))
        return BillFields()

    logger.info(
        "Bill extracted",
        filename=filename,
        mime_type=mime_type,
        company=fields.company,
        phone_found=bool(fields.phone_number),
        total_ms=round((time.time() - start_time) * 1000, 2),
    )
    return fields
