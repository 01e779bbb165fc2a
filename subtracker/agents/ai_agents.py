"""
AI Agents for the Subscription Tracker

CRITICAL BOUNDARIES:

1. EVIDENCE EXTRACTION AGENT:
   - CAN: Decide whether an email confirms a recurring subscription event
   - CAN: Extract service name, event type, amount and dates from it
   - CAN: Spot recurring charges in statement text
   - CANNOT: Write to storage. Output is CandidateEvidence, which the
     event processor validates and applies.
   - CANNOT: Guess dates or amounts that are not stated

The LLM is a TRANSLATOR, not an ORACLE.
It turns unstructured text into evidence; the reconciliation engine
decides what that evidence means.

Classification runs on every email, so it uses a cheaper model.
Extraction only runs on classifier positives and uses the main model.
"""

import json
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import google.generativeai as genai
import structlog
from google.api_core import exceptions as google_exceptions
from pydantic import ValidationError as PydanticValidationError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from subtracker.config import GeminiSettings, get_settings
from subtracker.errors import ExternalServiceError
from subtracker.models.sources import ChargeConfidence, StatementCharge
from subtracker.models.subscription import (
    BillingFrequency,
    CandidateEvidence,
    EventType,
)
from subtracker.services.sources import EvidenceClassifier


logger = structlog.get_logger(__name__)

SERVICE_NAME = "gemini"

CLASSIFY_PROMPT = """Analyze the following email. Determine if it CONFIRMS that the user HAS an active paid recurring subscription.

Email content:
{text}

The email must be a TRANSACTIONAL email: a payment receipt for a recurring charge,
a subscription signup, renewal, plan change, or cancellation confirmation.

It does NOT count if it is:
- Marketing, promotion, upsell or a free trial invitation
- A failed payment or declined card notification
- A one-time purchase, order, delivery, ride or food receipt
- A feature announcement, newsletter, survey or account security email
- A refund or credit note for a one-time purchase

Respond with ONLY one of these JSON objects:
{{"is_subscription": true}}
{{"is_subscription": false}}"""

EXTRACT_PROMPT = """FIRST verify that this email is a genuine subscription event (payment, renewal,
cancellation or plan change), not marketing. If it is not, respond with ONLY {{"is_subscription": false}}.

Email content:
{text}

Otherwise respond with ONLY a JSON object in this exact format:
{{
  "is_subscription": true,
  "service_name": "short brand name only, e.g. Netflix, Crave, Spotify",
  "event_type": "exactly one of: start, renewal, cancellation, change",
  "amount": 9.99,
  "currency": "USD",
  "start_date": "YYYY-MM-DD or null",
  "next_billing_date": "YYYY-MM-DD or null",
  "cancellation_date": "YYYY-MM-DD or null",
  "plan_name": "plan or tier name or null"
}}

Rules:
- service_name NEVER includes the plan tier. Wrong: "Crave Standard With Ads". Correct: "Crave"
- Extract dates ONLY if explicitly stated. Never guess.
- amount is the ACTUAL charged amount, null if none is stated
- For a cancellation without an explicit date, cancellation_date is null"""

STATEMENT_PROMPT = """You are analyzing a bank statement to find RECURRING SUBSCRIPTIONS.

RAW BANK STATEMENT TEXT:
{text}
{previous}

Rules:
- The same merchant, amount and date listed in several sections is ONE transaction
- A subscription is the same merchant charging the same amount on different dates,
  or a single charge from a well-known subscription service
- Clean merchant names to the short consumer brand ("NETFLIX.COM" -> "Netflix")
- Skip merchants you cannot identify. Never return "Unknown"
- Exclude restaurants, groceries, fuel, transit, ATM, fees, transfers, utilities,
  rent, insurance, one-time purchases and charges under 1.00

Respond with ONLY a JSON array, empty if none found:
[{{"merchant_name": "Netflix", "amount": 16.49, "currency": "CAD", "frequency": "monthly",
   "occurrences": 3, "transaction_dates": ["2026-01-15", "2025-12-15"], "confidence": "high"}}]

confidence is "high" if seen across statements or 3+ times, "medium" for 2,
"low" for a single charge from a known subscription service."""

PREVIOUS_CONTEXT = """
PREVIOUSLY DETECTED SUBSCRIPTIONS FROM EARLIER STATEMENTS:
{summary}

Confirm subscriptions that appear again (raise their confidence to "high") and
merge their transaction dates. Match slightly different merchant spellings when
the amount is the same."""


def _extract_json(text: str, opener: str, closer: str) -> Any:
    """Find and parse the outermost JSON value in a model response."""
    start = text.find(opener)
    end = text.rfind(closer) + 1
    if start < 0 or end <= start:
        raise ValueError("no JSON found in response")
    return json.loads(text[start:end])


def _parse_date(value) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def _parse_amount(value) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        amount = Decimal(str(value).replace(",", "").lstrip("$"))
    except InvalidOperation:
        return None
    return abs(amount)


class EvidenceExtractionAgent(EvidenceClassifier):
    """
    Gemini-backed evidence classifier.

    Quota, auth and malformed responses surface as ExternalServiceError
    so the calling batch marks the item failed and retries it later.
    """

    def __init__(self, settings: Optional[GeminiSettings] = None):
        self._settings = settings or get_settings().gemini
        self._configure_genai()

    def _configure_genai(self):
        """Configure Google Generative AI."""
        genai.configure(api_key=self._settings.api_key)
        self._classifier_model = genai.GenerativeModel(
            model_name=self._settings.classifier_model_name,
            generation_config={
                "temperature": 0.1,
                "max_output_tokens": 64,
            }
        )
        self._model = genai.GenerativeModel(
            model_name=self._settings.model_name,
            generation_config={
                "temperature": self._settings.temperature,
                "max_output_tokens": self._settings.max_tokens,
            }
        )

    @retry(
        retry=retry_if_exception_type(
            (google_exceptions.ServiceUnavailable, google_exceptions.DeadlineExceeded)
        ),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def _call_model(self, model, prompt: str) -> str:
        response = await model.generate_content_async(prompt)
        return response.text.strip()

    async def _generate(self, model, prompt: str) -> str:
        try:
            return await self._call_model(model, prompt)
        except google_exceptions.ResourceExhausted as e:
            raise ExternalServiceError(SERVICE_NAME, f"quota exceeded: {e}")
        except (google_exceptions.PermissionDenied, google_exceptions.Unauthenticated) as e:
            raise ExternalServiceError(SERVICE_NAME, f"API key invalid or expired: {e}")
        except google_exceptions.GoogleAPIError as e:
            raise ExternalServiceError(SERVICE_NAME, str(e))
        except ValueError as e:
            # response.text raises ValueError when the candidate was blocked
            raise ExternalServiceError(SERVICE_NAME, f"empty response: {e}")

    async def classify(self, text: str) -> bool:
        """Stage 1: is this a subscription email at all?"""
        prompt = CLASSIFY_PROMPT.format(text=text[: self._settings.max_input_chars])
        raw = await self._generate(self._classifier_model, prompt)
        try:
            data = _extract_json(raw, "{", "}")
        except (ValueError, json.JSONDecodeError) as e:
            raise ExternalServiceError(SERVICE_NAME, f"malformed classification: {e}")
        return data.get("is_subscription") is True

    async def extract(self, text: str) -> Optional[CandidateEvidence]:
        """
        Stage 2: verify and extract.

        Returns None when the model rejects the email on second look
        or reports an event type we do not know.
        The caller stamps source_id and source_date.
        """
        prompt = EXTRACT_PROMPT.format(text=text[: self._settings.max_input_chars])
        raw = await self._generate(self._model, prompt)
        try:
            data = _extract_json(raw, "{", "}")
        except (ValueError, json.JSONDecodeError) as e:
            raise ExternalServiceError(SERVICE_NAME, f"malformed extraction: {e}")

        if data.get("is_subscription") is False:
            logger.info("extraction_rejected_false_positive")
            return None

        try:
            event_type = EventType(str(data.get("event_type", "")).lower())
        except ValueError:
            logger.warning("extraction_invalid_event_type", event_type=data.get("event_type"))
            return None

        try:
            return CandidateEvidence(
                event_type=event_type,
                service_name=data.get("service_name") or None,
                amount=_parse_amount(data.get("amount")),
                currency=data.get("currency") or None,
                start_date=_parse_date(data.get("start_date")),
                next_billing_date=_parse_date(data.get("next_billing_date")),
                cancellation_date=_parse_date(data.get("cancellation_date")),
                plan_name=data.get("plan_name") or None,
            )
        except PydanticValidationError as e:
            raise ExternalServiceError(SERVICE_NAME, f"extraction failed validation: {e}")

    async def analyze_statement(
        self,
        text: str,
        previous: Optional[list[StatementCharge]] = None,
    ) -> list[StatementCharge]:
        """
        Find recurring charges in statement text.

        Earlier findings are passed back in so charges spanning several
        uploaded statements are merged and confirmed.
        """
        previous_context = ""
        if previous:
            summary = "\n".join(
                f"- {c.merchant_name}: {c.amount} {c.currency}, seen on "
                f"[{', '.join(d.isoformat() for d in c.transaction_dates)}], "
                f"frequency: {c.frequency.value}"
                for c in previous
            )
            previous_context = PREVIOUS_CONTEXT.format(summary=summary)

        prompt = STATEMENT_PROMPT.format(
            text=text[: self._settings.max_statement_chars],
            previous=previous_context,
        )
        raw = await self._generate(self._model, prompt)
        try:
            items = _extract_json(raw, "[", "]")
        except (ValueError, json.JSONDecodeError) as e:
            raise ExternalServiceError(SERVICE_NAME, f"malformed statement analysis: {e}")
        if not isinstance(items, list):
            return []

        charges = []
        for item in items:
            if not isinstance(item, dict):
                continue
            name = (item.get("merchant_name") or "").strip()
            amount = _parse_amount(item.get("amount"))
            if not name or name.lower() == "unknown" or amount is None:
                continue
            try:
                charges.append(StatementCharge(
                    merchant_name=name,
                    amount=amount,
                    currency=item.get("currency") or "CAD",
                    frequency=_enum_or(BillingFrequency, item.get("frequency"), BillingFrequency.UNKNOWN),
                    occurrences=max(int(item.get("occurrences") or 1), 1),
                    transaction_dates=[
                        d for d in (_parse_date(v) for v in item.get("transaction_dates") or []) if d
                    ],
                    confidence=_enum_or(ChargeConfidence, item.get("confidence"), ChargeConfidence.LOW),
                ))
            except (PydanticValidationError, TypeError, ValueError):
                logger.warning("statement_charge_invalid", merchant_name=name)
        return charges


def _enum_or(enum_cls, value, default):
    try:
        return enum_cls(str(value).lower())
    except ValueError:
        return default
