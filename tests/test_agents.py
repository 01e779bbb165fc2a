"""
Tests for the Gemini evidence extraction agent.

The model call is replaced; only prompt building and response parsing
are exercised.
"""

import asyncio
from datetime import date
from decimal import Decimal

import pytest
from google.api_core import exceptions as google_exceptions

from subtracker.agents import EvidenceExtractionAgent
from subtracker.config.settings import GeminiSettings
from subtracker.errors import ExternalServiceError
from subtracker.models.sources import StatementCharge
from subtracker.models.subscription import BillingFrequency, EventType


def _agent(monkeypatch, response=None, error=None):
    agent = EvidenceExtractionAgent(GeminiSettings(api_key="test-key"))
    prompts = []

    async def call_model(model, prompt):
        prompts.append(prompt)
        if error is not None:
            raise error
        return response

    monkeypatch.setattr(agent, "_call_model", call_model)
    return agent, prompts


class TestClassify:

    def test_json_wrapped_in_prose(self, monkeypatch):
        """Test that the verdict is found inside a chatty response."""
        agent, _ = _agent(monkeypatch, 'Sure! {"is_subscription": true}')
        assert asyncio.run(agent.classify("Subject: Your receipt")) is True

    def test_non_boolean_verdict_is_false(self, monkeypatch):
        agent, _ = _agent(monkeypatch, '{"is_subscription": "maybe"}')
        assert asyncio.run(agent.classify("Subject: Hello")) is False

    def test_malformed_response_is_service_error(self, monkeypatch):
        """Test that unparseable output fails the item, not the batch."""
        agent, _ = _agent(monkeypatch, "I cannot help with that")
        with pytest.raises(ExternalServiceError):
            asyncio.run(agent.classify("Subject: Hello"))

    def test_quota_exhausted_is_service_error(self, monkeypatch):
        agent, _ = _agent(monkeypatch, error=google_exceptions.ResourceExhausted("quota"))
        with pytest.raises(ExternalServiceError) as exc_info:
            asyncio.run(agent.classify("Subject: Hello"))
        assert exc_info.value.service == "gemini"


class TestExtract:
    """Tests for structured evidence extraction."""

    def test_evidence_fields_parsed(self, monkeypatch):
        """Test amount, dates and event type normalization."""
        response = """```json
        {"is_subscription": true, "event_type": "Renewal", "service_name": "Netflix",
         "amount": "$1,015.99", "currency": "usd", "next_billing_date": "2024-02-01T00:00:00",
         "plan_name": "Premium"}
        ```"""
        agent, _ = _agent(monkeypatch, response)

        evidence = asyncio.run(agent.extract("Subject: Netflix receipt"))

        assert evidence.event_type == EventType.RENEWAL
        assert evidence.service_name == "Netflix"
        assert evidence.amount == Decimal("1015.99")
        assert evidence.currency == "USD"
        assert evidence.next_billing_date == date(2024, 2, 1)
        assert evidence.plan_name == "Premium"
        assert evidence.source_id is None

    def test_second_look_rejection_returns_none(self, monkeypatch):
        agent, _ = _agent(monkeypatch, '{"is_subscription": false}')
        assert asyncio.run(agent.extract("Subject: Order shipped")) is None

    def test_unknown_event_type_returns_none(self, monkeypatch):
        agent, _ = _agent(monkeypatch, '{"is_subscription": true, "event_type": "refund"}')
        assert asyncio.run(agent.extract("Subject: Refund")) is None

    def test_currency_name_is_service_error(self, monkeypatch):
        """Test that a spelled-out currency is rejected at extraction."""
        agent, _ = _agent(
            monkeypatch,
            '{"is_subscription": true, "event_type": "start", "service_name": "Netflix", "currency": "Euros"}',
        )
        with pytest.raises(ExternalServiceError):
            asyncio.run(agent.extract("Subject: Welcome"))

    def test_missing_service_name_is_left_for_the_processor(self, monkeypatch):
        """Test that incomplete evidence is returned, not rejected here."""
        agent, _ = _agent(monkeypatch, '{"is_subscription": true, "event_type": "start"}')

        evidence = asyncio.run(agent.extract("Subject: Welcome"))

        assert evidence.missing_fields() == ["service_name", "source_id"]


class TestAnalyzeStatement:
    """Tests for recurring charge detection in statements."""

    def test_charges_parsed_and_junk_dropped(self, monkeypatch):
        response = """[
            {"merchant_name": "Spotify", "amount": 9.99, "currency": "CAD", "frequency": "Monthly",
             "occurrences": 2, "transaction_dates": ["2024-01-05", "2024-02-05", "not a date"],
             "confidence": "high"},
            {"merchant_name": "Unknown", "amount": 5.00},
            {"merchant_name": "Gym", "amount": "n/a"},
            "garbage"
        ]"""
        agent, _ = _agent(monkeypatch, response)

        charges = asyncio.run(agent.analyze_statement("statement text"))

        assert len(charges) == 1
        assert charges[0].merchant_name == "Spotify"
        assert charges[0].frequency == BillingFrequency.MONTHLY
        assert charges[0].transaction_dates == [date(2024, 1, 5), date(2024, 2, 5)]

    def test_previous_findings_are_in_the_prompt(self, monkeypatch):
        """Test that earlier statements are passed back for merging."""
        agent, prompts = _agent(monkeypatch, "[]")
        previous = [StatementCharge(
            merchant_name="Netflix",
            amount=Decimal("15.99"),
            transaction_dates=[date(2024, 1, 5)],
        )]

        asyncio.run(agent.analyze_statement("statement text", previous))

        assert "Netflix: 15.99 USD, seen on [2024-01-05]" in prompts[0]
