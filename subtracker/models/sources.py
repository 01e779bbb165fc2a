"""
Collaborator DTOs

Shapes handed to us by the email, bank and statement collaborators.
They are normalized here (absolute amounts, naive UTC datetimes) so the
reconciliation core never has to second-guess them.
"""

import datetime as dt
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from subtracker.models.subscription import BillingFrequency


class BankTransaction(BaseModel):
    """A single posted bank transaction."""

    transaction_id: str = Field(..., min_length=1)
    merchant_name: str = Field(..., min_length=1, max_length=200)
    amount: Decimal = Field(..., description="Charge amount, absolute value")
    date: dt.date
    account_id: Optional[str] = None
    currency: str = Field(default="USD", min_length=3, max_length=3)

    @field_validator("amount")
    @classmethod
    def absolute_amount(cls, v: Decimal) -> Decimal:
        """Banks report debits as negative or positive depending on provider."""
        return abs(v)

    @field_validator("currency")
    @classmethod
    def uppercase_currency(cls, v: str) -> str:
        return v.upper()


class BankPage(BaseModel):
    transactions: list[BankTransaction] = Field(default_factory=list)
    next_cursor: Optional[str] = None


class EmailMessage(BaseModel):
    """A fetched email, reduced to what evidence extraction needs."""

    id: str = Field(..., min_length=1)
    subject: str = ""
    sender: str = ""
    date: dt.datetime
    text: str = ""

    @field_validator("date", mode="before")
    @classmethod
    def normalize_date(cls, v):
        if isinstance(v, dt.datetime) and v.tzinfo is not None:
            return v.astimezone(dt.timezone.utc).replace(tzinfo=None)
        return v

    @property
    def searchable_text(self) -> str:
        return f"{self.subject} {self.text}".lower()


class EmailQuery(BaseModel):
    """
    Email search window.

    Either an explicit after/before range or a relative newer_than_days.
    """

    after: Optional[dt.date] = None
    before: Optional[dt.date] = None
    newer_than_days: Optional[int] = Field(default=None, ge=1)
    max_results: int = Field(default=100, ge=1, le=500)


class ChargeConfidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class StatementCharge(BaseModel):
    """A recurring charge spotted by statement analysis."""

    merchant_name: str = Field(..., min_length=1, max_length=200)
    amount: Decimal = Field(..., ge=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    frequency: BillingFrequency = BillingFrequency.MONTHLY
    occurrences: int = Field(default=1, ge=1)
    transaction_dates: list[dt.date] = Field(default_factory=list)
    confidence: ChargeConfidence = ChargeConfidence.MEDIUM

    @field_validator("currency")
    @classmethod
    def uppercase_currency(cls, v: str) -> str:
        return v.upper()

    @property
    def first_seen(self) -> Optional[dt.date]:
        return min(self.transaction_dates) if self.transaction_dates else None

    @property
    def last_seen(self) -> Optional[dt.date]:
        return max(self.transaction_dates) if self.transaction_dates else None
