"""
Recurring Pattern Detector

Estimates whether a charge recurs, and at what cadence, from earlier
occurrences of the same identity at a similar amount.

Occurrences come from two places:
1. Potential subscriptions (bank transactions seen before)
2. Existing subscriptions' start_date

A charge that was auto-applied has both a potential record and a
subscription starting on the same day; that day is counted once.
"""

from datetime import date
from decimal import Decimal
from typing import Optional

from dateutil.relativedelta import relativedelta

from subtracker.config import ReconciliationSettings, get_settings
from subtracker.models.subscription import (
    BillingFrequency,
    PotentialConfidence,
    RecurringPattern,
)
from subtracker.services.storage import (
    PotentialSubscriptionRepository,
    SubscriptionRepository,
)


def classify_interval(days: float, settings: ReconciliationSettings) -> BillingFrequency:
    """Map a mean gap in days onto a billing frequency band."""
    if settings.monthly_min_days <= days <= settings.monthly_max_days:
        return BillingFrequency.MONTHLY
    if settings.yearly_min_days <= days <= settings.yearly_max_days:
        return BillingFrequency.YEARLY
    if settings.weekly_min_days <= days <= settings.weekly_max_days:
        return BillingFrequency.WEEKLY
    return BillingFrequency.UNKNOWN


def within_tolerance(candidate: Decimal, amount: Decimal, tolerance: float) -> bool:
    """candidate lies within amount +/- tolerance (a fraction, 0.05 for 5%)."""
    band = Decimal(str(tolerance))
    return amount * (1 - band) <= candidate <= amount * (1 + band)


def pattern_from_dates(dates: list[date], settings: ReconciliationSettings) -> RecurringPattern:
    """
    Classify a series of occurrence dates.

    Any series of two or more is "detected", even when the mean gap
    falls outside every band.
    """
    dates = sorted(dates)
    if len(dates) < 2:
        return RecurringPattern(detected=False, frequency=BillingFrequency.UNKNOWN, occurrences=1)

    gaps = [(later - earlier).days for earlier, later in zip(dates, dates[1:])]
    average = sum(gaps) / len(gaps)
    return RecurringPattern(
        detected=True,
        frequency=classify_interval(average, settings),
        occurrences=len(dates),
        average_interval_days=average,
    )


class RecurringPatternDetector:

    def __init__(
        self,
        potentials: PotentialSubscriptionRepository,
        subscriptions: SubscriptionRepository,
        settings: Optional[ReconciliationSettings] = None,
    ):
        self._potentials = potentials
        self._subscriptions = subscriptions
        self._settings = settings or get_settings().reconciliation

    def _within_tolerance(self, candidate: Decimal, amount: Decimal) -> bool:
        return within_tolerance(candidate, amount, self._settings.amount_tolerance)

    async def detect(
        self,
        user_id: str,
        identity: str,
        amount: Decimal,
        as_of: date,
        exclude_transaction_id: Optional[str] = None,
    ) -> RecurringPattern:
        """
        Args:
            user_id: Owner
            identity: Base brand token of the merchant
            amount: Amount of the current charge
            as_of: Date of the current charge
            exclude_transaction_id: The current charge's own stored record,
                if it was analyzed before
        """
        if not identity:
            return pattern_from_dates([as_of], self._settings)

        since = as_of - relativedelta(months=self._settings.lookback_months)

        prior = await self._potentials.find_by_merchant(
            user_id,
            identity,
            since,
            (PotentialConfidence.CONFIRMED, PotentialConfidence.POTENTIAL),
        )
        dates = [
            p.transaction_date
            for p in prior
            if p.transaction_id != exclude_transaction_id
            and p.transaction_date <= as_of
            and self._within_tolerance(p.amount, amount)
        ]

        for sub in await self._subscriptions.find_by_identity(user_id, identity):
            if (
                since <= sub.start_date < as_of
                and sub.start_date not in dates
                and self._within_tolerance(sub.price, amount)
            ):
                dates.append(sub.start_date)

        dates.append(as_of)
        return pattern_from_dates(dates, self._settings)
