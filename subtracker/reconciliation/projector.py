"""
Renewal Date Projector

Rolls next_renewal_date forward to the next future occurrence at read
time. Nothing is written back.

Best effort, never hang: both walks are capped. When a cap is hit the
date is left wherever the walk stopped.
"""

from datetime import date, datetime
from typing import Optional

from dateutil.relativedelta import relativedelta

from subtracker.config import ReconciliationSettings, get_settings
from subtracker.models.subscription import BillingFrequency, Subscription, SubscriptionStatus


def period(frequency: BillingFrequency, steps: int = 1) -> relativedelta:
    """Length of `steps` billing periods. Unknown is treated as monthly."""
    if frequency == BillingFrequency.YEARLY:
        return relativedelta(years=steps)
    if frequency == BillingFrequency.WEEKLY:
        return relativedelta(weeks=steps)
    return relativedelta(months=steps)


def roll_forward(anchor: date, frequency: BillingFrequency, today: date, max_steps: int) -> date:
    """
    First anchor + k periods on or after today, for k <= max_steps.

    Periods are added to the anchor (not chained) so a 31st keeps
    landing on month ends instead of drifting to the 28th.
    """
    current = anchor
    steps = 0
    while current < today and steps < max_steps:
        steps += 1
        current = anchor + period(frequency, steps)
    return current


class RenewalDateProjector:

    def __init__(self, settings: Optional[ReconciliationSettings] = None):
        self._settings = settings or get_settings().reconciliation

    def project(self, subscription: Subscription, now: Optional[datetime] = None) -> Subscription:
        """
        Returns:
            A projected copy. Cancelled subscriptions are returned as-is.
        """
        if subscription.status != SubscriptionStatus.ACTIVE:
            return subscription

        today = (now or datetime.utcnow()).date()
        next_date = subscription.next_renewal_date

        if next_date is None:
            if subscription.start_date is None:
                return subscription
            projected = roll_forward(
                subscription.start_date,
                subscription.frequency,
                today,
                self._settings.projection_max_steps,
            )
        elif next_date < today:
            projected = roll_forward(
                next_date,
                subscription.frequency,
                today,
                self._settings.rollforward_max_steps,
            )
        else:
            return subscription

        return subscription.model_copy(update={"next_renewal_date": projected})
