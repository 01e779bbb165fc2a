"""
Identity Resolver

Maps a raw merchant / service string to the canonical subscription it
most likely belongs to.

KNOWN LIMITATION: substring matching on a short brand token can give
false positives for short or ambiguous names ("Max" inside "Maxwell").
A stricter IdentityMatcher can be swapped in without touching the
event processor.
"""

from abc import ABC, abstractmethod
from typing import Optional

from subtracker.models.subscription import Subscription, identity_token
from subtracker.services.storage import SubscriptionRepository


class IdentityMatcher(ABC):
    """Strategy deciding which stored names a raw name refers to."""

    @abstractmethod
    def identity_key(self, raw_name: Optional[str]) -> str:
        """Normalized key used for repository lookup and locking."""
        pass

    @abstractmethod
    def matches(self, company_name: str, raw_name: str) -> bool:
        pass


class PrefixTokenMatcher(IdentityMatcher):
    """
    First whitespace token of the raw name, matched case-insensitively
    as a substring of the stored company name.

    "Crave Standard With Ads" -> "crave", which matches "Crave".
    """

    def identity_key(self, raw_name: Optional[str]) -> str:
        return identity_token(raw_name)

    def matches(self, company_name: str, raw_name: str) -> bool:
        key = self.identity_key(raw_name)
        return bool(key) and key in company_name.lower()


class IdentityResolver:
    """
    Read-only lookup of the canonical subscription for a raw name.

    Repository errors propagate; they are infrastructure failures, not
    "no match".
    """

    def __init__(
        self,
        subscriptions: SubscriptionRepository,
        matcher: Optional[IdentityMatcher] = None,
    ):
        self._subscriptions = subscriptions
        self._matcher = matcher or PrefixTokenMatcher()

    @property
    def matcher(self) -> IdentityMatcher:
        return self._matcher

    def identity_key(self, raw_name: Optional[str]) -> str:
        return self._matcher.identity_key(raw_name)

    async def resolve(self, user_id: str, raw_name: Optional[str]) -> Optional[Subscription]:
        """
        Most recently updated subscription matching raw_name, or None.
        """
        key = self.identity_key(raw_name)
        if not key:
            return None
        candidates = await self._subscriptions.find_by_identity(user_id, key)
        for candidate in candidates:
            if self._matcher.matches(candidate.company_name, raw_name):
                return candidate
        return None
