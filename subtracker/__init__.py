"""
Subscription Tracker - Source Package

Keeps a canonical list of a user's paid subscriptions by reconciling
three untrusted evidence streams: transactional emails, bank
transactions and bank statements.

DESIGN PRINCIPLES:
1. Evidence is applied at most once
2. Older evidence never overwrites newer state
3. Uncertain charges wait for the user
4. Every decision is auditable
5. Storage and collaborators are swappable
"""

__version__ = "1.0.0"
__author__ = "Subscription Tracker Team"
