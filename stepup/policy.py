"""
stepup/policy.py

Policy resolution: which factors a transaction needs.

An app carries an ordered list of rules {method, min_amount_cents, required}.
For a given amount the active rules are those whose threshold is at or below
the amount in minor units; their methods, deduplicated in rule order, are the
session's required methods.

Rule order is the priority order. It is NOT re-sorted by threshold.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable, List, Optional, Tuple

from .models import AppRule, Method, Strategy

# ISO-4217 currencies without a minor unit
ZERO_DECIMAL_CURRENCIES = frozenset(
    {
        "BIF", "CLP", "DJF", "GNF", "ISK", "JPY", "KMF", "KRW", "MGA",
        "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
    }
)

DEFAULT_METHODS: Tuple[Method, ...] = (Method.EMAIL_OTP,)


def to_minor_units(amount, currency: Optional[str] = None) -> int:
    """Integer minor units; missing or non-positive amounts count as 0."""
    if amount is None:
        return 0
    try:
        value = Decimal(str(amount))
    except InvalidOperation:
        return 0
    if not value.is_finite() or value <= 0:
        return 0

    cur = (currency or "USD").upper()
    if cur not in ZERO_DECIMAL_CURRENCIES:
        value = value * 100
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def resolve_methods(rules: Iterable[AppRule], amount, currency: Optional[str] = None) -> List[Method]:
    minor = to_minor_units(amount, currency)
    methods: List[Method] = []
    for rule in rules:
        if rule.min_amount_cents <= minor and rule.method not in methods:
            methods.append(rule.method)
    return methods


def strategy_for(methods: Iterable[Method]) -> Strategy:
    if len(set(methods)) > 1:
        return Strategy.ALL_REQUIRED
    return Strategy.FIRST_AVAILABLE


def resolve_policy(rules: Optional[Iterable[AppRule]], amount, currency: Optional[str] = None) -> Tuple[List[Method], Strategy]:
    """
    Methods and strategy for a new session.

    Falls back to the default single-factor (email) policy when no rule is
    active, since a session must never be created without required methods.
    """
    methods = resolve_methods(rules or [], amount, currency)
    if not methods:
        methods = list(DEFAULT_METHODS)
    return methods, strategy_for(methods)
