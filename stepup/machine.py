"""
stepup/machine.py

Session state machine rules (pure; no I/O).

    pending ──► approved
       │ ├────► denied
       │ └────► expired

Terminal states are absorbing. The store enforces this physically (every
transition is filtered on status=pending); the functions here decide *which*
transition a given event produces.
"""

from __future__ import annotations

from typing import Iterable, Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from .models import Method, MfaSession, SessionStatus, Strategy

REASON_ATTEMPTS_EXCEEDED = "attempts_exceeded"
REASON_EXPIRED = "expired"
REASON_DENIED = "denied"

TERMINAL = frozenset({SessionStatus.APPROVED, SessionStatus.DENIED, SessionStatus.EXPIRED})


def can_transition(src: SessionStatus, dst: SessionStatus) -> bool:
    return src == SessionStatus.PENDING and dst in TERMINAL


def is_complete(strategy: Strategy, methods: Iterable[Method], satisfied: Iterable[Method]) -> bool:
    satisfied = set(satisfied)
    if strategy == Strategy.FIRST_AVAILABLE:
        return bool(satisfied)
    return set(methods) <= satisfied


def failure_ceiling_reached(failed_attempts: int, ceiling: int) -> bool:
    return failed_attempts >= ceiling


def remaining_attempts(failed_attempts: int, ceiling: int) -> int:
    return max(ceiling - failed_attempts, 0)


def with_query(url: str, **params: Optional[str]) -> str:
    """
    Append query parameters, keeping whatever else the merchant already put
    there. Every named parameter replaces any existing value of the same name;
    a None value only removes it.
    """
    p = urlparse(url)
    query = [(k, v) for k, v in parse_qsl(p.query, keep_blank_values=True) if k not in params]
    query += [(k, v) for k, v in params.items() if v is not None]
    return urlunparse(p._replace(query=urlencode(query)))


def success_redirect(sess: MfaSession, challenge_id: str, token: str) -> str:
    # reason is named so a merchant-supplied one is dropped
    return with_query(sess.success_url, state=sess.state, challengeId=challenge_id, mfaToken=token, reason=None)


def failure_redirect(sess: MfaSession, reason: str) -> str:
    return with_query(sess.failure_url, state=sess.state, reason=reason, challengeId=None, mfaToken=None)


def status_reason(status: SessionStatus) -> str:
    if status == SessionStatus.EXPIRED:
        return REASON_EXPIRED
    return REASON_DENIED
