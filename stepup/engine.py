"""
stepup/engine.py

Approval engine: consumes one verified-factor (or failed-factor) event at a
time and advances the session.

Outcomes:
  - partial  : factor recorded, more factors required, session stays pending
  - approved : token minted, session approved, success redirect returned
  - denied / expired : session closed, failure redirect with a reason code

Ordering on approval: the token is minted BEFORE the pending -> approved
transition, so a broken signing key fails the request without leaving an
approved session behind. Only the request that wins the conditional
transition persists the token record and returns it; a concurrent loser
returns the winner's stored outcome.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple

from .audit import AuditSink
from .errors import MethodNotAllowed, NotFound, SessionClosed
from .machine import (
    REASON_ATTEMPTS_EXCEEDED,
    REASON_DENIED,
    REASON_EXPIRED,
    failure_ceiling_reached,
    failure_redirect,
    is_complete,
    remaining_attempts,
    status_reason,
    success_redirect,
)
from .models import ApprovalTokenRecord, Method, MfaSession, SessionStatus
from .signing import SigningService
from .storage import DocumentStore, b64url_token

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FactorOutcome:
    status: str
    redirect_url: Optional[str] = None
    challenge_id: Optional[str] = None
    token: Optional[str] = None
    satisfied_methods: Tuple[str, ...] = field(default_factory=tuple)
    remaining_methods: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def partial(self) -> bool:
        return self.status == "partial"

    def to_response(self) -> Dict[str, Any]:
        if self.partial:
            return {
                "status": "partial",
                "satisfiedMethods": list(self.satisfied_methods),
                "remainingMethods": list(self.remaining_methods),
            }
        return {"status": self.status, "redirect": self.redirect_url}


class ApprovalEngine:
    def __init__(
        self,
        store: DocumentStore,
        signer: SigningService,
        audit: AuditSink,
        *,
        max_failed_attempts: int = 3,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.signer = signer
        self.audit = audit
        self.max_failed_attempts = max_failed_attempts
        self._clock = clock

    def now(self) -> int:
        return int(self._clock())

    # -------------------------------------------------------------------------
    # Short-circuits
    # -------------------------------------------------------------------------
    def terminal_outcome(self, sess: MfaSession) -> FactorOutcome:
        redirect = sess.redirect_url or failure_redirect(sess, status_reason(sess.status))
        return FactorOutcome(
            status=sess.status.value,
            redirect_url=redirect,
            challenge_id=sess.challenge_id,
            satisfied_methods=tuple(m.value for m in sess.satisfied_methods),
        )

    async def closed_outcome(self, sess: MfaSession) -> Optional[FactorOutcome]:
        """The outcome of a session that can no longer progress, else None."""
        if sess.status != SessionStatus.PENDING:
            return self.terminal_outcome(sess)
        if sess.is_expired(self.now()):
            return await self.expire(sess)
        return None

    async def _reload_outcome(self, session_id: str) -> FactorOutcome:
        # A conditional update lost a race; report whatever the winner did.
        sess = await self.store.get_session(session_id)
        if sess is None:
            raise NotFound("session not found")
        closed = await self.closed_outcome(sess)
        if closed is None:
            raise SessionClosed("session changed concurrently; retry")
        return closed

    # -------------------------------------------------------------------------
    # Factor events
    # -------------------------------------------------------------------------
    async def approve_factor(self, sess: MfaSession, method: Method) -> FactorOutcome:
        if method not in sess.methods:
            raise MethodNotAllowed("method not allowed for this session")

        closed = await self.closed_outcome(sess)
        if closed is not None:
            return closed

        now = self.now()
        updated = await self.store.add_satisfied_method(sess.session_id, method, now)
        if updated is None:
            return await self._reload_outcome(sess.session_id)

        if not is_complete(updated.strategy, updated.methods, updated.satisfied_methods):
            await self.audit.emit(
                f"challenge.partial.{method.value}",
                merchant_id=updated.merchant_id,
                session_id=updated.session_id,
            )
            return FactorOutcome(
                status="partial",
                satisfied_methods=tuple(m.value for m in updated.satisfied_methods),
                remaining_methods=tuple(m.value for m in updated.remaining_methods()),
            )

        challenge_id = "ch_" + b64url_token(10)
        signed = await self.signer.sign_approval(
            merchant_id=updated.merchant_id,
            amount=updated.amount,
            currency=updated.currency,
            metadata=updated.metadata,
            challenge_id=challenge_id,
        )
        redirect = success_redirect(updated, challenge_id, signed.token)

        won = await self.store.transition(
            updated.session_id,
            SessionStatus.APPROVED,
            unexpired_at=now,
            challenge_id=challenge_id,
            redirect_url=redirect,
        )
        if won is None:
            return await self._reload_outcome(updated.session_id)

        await self.store.insert_approval_token(
            ApprovalTokenRecord(
                jti=signed.jti,
                merchant_id=won.merchant_id,
                session_id=won.session_id,
                challenge_id=challenge_id,
                token=signed.token,
                exp=signed.exp,
                created_at=now,
            )
        )
        await self.audit.emit(
            "challenge.approved",
            merchant_id=won.merchant_id,
            session_id=won.session_id,
            challenge_id=challenge_id,
            jti=signed.jti,
            method=method.value,
        )
        logger.info("session approved session_id=%s method=%s", won.session_id, method.value)
        return FactorOutcome(
            status=SessionStatus.APPROVED.value,
            redirect_url=redirect,
            challenge_id=challenge_id,
            token=signed.token,
            satisfied_methods=tuple(m.value for m in won.satisfied_methods),
        )

    async def record_failure(self, sess: MfaSession, method: Method) -> Tuple[Optional[FactorOutcome], int]:
        """
        Count one failed verification against the session.

        Returns (outcome, remaining). `outcome` is set when the session is
        closed, either by this failure reaching the ceiling or because it was
        already terminal.
        """
        updated = await self.store.increment_failed_attempts(sess.session_id, self.max_failed_attempts)
        if updated is None:
            fresh = await self.store.get_session(sess.session_id)
            if (
                fresh is not None
                and fresh.status == SessionStatus.PENDING
                and failure_ceiling_reached(fresh.failed_attempts, self.max_failed_attempts)
            ):
                # ceiling already reached by a concurrent failure whose deny is still in flight
                return await self.deny(fresh, REASON_ATTEMPTS_EXCEEDED), 0
            return await self._reload_outcome(sess.session_id), 0

        await self.audit.emit(
            f"challenge.failed.{method.value}",
            merchant_id=updated.merchant_id,
            session_id=updated.session_id,
            failed_attempts=updated.failed_attempts,
        )

        if failure_ceiling_reached(updated.failed_attempts, self.max_failed_attempts):
            return await self.deny(updated, REASON_ATTEMPTS_EXCEEDED), 0
        return None, remaining_attempts(updated.failed_attempts, self.max_failed_attempts)

    # -------------------------------------------------------------------------
    # Terminal transitions
    # -------------------------------------------------------------------------
    async def deny(self, sess: MfaSession, reason: str = REASON_DENIED) -> FactorOutcome:
        redirect = failure_redirect(sess, reason)
        won = await self.store.transition(
            sess.session_id,
            SessionStatus.DENIED,
            deny_reason=reason,
            redirect_url=redirect,
        )
        if won is None:
            return await self._reload_outcome(sess.session_id)

        await self.audit.emit(
            "challenge.denied",
            merchant_id=won.merchant_id,
            session_id=won.session_id,
            reason=reason,
        )
        logger.warning("session denied session_id=%s reason=%s", won.session_id, reason)
        return self.terminal_outcome(won)

    async def expire(self, sess: MfaSession) -> FactorOutcome:
        redirect = failure_redirect(sess, REASON_EXPIRED)
        won = await self.store.transition(
            sess.session_id,
            SessionStatus.EXPIRED,
            deny_reason=REASON_EXPIRED,
            redirect_url=redirect,
        )
        if won is None:
            fresh = await self.store.get_session(sess.session_id)
            if fresh is None:
                raise NotFound("session not found")
            return self.terminal_outcome(fresh)

        await self.audit.emit("challenge.expired", merchant_id=won.merchant_id, session_id=won.session_id)
        return self.terminal_outcome(won)
