"""
stepup/email_otp.py

Email one-time-code factor.

Send:
  - session must be pending, unexpired, and require email_otp
  - at most OTP_MAX_SENDS codes per session, at least OTP_MIN_INTERVAL_SECONDS
    apart (measured from the most recent send); both limits are taken in one
    atomic guarded update of the session
  - 6-digit code, uniform over 100000..999999; only its bcrypt hash is stored

Verify:
  - closed sessions short-circuit to their stored redirect before any hash
    comparison
  - the newest code for (session, email) is the only one considered
  - the code's own attempt counter is consumed atomically before comparing;
    at OTP_MAX_ATTEMPTS it fails closed on its own
  - a mismatch also counts against the session; at the session ceiling the
    answer is the failure redirect, not an error
  - a match consumes the code; if the approval token cannot be signed the
    code is released again so the user can retry once the key is fixed
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from typing import Any, Callable, Dict

import aiosmtplib
import bcrypt

from .audit import AuditSink
from .engine import ApprovalEngine, FactorOutcome
from .errors import (
    DeliveryFailed,
    Expired,
    InternalMisconfiguration,
    MethodNotAllowed,
    NotFound,
    RateLimited,
    SessionClosed,
    StepUpError,
    TooManyAttempts,
    VerificationFailed,
)
from .models import EmailChallenge, Method, MfaSession, SessionStatus
from .storage import DocumentStore, new_id

logger = logging.getLogger(__name__)


def generate_code() -> str:
    return str(100000 + secrets.randbelow(900000))


def hash_code(code: str, rounds: int) -> str:
    return bcrypt.hashpw(code.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("ascii")


def check_code(code: str, code_hash: str) -> bool:
    # checkpw compares in constant time
    return bcrypt.checkpw(code.encode("utf-8"), code_hash.encode("ascii"))


class EmailOtpHandler:
    def __init__(
        self,
        store: DocumentStore,
        engine: ApprovalEngine,
        mailer,
        audit: AuditSink,
        *,
        ttl_seconds: int = 300,
        max_sends: int = 3,
        min_interval_seconds: int = 60,
        max_attempts: int = 6,
        hash_rounds: int = 10,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.engine = engine
        self.mailer = mailer
        self.audit = audit
        self.ttl_seconds = ttl_seconds
        self.max_sends = max_sends
        self.min_interval_seconds = min_interval_seconds
        self.max_attempts = max_attempts
        self.hash_rounds = hash_rounds
        self._clock = clock

    def now(self) -> int:
        return int(self._clock())

    async def _load(self, session_id: str) -> MfaSession:
        sess = await self.store.get_session(session_id)
        if sess is None:
            raise NotFound("session not found")
        return sess

    # -------------------------------------------------------------------------
    # Send
    # -------------------------------------------------------------------------
    async def send(self, session_id: str) -> Dict[str, Any]:
        sess = await self._load(session_id)
        now = self.now()

        if sess.status != SessionStatus.PENDING:
            raise SessionClosed("session is no longer pending")
        if sess.is_expired(now):
            await self.engine.expire(sess)
            raise Expired("session expired")
        if Method.EMAIL_OTP not in sess.methods:
            raise MethodNotAllowed("method not allowed for this session")

        reserved = await self.store.reserve_email_send(
            session_id, now, self.max_sends, self.min_interval_seconds
        )
        if reserved is None:
            raise await self._send_refusal(session_id, now)

        code = generate_code()
        code_hash = await asyncio.to_thread(hash_code, code, self.hash_rounds)
        challenge = EmailChallenge(
            challenge_id=new_id("ch_", 24),
            session_id=session_id,
            email=sess.user.email.lower(),
            code_hash=code_hash,
            created_at=now,
            expires_at=now + self.ttl_seconds,
        )
        await self.store.insert_email_challenge(challenge)
        await self.audit.emit(
            "challenge.created",
            merchant_id=sess.merchant_id,
            session_id=session_id,
            challenge_id=challenge.challenge_id,
        )

        try:
            await self.mailer.send_otp(sess.user.email, code, max(self.ttl_seconds // 60, 1))
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError) as e:
            logger.warning("otp email send failed session_id=%s: %s", session_id, e)
            raise DeliveryFailed("email delivery failed") from e

        await self.audit.analytics("otp_sent", merchant_id=sess.merchant_id, session_id=session_id)
        return {"challengeId": challenge.challenge_id, "expiresAt": challenge.expires_at}

    async def _send_refusal(self, session_id: str, now: int) -> StepUpError:
        fresh = await self.store.get_session(session_id)
        if fresh is None:
            return NotFound("session not found")
        if fresh.status != SessionStatus.PENDING:
            return SessionClosed("session is no longer pending")
        if fresh.email_sends >= self.max_sends:
            return RateLimited("too many codes sent", code="too_many_codes")
        last = fresh.last_email_sent_at if fresh.last_email_sent_at is not None else now
        retry_after = max(last + self.min_interval_seconds - now, 1)
        return RateLimited("too soon", retry_after=retry_after)

    # -------------------------------------------------------------------------
    # Verify
    # -------------------------------------------------------------------------
    async def verify(self, session_id: str, code: str) -> FactorOutcome:
        sess = await self._load(session_id)

        closed = await self.engine.closed_outcome(sess)
        if closed is not None:
            return closed

        if Method.EMAIL_OTP not in sess.methods:
            raise MethodNotAllowed("method not allowed for this session")

        challenge = await self.store.latest_email_challenge(session_id, sess.user.email.lower())
        if challenge is None:
            raise NotFound("no code has been issued", code="no_challenge")

        now = self.now()
        if challenge.consumed_at is not None or now >= challenge.expires_at:
            raise Expired("code expired")

        claimed = await self.store.claim_email_attempt(challenge.challenge_id, self.max_attempts)
        if claimed is None:
            raise TooManyAttempts("too many attempts for this code")

        ok = await asyncio.to_thread(check_code, code, challenge.code_hash)
        if not ok:
            outcome, remaining = await self.engine.record_failure(sess, Method.EMAIL_OTP)
            if outcome is not None:
                return outcome
            raise VerificationFailed("invalid code", remaining_attempts=remaining, code="invalid_code")

        if not await self.store.consume_email_challenge(challenge.challenge_id, now):
            raise Expired("code already used")

        await self.audit.analytics("otp_verified", merchant_id=sess.merchant_id, session_id=session_id)
        try:
            return await self.engine.approve_factor(sess, Method.EMAIL_OTP)
        except InternalMisconfiguration:
            await self.store.release_email_challenge(challenge.challenge_id, now)
            raise
