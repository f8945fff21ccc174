"""
stepup/webauthn_factor.py

Passkey factor: the protocol around the WebAuthn ceremonies.

The ceremony cryptography belongs to WebAuthnVerifier; this module owns
challenge issuance and single-use consumption, credential persistence, the
signature-counter rule and the hand-off to the approval engine.

Note: failed WebAuthn verifications are audited but do NOT count toward the
session's failed_attempts ceiling (only email codes do).
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict

from .audit import AuditSink
from .engine import ApprovalEngine, FactorOutcome
from .errors import Expired, InvalidInput, MethodNotAllowed, NotFound, SessionClosed, VerificationFailed
from .models import Method, MfaSession, SessionStatus, WebAuthnChallenge, WebAuthnCredential
from .storage import DocumentStore

logger = logging.getLogger(__name__)

REGISTRATION = "registration"
AUTHENTICATION = "authentication"


@dataclass(frozen=True)
class RelyingParty:
    origin: str
    rp_id: str


def counter_advanced(stored: int, new: int) -> bool:
    # authenticators without a counter report 0 forever
    if stored == 0 and new == 0:
        return True
    return new > stored


class WebAuthnHandler:
    def __init__(
        self,
        store: DocumentStore,
        engine: ApprovalEngine,
        verifier,
        audit: AuditSink,
        *,
        challenge_ttl_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.engine = engine
        self.verifier = verifier
        self.audit = audit
        self.challenge_ttl_seconds = challenge_ttl_seconds
        self._clock = clock

    def now(self) -> int:
        return int(self._clock())

    async def _load(self, session_id: str) -> MfaSession:
        sess = await self.store.get_session(session_id)
        if sess is None:
            raise NotFound("session not found")
        return sess

    async def _load_open(self, session_id: str) -> MfaSession:
        sess = await self._load(session_id)
        if sess.status != SessionStatus.PENDING:
            raise SessionClosed("session is no longer pending")
        if sess.is_expired(self.now()):
            await self.engine.expire(sess)
            raise Expired("session expired")
        self._require_method(sess)
        return sess

    @staticmethod
    def _require_method(sess: MfaSession) -> None:
        if Method.WEBAUTHN not in sess.methods:
            raise MethodNotAllowed("method not allowed for this session")

    async def _issue(self, sess: MfaSession, kind: str, challenge: str) -> None:
        now = self.now()
        await self.store.insert_webauthn_challenge(
            WebAuthnChallenge(
                session_id=sess.session_id,
                user_key=sess.user_key,
                kind=kind,
                challenge=challenge,
                created_at=now,
                expires_at=now + self.challenge_ttl_seconds,
            )
        )

    async def _consume(self, sess: MfaSession, kind: str) -> WebAuthnChallenge:
        ch = await self.store.consume_webauthn_challenge(sess.session_id, sess.user_key, kind)
        if ch is None or self.now() >= ch.expires_at:
            raise NotFound("no challenge", code="no_challenge")
        return ch

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------
    async def start_registration(self, session_id: str, rp: RelyingParty) -> Dict[str, Any]:
        sess = await self._load_open(session_id)
        existing = await self.store.list_credentials(sess.user_key)

        options, challenge = await asyncio.to_thread(
            lambda: self.verifier.registration_options(
                rp_id=rp.rp_id,
                user_key=sess.user_key,
                user_name=sess.user.email,
                exclude_ids=[c.credential_id for c in existing],
            )
        )
        await self._issue(sess, REGISTRATION, challenge)
        await self.audit.analytics("webauthn_register_start", merchant_id=sess.merchant_id, session_id=session_id)
        return {"publicKey": options}

    async def finish_registration(self, session_id: str, attestation: Dict[str, Any], rp: RelyingParty) -> Dict[str, Any]:
        sess = await self._load_open(session_id)
        ch = await self._consume(sess, REGISTRATION)

        reg = await asyncio.to_thread(
            lambda: self.verifier.verify_registration(
                credential=attestation,
                challenge=ch.challenge,
                origin=rp.origin,
                rp_id=rp.rp_id,
            )
        )

        response = attestation.get("response")
        transports = response.get("transports") if isinstance(response, dict) else None
        await self.store.upsert_credential(
            WebAuthnCredential(
                user_key=sess.user_key,
                credential_id=reg.credential_id,
                public_key=reg.public_key,
                sign_count=reg.sign_count,
                device_type=reg.device_type,
                backed_up=reg.backed_up,
                transports=[t for t in (transports or []) if isinstance(t, str)],
            ),
            self.now(),
        )
        await self.audit.analytics("webauthn_register_finish", merchant_id=sess.merchant_id, session_id=session_id)
        return {"ok": True, "credentialId": reg.credential_id}

    # -------------------------------------------------------------------------
    # Authentication
    # -------------------------------------------------------------------------
    async def start_authentication(self, session_id: str, rp: RelyingParty) -> Dict[str, Any]:
        sess = await self._load_open(session_id)
        creds = await self.store.list_credentials(sess.user_key)

        options, challenge = await asyncio.to_thread(
            lambda: self.verifier.authentication_options(
                rp_id=rp.rp_id,
                allow_ids=[c.credential_id for c in creds],
            )
        )
        await self._issue(sess, AUTHENTICATION, challenge)
        await self.audit.analytics("webauthn_auth_start", merchant_id=sess.merchant_id, session_id=session_id)
        # no credentials: the client must register a passkey first
        return {"publicKey": options, "hasCredentials": bool(creds)}

    async def finish_authentication(self, session_id: str, assertion: Dict[str, Any], rp: RelyingParty) -> FactorOutcome:
        sess = await self._load(session_id)

        closed = await self.engine.closed_outcome(sess)
        if closed is not None:
            return closed
        self._require_method(sess)

        credential_id = assertion.get("id") or assertion.get("rawId")
        if not isinstance(credential_id, str) or not credential_id:
            raise InvalidInput("assertion.id is required")

        ch = await self._consume(sess, AUTHENTICATION)
        cred = await self.store.get_credential(sess.user_key, credential_id)
        if cred is None:
            raise NotFound("unknown device", code="unknown_device")

        try:
            new_count = await asyncio.to_thread(
                lambda: self.verifier.verify_authentication(
                    credential=assertion,
                    challenge=ch.challenge,
                    origin=rp.origin,
                    rp_id=rp.rp_id,
                    public_key=cred.public_key,
                    sign_count=cred.sign_count,
                )
            )
            if not counter_advanced(cred.sign_count, new_count):
                logger.warning(
                    "signature counter did not increase credential_id=%s stored=%s new=%s",
                    credential_id,
                    cred.sign_count,
                    new_count,
                )
                raise VerificationFailed("verification failed")
            if not await self.store.update_sign_count(sess.user_key, credential_id, cred.sign_count, new_count, self.now()):
                raise VerificationFailed("verification failed")
        except VerificationFailed:
            await self.audit.emit(
                "challenge.failed.webauthn",
                merchant_id=sess.merchant_id,
                session_id=session_id,
            )
            raise

        await self.audit.analytics("webauthn_auth_finish", merchant_id=sess.merchant_id, session_id=session_id)
        return await self.engine.approve_factor(sess, Method.WEBAUTHN)
