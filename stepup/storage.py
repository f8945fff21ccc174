# stepup/storage.py
#
# -----------------------------------------------------------------------------
# Document store
# -----------------------------------------------------------------------------
# The store is the single source of truth and the only mutation point for
# session / challenge state. Every progress mutation is ONE conditional,
# single-document update (find_one_and_update filtered on status=pending), so
# concurrent requests for the same session can neither under-count failures
# nor approve twice. Nothing here reads a document and writes it back in a
# separate step.
#
# Collections:
#   mfa_sessions, otp_codes, webauthn_challenges, webauthn_devices,
#   approval_tokens, merchants, apps, audits, analytics_events
# -----------------------------------------------------------------------------

import asyncio
import logging
import secrets
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING, DESCENDING, ReturnDocument

from .models import (
    AppPolicy,
    ApprovalTokenRecord,
    EmailChallenge,
    Merchant,
    Method,
    MfaSession,
    SessionStatus,
    WebAuthnChallenge,
    WebAuthnCredential,
)

logger = logging.getLogger(__name__)

NEWEST_FIRST = [("created_at", DESCENDING), ("_id", DESCENDING)]


def b64url_token(nbytes: int) -> str:
    # token_urlsafe returns base64url-ish without padding; good enough
    return secrets.token_urlsafe(nbytes)


def new_id(prefix: str, nchars: int) -> str:
    return prefix + secrets.token_hex((nchars + 1) // 2)[:nchars]


class MongoConnection:
    """Lazy, idempotent Motor client holder (first caller connects)."""

    def __init__(self, uri: str, db_name: str, **kwargs: Any):
        self._uri = uri
        self._db_name = db_name
        self._kwargs = kwargs
        self._client = None
        self._lock = asyncio.Lock()

    async def connect(self):
        if self._client is not None:
            return self._client[self._db_name]
        async with self._lock:
            if self._client is None:
                from motor.motor_asyncio import AsyncIOMotorClient

                logger.info("connecting to document store db=%s", self._db_name)
                self._client = AsyncIOMotorClient(
                    self._uri,
                    serverSelectionTimeoutMS=5000,
                    **self._kwargs,
                )
        return self._client[self._db_name]

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None


class DocumentStore:
    SESSIONS = "mfa_sessions"
    EMAIL_CHALLENGES = "otp_codes"
    WEBAUTHN_CHALLENGES = "webauthn_challenges"
    WEBAUTHN_DEVICES = "webauthn_devices"
    APPROVAL_TOKENS = "approval_tokens"
    MERCHANTS = "merchants"
    APPS = "apps"
    AUDITS = "audits"
    ANALYTICS = "analytics_events"

    def __init__(self, db):
        self.db = db

    def _c(self, name: str):
        return self.db[name]

    async def ensure_indexes(self) -> None:
        await self._c(self.SESSIONS).create_index("session_id", unique=True)
        await self._c(self.EMAIL_CHALLENGES).create_index(
            [("session_id", ASCENDING), ("email", ASCENDING), ("created_at", DESCENDING)]
        )
        await self._c(self.WEBAUTHN_CHALLENGES).create_index(
            [("session_id", ASCENDING), ("user_key", ASCENDING), ("kind", ASCENDING)]
        )
        await self._c(self.WEBAUTHN_DEVICES).create_index(
            [("user_key", ASCENDING), ("credential_id", ASCENDING)], unique=True
        )
        await self._c(self.APPROVAL_TOKENS).create_index("jti", unique=True)
        await self._c(self.MERCHANTS).create_index("merchant_id", unique=True)
        await self._c(self.APPS).create_index("app_id", unique=True)

    async def ping(self) -> bool:
        try:
            await self.db.command("ping")
            return True
        except Exception:
            logger.warning("document store ping failed", exc_info=True)
            return False

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------
    async def insert_session(self, sess: MfaSession) -> None:
        await self._c(self.SESSIONS).insert_one(sess.to_doc())

    async def get_session(self, session_id: str) -> Optional[MfaSession]:
        doc = await self._c(self.SESSIONS).find_one({"session_id": session_id})
        return MfaSession.from_doc(doc)

    async def _update_pending(self, session_id: str, update: Dict[str, Any], **extra_filter) -> Optional[MfaSession]:
        doc = await self._c(self.SESSIONS).find_one_and_update(
            {"session_id": session_id, "status": SessionStatus.PENDING.value, **extra_filter},
            update,
            return_document=ReturnDocument.AFTER,
        )
        return MfaSession.from_doc(doc)

    async def add_satisfied_method(self, session_id: str, method: Method, now: int) -> Optional[MfaSession]:
        """Record a satisfied factor; None when the session is no longer pending or has expired."""
        return await self._update_pending(
            session_id,
            {"$addToSet": {"satisfied_methods": method.value}},
            methods=method.value,
            expires_at={"$gt": now},
        )

    async def increment_failed_attempts(self, session_id: str, ceiling: int) -> Optional[MfaSession]:
        """
        Atomic increment-and-fetch, capped at `ceiling`.

        None when the session is no longer pending or already holds `ceiling`
        failures.
        """
        return await self._update_pending(
            session_id,
            {"$inc": {"failed_attempts": 1}},
            failed_attempts={"$lt": ceiling},
        )

    async def transition(
        self, session_id: str, status: SessionStatus, *, unexpired_at: Optional[int] = None, **fields: Any
    ) -> Optional[MfaSession]:
        """
        pending -> terminal, exactly once.

        Returns the updated session for the caller that performed the
        transition and None for everyone else. With `unexpired_at` the
        transition also requires expires_at to lie after that instant.
        """
        if status == SessionStatus.PENDING:
            raise ValueError("cannot transition into pending")
        extra = {} if unexpired_at is None else {"expires_at": {"$gt": unexpired_at}}
        return await self._update_pending(session_id, {"$set": {"status": status.value, **fields}}, **extra)

    async def reserve_email_send(
        self, session_id: str, now: int, max_sends: int, min_interval: int
    ) -> Optional[MfaSession]:
        """Take one send slot if both the lifetime cap and the interval allow it."""
        return await self._update_pending(
            session_id,
            {"$inc": {"email_sends": 1}, "$set": {"last_email_sent_at": now}},
            email_sends={"$lt": max_sends},
            **{
                "$or": [
                    {"last_email_sent_at": None},
                    {"last_email_sent_at": {"$lte": now - min_interval}},
                ]
            },
        )

    # -------------------------------------------------------------------------
    # Email challenges
    # -------------------------------------------------------------------------
    async def insert_email_challenge(self, ch: EmailChallenge) -> None:
        await self._c(self.EMAIL_CHALLENGES).insert_one(ch.to_doc())

    async def latest_email_challenge(self, session_id: str, email: str) -> Optional[EmailChallenge]:
        doc = await self._c(self.EMAIL_CHALLENGES).find_one(
            {"session_id": session_id, "email": email},
            sort=NEWEST_FIRST,
        )
        return EmailChallenge.from_doc(doc)

    async def claim_email_attempt(self, challenge_id: str, max_attempts: int) -> Optional[EmailChallenge]:
        """Consume one attempt; None when the challenge is already at its ceiling."""
        doc = await self._c(self.EMAIL_CHALLENGES).find_one_and_update(
            {"challenge_id": challenge_id, "attempts": {"$lt": max_attempts}},
            {"$inc": {"attempts": 1}},
            return_document=ReturnDocument.AFTER,
        )
        return EmailChallenge.from_doc(doc)

    async def consume_email_challenge(self, challenge_id: str, now: int) -> bool:
        res = await self._c(self.EMAIL_CHALLENGES).update_one(
            {"challenge_id": challenge_id, "consumed_at": None},
            {"$set": {"consumed_at": now}},
        )
        return res.modified_count == 1

    async def release_email_challenge(self, challenge_id: str, consumed_at: int) -> None:
        """Undo consume_email_challenge for a code whose approval could not be completed."""
        await self._c(self.EMAIL_CHALLENGES).update_one(
            {"challenge_id": challenge_id, "consumed_at": consumed_at},
            {"$set": {"consumed_at": None}},
        )

    # -------------------------------------------------------------------------
    # WebAuthn
    # -------------------------------------------------------------------------
    async def insert_webauthn_challenge(self, ch: WebAuthnChallenge) -> None:
        await self._c(self.WEBAUTHN_CHALLENGES).insert_one(ch.to_doc())

    async def consume_webauthn_challenge(self, session_id: str, user_key: str, kind: str) -> Optional[WebAuthnChallenge]:
        """Pop the most recent challenge; single-use even under concurrent finishes."""
        coll = self._c(self.WEBAUTHN_CHALLENGES)
        doc = await coll.find_one(
            {"session_id": session_id, "user_key": user_key, "kind": kind},
            sort=NEWEST_FIRST,
        )
        if doc is None:
            return None
        res = await coll.delete_one({"_id": doc["_id"]})
        if res.deleted_count != 1:
            return None
        return WebAuthnChallenge.from_doc(doc)

    async def list_credentials(self, user_key: str) -> List[WebAuthnCredential]:
        cursor = self._c(self.WEBAUTHN_DEVICES).find({"user_key": user_key})
        return [WebAuthnCredential.from_doc(d) for d in await cursor.to_list(length=None)]

    async def get_credential(self, user_key: str, credential_id: str) -> Optional[WebAuthnCredential]:
        doc = await self._c(self.WEBAUTHN_DEVICES).find_one(
            {"user_key": user_key, "credential_id": credential_id}
        )
        return WebAuthnCredential.from_doc(doc)

    async def upsert_credential(self, cred: WebAuthnCredential, now: int) -> None:
        fields = cred.to_doc()
        fields.pop("created_at", None)
        fields["updated_at"] = now
        await self._c(self.WEBAUTHN_DEVICES).update_one(
            {"user_key": cred.user_key, "credential_id": cred.credential_id},
            {"$set": fields, "$setOnInsert": {"created_at": now}},
            upsert=True,
        )

    async def update_sign_count(self, user_key: str, credential_id: str, expected: int, new: int, now: int) -> bool:
        res = await self._c(self.WEBAUTHN_DEVICES).update_one(
            {"user_key": user_key, "credential_id": credential_id, "sign_count": expected},
            {"$set": {"sign_count": new, "updated_at": now}},
        )
        return res.matched_count == 1

    # -------------------------------------------------------------------------
    # Approval tokens
    # -------------------------------------------------------------------------
    async def insert_approval_token(self, rec: ApprovalTokenRecord) -> None:
        await self._c(self.APPROVAL_TOKENS).insert_one(rec.to_doc())

    async def get_approval_token(self, jti: str) -> Optional[ApprovalTokenRecord]:
        return ApprovalTokenRecord.from_doc(await self._c(self.APPROVAL_TOKENS).find_one({"jti": jti}))

    # -------------------------------------------------------------------------
    # Merchants / apps
    # -------------------------------------------------------------------------
    async def insert_merchant(self, m: Merchant) -> None:
        await self._c(self.MERCHANTS).insert_one(m.to_doc())

    async def get_merchant(self, merchant_id: str) -> Optional[Merchant]:
        return Merchant.from_doc(await self._c(self.MERCHANTS).find_one({"merchant_id": merchant_id}))

    async def update_merchant(self, merchant_id: str, fields: Dict[str, Any]) -> Optional[Merchant]:
        doc = await self._c(self.MERCHANTS).find_one_and_update(
            {"merchant_id": merchant_id},
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
        )
        return Merchant.from_doc(doc)

    async def insert_app(self, app: AppPolicy) -> None:
        await self._c(self.APPS).insert_one(app.to_doc())

    async def get_app(self, app_id: str) -> Optional[AppPolicy]:
        return AppPolicy.from_doc(await self._c(self.APPS).find_one({"app_id": app_id}))

    async def update_app(self, app_id: str, fields: Dict[str, Any]) -> Optional[AppPolicy]:
        doc = await self._c(self.APPS).find_one_and_update(
            {"app_id": app_id},
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
        )
        return AppPolicy.from_doc(doc)

    # -------------------------------------------------------------------------
    # Append-only event collections
    # -------------------------------------------------------------------------
    async def insert_audit(self, event: Dict[str, Any]) -> None:
        await self._c(self.AUDITS).insert_one(dict(event))

    async def insert_analytics(self, event: Dict[str, Any]) -> None:
        await self._c(self.ANALYTICS).insert_one(dict(event))
