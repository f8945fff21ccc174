"""
stepup/sessions.py

CreateSession / GetSessionStatus.

Creation authenticates the merchant, enforces the redirect allow-list (always;
both URLs must resolve to an allowed origin), resolves the app policy for the
amount, and persists a pending session with a fixed TTL.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict

from .audit import AuditSink
from .engine import ApprovalEngine
from .errors import NotFound, Unauthorized
from .merchants import MerchantDirectory, is_allowed_origin
from .models import CreateSessionRequest, MfaSession, SessionStatus
from .policy import resolve_policy
from .storage import DocumentStore, b64url_token, new_id

logger = logging.getLogger(__name__)


class SessionService:
    def __init__(
        self,
        store: DocumentStore,
        merchants: MerchantDirectory,
        engine: ApprovalEngine,
        audit: AuditSink,
        *,
        ttl_seconds: int = 600,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.merchants = merchants
        self.engine = engine
        self.audit = audit
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def now(self) -> int:
        return int(self._clock())

    async def create(self, merchant_id: str, raw_key: str, req: CreateSessionRequest, base_url: str) -> Dict[str, Any]:
        merchant = await self.merchants.authenticate(merchant_id, raw_key)
        app = await self.merchants.get_app(merchant_id, req.app_id) if req.app_id else None

        allowed = self.merchants.allowed_origins(merchant, app)
        if not (is_allowed_origin(req.success_url, allowed) and is_allowed_origin(req.failure_url, allowed)):
            logger.info("redirect origin rejected merchant_id=%s", merchant_id)
            raise Unauthorized("Unallowed redirect origin", code="redirect_origin_not_allowed")

        methods, strategy = resolve_policy(app.rules if app else None, req.amount, req.currency)

        now = self.now()
        sess = MfaSession(
            session_id=new_id("ses_", 20),
            state=b64url_token(16),
            merchant_id=merchant_id,
            app_id=req.app_id,
            amount=req.amount,
            currency=req.currency,
            user=req.user,
            metadata=req.metadata,
            methods=methods,
            strategy=strategy,
            success_url=req.success_url,
            failure_url=req.failure_url,
            created_at=now,
            expires_at=now + self.ttl_seconds,
        )
        await self.store.insert_session(sess)
        await self.audit.emit(
            "session.created",
            merchant_id=merchant_id,
            session_id=sess.session_id,
            methods=[m.value for m in methods],
            strategy=strategy.value,
        )

        return {
            "sessionId": sess.session_id,
            "state": sess.state,
            "url": f"{base_url.rstrip('/')}/mfa/{sess.session_id}",
            "expiresAt": sess.expires_at,
            "methods": [m.value for m in methods],
            "strategy": strategy.value,
        }

    async def status(self, session_id: str) -> Dict[str, Any]:
        sess = await self.store.get_session(session_id)
        if sess is None:
            raise NotFound("session not found")

        now = self.now()
        if sess.status == SessionStatus.PENDING and sess.is_expired(now):
            await self.engine.expire(sess)
        return sess.public_view(now)
