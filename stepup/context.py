"""
stepup/context.py

Application context: every process-wide dependency, constructed once and
passed explicitly (no module-level singletons).

  settings -> store -> audit -> signer -> engine -> factor handlers

`AppContext.create()` connects lazily; `startup()` is idempotent and is what
the FastAPI lifespan calls to fail fast on a bad signing key and to create
indexes. Tests build the context directly around an in-memory store.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Mapping, Optional
from urllib.parse import urlparse

from .audit import AuditSink
from .config import Settings, normalize_origin
from .email_otp import EmailOtpHandler
from .engine import ApprovalEngine
from .mailer import EmailSender
from .merchants import MerchantDirectory
from .sessions import SessionService
from .signing import SigningService
from .storage import DocumentStore, MongoConnection
from .webauthn_factor import RelyingParty, WebAuthnHandler
from .webauthn_verifier import WebAuthnVerifier

logger = logging.getLogger(__name__)

FALLBACK_BASE_URL = "http://localhost:3000"


class BaseUrlResolver:
    """
    Public base URL of the hosted flow.

    A configured PUBLIC_BASE_URL always wins; otherwise it is derived from the
    proxy headers of the current request.
    """

    def __init__(self, configured: Optional[str] = None, rp_id: Optional[str] = None):
        self.configured = configured
        self.rp_id = rp_id

    def base_url(self, headers: Mapping[str, str]) -> str:
        if self.configured:
            return self.configured
        host = headers.get("x-forwarded-host") or headers.get("host") or ""
        proto = (headers.get("x-forwarded-proto") or "https").split(",")[0].strip()
        if not host:
            return FALLBACK_BASE_URL
        try:
            return normalize_origin(f"{proto}://{host.split(',')[0].strip()}")
        except ValueError:
            return FALLBACK_BASE_URL

    def relying_party(self, headers: Mapping[str, str]) -> RelyingParty:
        origin = self.base_url(headers)
        return RelyingParty(origin=origin, rp_id=self.rp_id or (urlparse(origin).hostname or "localhost"))


@dataclass
class AppContext:
    settings: Settings
    store: DocumentStore
    audit: AuditSink
    signer: SigningService
    engine: ApprovalEngine
    merchants: MerchantDirectory
    sessions: SessionService
    email_otp: EmailOtpHandler
    webauthn: WebAuthnHandler
    base_urls: BaseUrlResolver
    connection: Optional[MongoConnection] = None
    _started: bool = field(default=False, repr=False)
    _start_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @classmethod
    def build(
        cls,
        settings: Settings,
        store: DocumentStore,
        *,
        mailer=None,
        verifier=None,
        clock: Callable[[], float] = time.time,
        connection: Optional[MongoConnection] = None,
    ) -> "AppContext":
        audit = AuditSink(store, log_path=settings.AUDIT_LOG_PATH, clock=clock)
        signer = SigningService(
            settings.JWT_PRIVATE_KEY_PEM,
            kid=settings.JWT_KID,
            issuer=settings.issuer,
            audience=settings.JWT_AUDIENCE,
            ttl_seconds=settings.TOKEN_TTL_SECONDS,
            clock=clock,
        )
        engine = ApprovalEngine(
            store,
            signer,
            audit,
            max_failed_attempts=settings.SESSION_MAX_FAILED_ATTEMPTS,
            clock=clock,
        )
        merchants = MerchantDirectory(
            store,
            key_env=settings.MERCHANT_KEY_ENV,
            hash_rounds=settings.MERCHANT_KEY_HASH_ROUNDS,
            default_allowed_origins=settings.DEFAULT_ALLOWED_ORIGINS,
            clock=clock,
        )
        return cls(
            settings=settings,
            store=store,
            audit=audit,
            signer=signer,
            engine=engine,
            merchants=merchants,
            sessions=SessionService(
                store, merchants, engine, audit, ttl_seconds=settings.SESSION_TTL_SECONDS, clock=clock
            ),
            email_otp=EmailOtpHandler(
                store,
                engine,
                mailer or EmailSender.from_settings(settings),
                audit,
                ttl_seconds=settings.OTP_TTL_SECONDS,
                max_sends=settings.OTP_MAX_SENDS,
                min_interval_seconds=settings.OTP_MIN_INTERVAL_SECONDS,
                max_attempts=settings.OTP_MAX_ATTEMPTS,
                hash_rounds=settings.OTP_HASH_ROUNDS,
                clock=clock,
            ),
            webauthn=WebAuthnHandler(
                store,
                engine,
                verifier or WebAuthnVerifier(settings.RP_NAME),
                audit,
                challenge_ttl_seconds=settings.WEBAUTHN_CHALLENGE_TTL_SECONDS,
                clock=clock,
            ),
            base_urls=BaseUrlResolver(settings.PUBLIC_BASE_URL, settings.RP_ID),
            connection=connection,
        )

    @classmethod
    async def create(cls, settings: Settings, **kwargs) -> "AppContext":
        """Production wiring: Motor-backed store."""
        connection = MongoConnection(settings.MONGODB_URI, settings.MONGODB_DB)
        db = await connection.connect()
        return cls.build(settings, DocumentStore(db), connection=connection, **kwargs)

    async def startup(self) -> None:
        if self._started:
            return
        async with self._start_lock:
            if self._started:
                return
            # InternalMisconfiguration propagates: refuse to serve with a bad key
            self.signer.ensure_loaded()
            await self.store.ensure_indexes()
            self._started = True
            logger.info("application context started")

    def close(self) -> None:
        if self.connection is not None:
            self.connection.close()
