# stepup/main.py
#
# -----------------------------------------------------------------------------
# Architectural notes (high level)
# -----------------------------------------------------------------------------
# This file is intentionally "thin" orchestration glue:
#   - It wires HTTP endpoints to the services held by the AppContext.
#   - It MUST NOT implement state transitions or crypto itself (those live in
#     engine.py / signing.py / the factor handlers).
#   - It owns the translation of StepUpError into JSON error bodies.
#
# Key modules / responsibilities:
#   - config.py            : environment-driven settings
#   - context.py           : init-once dependency container + base URL resolver
#   - sessions.py          : CreateSession / GetSessionStatus
#   - email_otp.py         : email code send/verify
#   - webauthn_factor.py   : passkey registration/authentication protocol
#   - engine.py            : approval engine (partial / approve / deny / expire)
#   - signing.py           : approval JWTs + JWKS
#   - audit.py             : append-only audit trail
#
# Redirect-driven flow: once a session is closed (approved, denied, expired)
# the verify endpoints answer with {"redirect": ...} carrying the merchant's
# state and either the token or a reason code, never with a bare error.
# -----------------------------------------------------------------------------

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response

from .config import load_settings
from .context import AppContext
from .errors import InternalMisconfiguration, RateLimited, StepUpError
from .models import AssertionRequest, AttestationRequest, CreateSessionRequest, SessionRef, VerifyCodeRequest

logger = logging.getLogger(__name__)

JWKS_CACHE_CONTROL = "public, max-age=300, stale-while-revalidate=600"


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    if root.handlers:
        root.setLevel(level.upper())
        return
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _ctx(request: Request) -> AppContext:
    return request.app.state.ctx


def _bearer(authorization: Optional[str]) -> str:
    value = (authorization or "").strip()
    if value.lower().startswith("bearer "):
        return value[7:].strip()
    return value


router = APIRouter()


# -----------------------------------------------------------------------------
# Sessions
# -----------------------------------------------------------------------------
@router.post("/api/v1/sessions")
async def create_session(
    body: CreateSessionRequest,
    request: Request,
    x_merchant_id: str = Header(default=""),
    authorization: str = Header(default=""),
):
    ctx = _ctx(request)
    base_url = ctx.base_urls.base_url(request.headers)
    return await ctx.sessions.create(x_merchant_id, _bearer(authorization), body, base_url)


@router.get("/api/v1/sessions/{session_id}")
async def session_status(session_id: str, request: Request):
    return await _ctx(request).sessions.status(session_id)


# -----------------------------------------------------------------------------
# Email one-time codes
# -----------------------------------------------------------------------------
@router.post("/api/v1/otp/send")
async def otp_send(body: SessionRef, request: Request):
    return await _ctx(request).email_otp.send(body.session_id)


@router.post("/api/v1/otp/verify")
async def otp_verify(body: VerifyCodeRequest, request: Request):
    outcome = await _ctx(request).email_otp.verify(body.session_id, body.code)
    return outcome.to_response()


# -----------------------------------------------------------------------------
# WebAuthn
# -----------------------------------------------------------------------------
@router.post("/api/v1/webauthn/start")
async def webauthn_start(body: SessionRef, request: Request):
    ctx = _ctx(request)
    return await ctx.webauthn.start_authentication(body.session_id, ctx.base_urls.relying_party(request.headers))


@router.post("/api/v1/webauthn/finish")
async def webauthn_finish(body: AssertionRequest, request: Request):
    ctx = _ctx(request)
    outcome = await ctx.webauthn.finish_authentication(
        body.session_id, body.assertion, ctx.base_urls.relying_party(request.headers)
    )
    return outcome.to_response()


@router.post("/api/v1/webauthn/register/start")
async def webauthn_register_start(body: SessionRef, request: Request):
    ctx = _ctx(request)
    return await ctx.webauthn.start_registration(body.session_id, ctx.base_urls.relying_party(request.headers))


@router.post("/api/v1/webauthn/register/finish")
async def webauthn_register_finish(body: AttestationRequest, request: Request):
    ctx = _ctx(request)
    return await ctx.webauthn.finish_registration(
        body.session_id, body.attestation, ctx.base_urls.relying_party(request.headers)
    )


# -----------------------------------------------------------------------------
# Public key discovery / health
# -----------------------------------------------------------------------------
@router.get("/.well-known/jwks.json")
async def jwks(request: Request):
    body = _ctx(request).signer.jwks_bytes()
    return Response(content=body, media_type="application/json", headers={"Cache-Control": JWKS_CACHE_CONTROL})


@router.get("/healthz")
async def healthz(request: Request):
    ok = await _ctx(request).store.ping()
    return JSONResponse(status_code=200 if ok else 503, content={"ok": ok})


# -----------------------------------------------------------------------------
# Error rendering
# -----------------------------------------------------------------------------
async def _stepup_error(request: Request, exc: StepUpError):
    headers = {}
    if isinstance(exc, RateLimited) and exc.retry_after is not None:
        headers["Retry-After"] = str(exc.retry_after)
    if isinstance(exc, InternalMisconfiguration):
        logger.error("internal misconfiguration on %s: %s", request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


async def _validation_error(request: Request, exc: RequestValidationError):
    fields = [".".join(str(p) for p in e.get("loc", ())) for e in exc.errors()]
    return JSONResponse(
        status_code=400,
        content={"error": "invalid_input", "message": "Bad Request", "fields": fields},
    )


async def _unexpected_error(request: Request, exc: Exception):
    logger.error("unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"error": "internal_error", "message": "Internal Server Error"})


# -----------------------------------------------------------------------------
# FastAPI application
# -----------------------------------------------------------------------------
def create_app(context: Optional[AppContext] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ctx = getattr(app.state, "ctx", None)
        if ctx is None:
            settings = load_settings()
            configure_logging(settings.LOG_LEVEL)
            ctx = await AppContext.create(settings)
            app.state.ctx = ctx
        await ctx.startup()
        try:
            yield
        finally:
            ctx.close()

    app = FastAPI(title="Step-up MFA", version="0.1.0", lifespan=lifespan)
    if context is not None:
        app.state.ctx = context
    app.include_router(router)
    app.add_exception_handler(StepUpError, _stepup_error)
    app.add_exception_handler(RequestValidationError, _validation_error)
    app.add_exception_handler(Exception, _unexpected_error)
    return app


app = create_app()
