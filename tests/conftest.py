"""Shared fixtures: in-memory document store, controllable clock, fake collaborators."""

import secrets
import time

import httpx
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from mongomock_motor import AsyncMongoMockClient

from stepup.config import Settings
from stepup.context import AppContext
from stepup.errors import VerificationFailed
from stepup.main import create_app
from stepup.models import AppRule, CreateSessionRequest, Method
from stepup.storage import DocumentStore
from stepup.webauthn_factor import RelyingParty
from stepup.webauthn_verifier import RegisteredCredential

SHOP_ORIGIN = "https://shop.example"


@pytest.fixture(scope="session")
def rsa_pem():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("ascii")


class FakeClock:
    def __init__(self, start=None):
        self.t = int(start if start is not None else time.time())

    def __call__(self):
        return self.t

    def advance(self, seconds):
        self.t += seconds


class FakeMailer:
    """Captures codes instead of talking SMTP."""

    def __init__(self):
        self.sent = []
        self.fail = None

    async def send_otp(self, to, code, ttl_minutes=5):
        if self.fail is not None:
            raise self.fail
        self.sent.append((to, code))

    @property
    def last_code(self):
        return self.sent[-1][1]


class FakeVerifier:
    """
    Stands in for py_webauthn. Credentials are plain dicts:
      attestation {"id", "challenge"?, "signCount"?}
      assertion   {"id", "challenge"?, "signCount"?, "valid"?}
    """

    def registration_options(self, *, rp_id, user_key, user_name, exclude_ids):
        challenge = secrets.token_urlsafe(32)
        return {"challenge": challenge, "rp": {"id": rp_id}, "excludeCredentials": exclude_ids}, challenge

    def verify_registration(self, *, credential, challenge, origin, rp_id):
        if credential.get("challenge", challenge) != challenge:
            raise VerificationFailed("verification failed")
        return RegisteredCredential(
            credential_id=credential["id"],
            public_key="pk-" + credential["id"],
            sign_count=credential.get("signCount", 0),
            device_type="single_device",
        )

    def authentication_options(self, *, rp_id, allow_ids):
        challenge = secrets.token_urlsafe(32)
        return {"challenge": challenge, "rpId": rp_id, "allowCredentials": allow_ids}, challenge

    def verify_authentication(self, *, credential, challenge, origin, rp_id, public_key, sign_count):
        if not credential.get("valid", True) or credential.get("challenge", challenge) != challenge:
            raise VerificationFailed("verification failed")
        return credential.get("signCount", sign_count + 1)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def verifier():
    return FakeVerifier()


@pytest.fixture
def settings(rsa_pem):
    return Settings(
        _env_file=None,
        PUBLIC_BASE_URL="http://localhost:3000",
        RP_ID="localhost",
        JWT_PRIVATE_KEY_PEM=rsa_pem,
        JWT_ISSUER="https://stepup.test",
        OTP_HASH_ROUNDS=4,
        MERCHANT_KEY_HASH_ROUNDS=4,
    )


@pytest.fixture
def store():
    return DocumentStore(AsyncMongoMockClient()["stepup_test"])


@pytest.fixture
def make_ctx(settings, store, mailer, verifier, clock):
    """Factory: a context over the shared store with some settings overridden."""

    def _build(**overrides):
        return AppContext.build(
            settings.model_copy(update=overrides), store, mailer=mailer, verifier=verifier, clock=clock
        )

    return _build


@pytest.fixture
def ctx(make_ctx):
    return make_ctx()


@pytest.fixture
def rp():
    return RelyingParty(origin="http://localhost:3000", rp_id="localhost")


@pytest.fixture
async def merchant(ctx):
    """(merchant, raw_key) allowed to redirect to SHOP_ORIGIN."""
    return await ctx.merchants.provision("Shop", [SHOP_ORIGIN])


@pytest.fixture
async def threshold_app(ctx, merchant):
    """Passkey at any amount, email code as well from 50.00."""
    m, _ = merchant
    return await ctx.merchants.create_app(
        m.merchant_id,
        "checkout",
        [
            AppRule(method=Method.WEBAUTHN, min_amount_cents=0),
            AppRule(method=Method.EMAIL_OTP, min_amount_cents=5000),
        ],
    )


def session_request(amount=25.0, app_id=None, **overrides):
    body = {
        "amount": amount,
        "currency": "USD",
        "user": {"email": "Buyer@Example.com", "id": "u_1"},
        "successUrl": SHOP_ORIGIN + "/ok?order=42",
        "failureUrl": SHOP_ORIGIN + "/fail",
        "appId": app_id,
        "metadata": {"order": 42},
    }
    body.update(overrides)
    return CreateSessionRequest.model_validate(body)


@pytest.fixture
def new_session(ctx, merchant):
    """Factory: create a session and return the stored MfaSession."""

    async def _create(amount=25.0, app_id=None, **overrides):
        m, raw = merchant
        created = await ctx.sessions.create(
            m.merchant_id, raw, session_request(amount, app_id, **overrides), "http://localhost:3000"
        )
        return await ctx.store.get_session(created["sessionId"])

    return _create


@pytest.fixture
async def client(ctx):
    transport = httpx.ASGITransport(app=create_app(ctx))
    async with httpx.AsyncClient(transport=transport, base_url="http://localhost:3000") as c:
        yield c
