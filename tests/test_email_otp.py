"""Tests for the email one-time-code factor."""

import asyncio
from urllib.parse import parse_qs, urlparse

import pytest

from stepup.email_otp import check_code, generate_code, hash_code
from stepup.errors import (
    DeliveryFailed,
    Expired,
    InternalMisconfiguration,
    MethodNotAllowed,
    NotFound,
    RateLimited,
    SessionClosed,
    TooManyAttempts,
    VerificationFailed,
)
from stepup.models import AppRule, Method, SessionStatus

WRONG = "000000"  # never issued; codes are 100000..999999


def test_generated_codes_are_six_digits():
    for _ in range(200):
        code = generate_code()
        assert len(code) == 6
        assert 100000 <= int(code) <= 999999


def test_hash_round_trip():
    h = hash_code("123456", 4)
    assert "123456" not in h
    assert check_code("123456", h)
    assert not check_code("654321", h)


class TestSend:
    async def test_send_stores_only_hash(self, ctx, new_session, mailer):
        sess = await new_session()

        res = await ctx.email_otp.send(sess.session_id)

        assert mailer.sent == [("Buyer@Example.com", mailer.last_code)]
        doc = await ctx.store.db["otp_codes"].find_one({"challenge_id": res["challengeId"]})
        assert doc["email"] == "buyer@example.com"
        assert mailer.last_code not in str(doc)
        assert res["expiresAt"] == doc["created_at"] + ctx.settings.OTP_TTL_SECONDS

    async def test_second_send_too_soon(self, ctx, new_session, clock):
        sess = await new_session()
        await ctx.email_otp.send(sess.session_id)
        clock.advance(10)

        with pytest.raises(RateLimited) as exc:
            await ctx.email_otp.send(sess.session_id)
        assert exc.value.retry_after == 50
        assert exc.value.to_dict()["retryAfter"] == 50

    async def test_fourth_send_refused(self, ctx, new_session, clock):
        sess = await new_session()
        for _ in range(3):
            await ctx.email_otp.send(sess.session_id)
            clock.advance(61)

        with pytest.raises(RateLimited) as exc:
            await ctx.email_otp.send(sess.session_id)
        assert exc.value.code == "too_many_codes"

    async def test_delivery_failure(self, ctx, new_session, mailer):
        sess = await new_session()
        mailer.fail = ConnectionRefusedError("smtp down")

        with pytest.raises(DeliveryFailed):
            await ctx.email_otp.send(sess.session_id)

    async def test_method_not_required(self, ctx, merchant, new_session):
        m, _ = merchant
        app = await ctx.merchants.create_app(m.merchant_id, "passkey-only", [AppRule(method=Method.WEBAUTHN)])
        sess = await new_session(app_id=app.app_id)

        with pytest.raises(MethodNotAllowed):
            await ctx.email_otp.send(sess.session_id)

    async def test_expired_then_closed(self, ctx, new_session, clock):
        sess = await new_session()
        clock.advance(ctx.settings.SESSION_TTL_SECONDS + 1)

        with pytest.raises(Expired):
            await ctx.email_otp.send(sess.session_id)
        assert (await ctx.store.get_session(sess.session_id)).status == SessionStatus.EXPIRED

        with pytest.raises(SessionClosed):
            await ctx.email_otp.send(sess.session_id)

    async def test_unknown_session(self, ctx):
        with pytest.raises(NotFound):
            await ctx.email_otp.send("ses_missing")


class TestVerify:
    async def test_correct_code_approves(self, ctx, new_session, mailer):
        sess = await new_session()
        await ctx.email_otp.send(sess.session_id)

        outcome = await ctx.email_otp.verify(sess.session_id, mailer.last_code)

        assert outcome.status == "approved"
        assert outcome.redirect_url.startswith("https://shop.example/ok?")
        claims = ctx.signer.verify_approval_token(outcome.token)
        assert claims["merchantId"] == sess.merchant_id
        assert claims["amount"] == 25.0

    async def test_three_wrong_codes_deny(self, ctx, new_session, mailer, monkeypatch):
        sess = await new_session()
        await ctx.email_otp.send(sess.session_id)

        for remaining in (2, 1):
            with pytest.raises(VerificationFailed) as exc:
                await ctx.email_otp.verify(sess.session_id, WRONG)
            assert exc.value.code == "invalid_code"
            assert exc.value.remaining_attempts == remaining

        denied = await ctx.email_otp.verify(sess.session_id, WRONG)
        assert denied.status == "denied"
        assert parse_qs(urlparse(denied.redirect_url).query)["reason"] == ["attempts_exceeded"]

        # even the right code now short-circuits to the stored redirect, unhashed
        compared = []
        monkeypatch.setattr("stepup.email_otp.check_code", lambda *a: compared.append(a) or True)
        again = await ctx.email_otp.verify(sess.session_id, mailer.last_code)
        assert again.status == "denied"
        assert again.redirect_url == denied.redirect_url
        assert compared == []

    async def test_expired_code(self, ctx, new_session, mailer, clock):
        sess = await new_session()
        await ctx.email_otp.send(sess.session_id)
        clock.advance(ctx.settings.OTP_TTL_SECONDS)

        with pytest.raises(Expired):
            await ctx.email_otp.verify(sess.session_id, mailer.last_code)
        assert (await ctx.store.get_session(sess.session_id)).status == SessionStatus.PENDING

    async def test_no_code_issued(self, ctx, new_session):
        sess = await new_session()
        with pytest.raises(NotFound) as exc:
            await ctx.email_otp.verify(sess.session_id, "123456")
        assert exc.value.code == "no_challenge"

    async def test_only_newest_code_counts(self, ctx, new_session, mailer, clock):
        sess = await new_session()
        await ctx.email_otp.send(sess.session_id)
        old = mailer.last_code
        clock.advance(61)
        await ctx.email_otp.send(sess.session_id)
        new = mailer.last_code

        if old != new:
            with pytest.raises(VerificationFailed):
                await ctx.email_otp.verify(sess.session_id, old)
        outcome = await ctx.email_otp.verify(sess.session_id, new)
        assert outcome.status == "approved"

    async def test_code_is_single_use(self, ctx, new_session, threshold_app, mailer):
        sess = await new_session(amount=50, app_id=threshold_app.app_id)
        await ctx.email_otp.send(sess.session_id)

        partial = await ctx.email_otp.verify(sess.session_id, mailer.last_code)
        assert partial.partial

        with pytest.raises(Expired):
            await ctx.email_otp.verify(sess.session_id, mailer.last_code)

    async def test_concurrent_wrong_codes_deny_once(self, ctx, new_session):
        sess = await new_session()
        await ctx.email_otp.send(sess.session_id)

        results = await asyncio.gather(
            *[ctx.email_otp.verify(sess.session_id, WRONG) for _ in range(5)],
            return_exceptions=True,
        )

        for r in results:
            assert isinstance(r, VerificationFailed) or r.status == "denied", r
        stored = await ctx.store.get_session(sess.session_id)
        assert stored.status == SessionStatus.DENIED
        assert stored.failed_attempts == 3
        denials = await ctx.store.db["audits"].count_documents(
            {"event": "challenge.denied", "session_id": sess.session_id}
        )
        assert denials == 1

    async def test_code_attempt_ceiling(self, make_ctx, new_session, mailer):
        lenient = make_ctx(SESSION_MAX_FAILED_ATTEMPTS=20)
        sess = await new_session()
        await lenient.email_otp.send(sess.session_id)

        for _ in range(lenient.settings.OTP_MAX_ATTEMPTS):
            with pytest.raises(VerificationFailed):
                await lenient.email_otp.verify(sess.session_id, WRONG)

        with pytest.raises(TooManyAttempts):
            await lenient.email_otp.verify(sess.session_id, mailer.last_code)
        assert (await lenient.store.get_session(sess.session_id)).status == SessionStatus.PENDING

    async def test_signing_failure_leaves_code_usable(self, make_ctx, new_session, mailer):
        broken = make_ctx(JWT_PRIVATE_KEY_PEM="not a key")
        sess = await new_session()
        await broken.email_otp.send(sess.session_id)

        for _ in range(2):
            with pytest.raises(InternalMisconfiguration):
                await broken.email_otp.verify(sess.session_id, mailer.last_code)

        doc = await broken.store.db["otp_codes"].find_one({"session_id": sess.session_id})
        assert doc["consumed_at"] is None
        assert (await broken.store.get_session(sess.session_id)).status == SessionStatus.PENDING
