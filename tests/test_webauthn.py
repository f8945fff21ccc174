"""Tests for the passkey factor protocol (ceremony crypto is faked)."""

import pytest

from stepup.errors import InvalidInput, MethodNotAllowed, NotFound, VerificationFailed
from stepup.models import AppRule, Method, SessionStatus
from stepup.webauthn_factor import counter_advanced


@pytest.fixture
async def passkey_session(ctx, merchant, new_session):
    m, _ = merchant
    app = await ctx.merchants.create_app(m.merchant_id, "passkey-only", [AppRule(method=Method.WEBAUTHN)])
    return await new_session(app_id=app.app_id)


async def register(ctx, sess, rp, cred_id="cred-1", sign_count=0):
    await ctx.webauthn.start_registration(sess.session_id, rp)
    return await ctx.webauthn.finish_registration(
        sess.session_id,
        {"id": cred_id, "signCount": sign_count, "response": {"transports": ["internal", 7]}},
        rp,
    )


@pytest.mark.parametrize(
    "stored,new,ok",
    [(0, 0, True), (0, 1, True), (5, 6, True), (5, 5, False), (5, 3, False), (1, 0, False)],
)
def test_counter_rule(stored, new, ok):
    assert counter_advanced(stored, new) is ok


class TestRegistration:
    async def test_register_stores_credential(self, ctx, passkey_session, rp):
        res = await register(ctx, passkey_session, rp)

        assert res == {"ok": True, "credentialId": "cred-1"}
        cred = await ctx.store.get_credential("buyer@example.com", "cred-1")
        assert cred.public_key == "pk-cred-1"
        assert cred.transports == ["internal"]
        assert cred.created_at is not None

    async def test_options_exclude_existing(self, ctx, passkey_session, rp):
        await register(ctx, passkey_session, rp)
        res = await ctx.webauthn.start_registration(passkey_session.session_id, rp)
        assert res["publicKey"]["excludeCredentials"] == ["cred-1"]

    async def test_finish_without_start(self, ctx, passkey_session, rp):
        with pytest.raises(NotFound) as exc:
            await ctx.webauthn.finish_registration(passkey_session.session_id, {"id": "x"}, rp)
        assert exc.value.code == "no_challenge"

    async def test_challenge_is_single_use(self, ctx, passkey_session, rp):
        await register(ctx, passkey_session, rp)
        with pytest.raises(NotFound):
            await ctx.webauthn.finish_registration(passkey_session.session_id, {"id": "cred-2"}, rp)


class TestAuthentication:
    async def test_assertion_approves(self, ctx, passkey_session, rp):
        await register(ctx, passkey_session, rp)

        start = await ctx.webauthn.start_authentication(passkey_session.session_id, rp)
        assert start["hasCredentials"] is True
        assert start["publicKey"]["allowCredentials"] == ["cred-1"]

        outcome = await ctx.webauthn.finish_authentication(
            passkey_session.session_id, {"id": "cred-1", "signCount": 1}, rp
        )
        assert outcome.status == "approved"
        assert (await ctx.store.get_credential("buyer@example.com", "cred-1")).sign_count == 1

    async def test_no_credentials_yet(self, ctx, passkey_session, rp):
        start = await ctx.webauthn.start_authentication(passkey_session.session_id, rp)
        assert start["hasCredentials"] is False

    async def test_counter_must_increase(self, ctx, passkey_session, rp):
        await register(ctx, passkey_session, rp, sign_count=5)
        await ctx.webauthn.start_authentication(passkey_session.session_id, rp)

        with pytest.raises(VerificationFailed):
            await ctx.webauthn.finish_authentication(
                passkey_session.session_id, {"id": "cred-1", "signCount": 5}, rp
            )

        stored = await ctx.store.get_session(passkey_session.session_id)
        assert stored.status == SessionStatus.PENDING
        assert stored.failed_attempts == 0
        assert await ctx.store.db["audits"].count_documents({"event": "challenge.failed.webauthn"}) == 1

    async def test_bad_signature(self, ctx, passkey_session, rp):
        await register(ctx, passkey_session, rp)
        await ctx.webauthn.start_authentication(passkey_session.session_id, rp)

        with pytest.raises(VerificationFailed):
            await ctx.webauthn.finish_authentication(
                passkey_session.session_id, {"id": "cred-1", "valid": False}, rp
            )
        assert (await ctx.store.get_credential("buyer@example.com", "cred-1")).sign_count == 0

    async def test_unknown_device(self, ctx, passkey_session, rp):
        await ctx.webauthn.start_authentication(passkey_session.session_id, rp)
        with pytest.raises(NotFound) as exc:
            await ctx.webauthn.finish_authentication(passkey_session.session_id, {"id": "nope"}, rp)
        assert exc.value.code == "unknown_device"

    async def test_missing_credential_id(self, ctx, passkey_session, rp):
        with pytest.raises(InvalidInput):
            await ctx.webauthn.finish_authentication(passkey_session.session_id, {}, rp)

    async def test_expired_challenge(self, ctx, passkey_session, rp, clock):
        await register(ctx, passkey_session, rp)
        await ctx.webauthn.start_authentication(passkey_session.session_id, rp)
        clock.advance(ctx.settings.WEBAUTHN_CHALLENGE_TTL_SECONDS)

        with pytest.raises(NotFound):
            await ctx.webauthn.finish_authentication(passkey_session.session_id, {"id": "cred-1"}, rp)

    async def test_method_not_required(self, ctx, new_session, rp):
        sess = await new_session()  # default policy: email only
        with pytest.raises(MethodNotAllowed):
            await ctx.webauthn.start_authentication(sess.session_id, rp)

    async def test_closed_session_short_circuits(self, ctx, passkey_session, rp):
        denied = await ctx.engine.deny(passkey_session)
        outcome = await ctx.webauthn.finish_authentication(passkey_session.session_id, {"id": "cred-1"}, rp)
        assert outcome.redirect_url == denied.redirect_url


class TestBothFactors:
    @pytest.mark.parametrize("passkey_first", [True, False])
    async def test_all_required_in_either_order(self, ctx, new_session, threshold_app, rp, mailer, passkey_first):
        sess = await new_session(amount=50.00, app_id=threshold_app.app_id)
        await register(ctx, sess, rp)

        async def passkey():
            await ctx.webauthn.start_authentication(sess.session_id, rp)
            return await ctx.webauthn.finish_authentication(sess.session_id, {"id": "cred-1", "signCount": 1}, rp)

        async def email():
            await ctx.email_otp.send(sess.session_id)
            return await ctx.email_otp.verify(sess.session_id, mailer.last_code)

        steps = [passkey, email] if passkey_first else [email, passkey]
        first = await steps[0]()
        assert first.partial
        assert len(first.remaining_methods) == 1

        second = await steps[1]()
        assert second.status == "approved"
        stored = await ctx.store.get_session(sess.session_id)
        assert set(stored.satisfied_methods) == {Method.WEBAUTHN, Method.EMAIL_OTP}

    async def test_below_threshold_passkey_alone(self, ctx, new_session, threshold_app, rp):
        sess = await new_session(amount=49.99, app_id=threshold_app.app_id)
        assert sess.methods == [Method.WEBAUTHN]
        await register(ctx, sess, rp)
        await ctx.webauthn.start_authentication(sess.session_id, rp)

        outcome = await ctx.webauthn.finish_authentication(sess.session_id, {"id": "cred-1"}, rp)
        assert outcome.status == "approved"
