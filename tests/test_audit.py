"""Tests for the audit trail and its hash-chained file mirror."""

import json

from stepup.audit import GENESIS_HASH, AuditSink, append_event, state_path_for, verify_log_chain
from stepup.models import Method
from verify_audit import main as verify_main
from verify_audit import verify_audit


def test_chain_verifies(tmp_path):
    log = tmp_path / "audit.jsonl"
    h1 = append_event(log, {"event": "session.created", "session_id": "ses_1"})
    h2 = append_event(log, {"event": "challenge.approved", "session_id": "ses_1"})

    assert h1 != h2
    assert verify_log_chain(log)
    lines = [json.loads(x) for x in log.read_text().splitlines()]
    assert lines[0]["prev_hash"] == GENESIS_HASH
    assert lines[1]["prev_hash"] == h1
    assert state_path_for(log).read_text().strip() == h2


def test_callers_cannot_inject_chain_fields(tmp_path):
    log = tmp_path / "audit.jsonl"
    append_event(log, {"event": "x", "prev_hash": "f" * 64, "hash": "e" * 64})
    assert verify_log_chain(log)


def test_tamper_detected(tmp_path):
    log = tmp_path / "audit.jsonl"
    append_event(log, {"event": "challenge.denied", "reason": "attempts_exceeded"})
    append_event(log, {"event": "challenge.approved"})

    text = log.read_text().replace("attempts_exceeded", "denied")
    log.write_text(text)

    assert not verify_log_chain(log)
    res = verify_audit(log)
    assert not res.ok
    assert "hash mismatch" in res.message


def test_deleted_line_detected(tmp_path):
    log = tmp_path / "audit.jsonl"
    for i in range(3):
        append_event(log, {"event": "e", "n": i})
    lines = log.read_text().splitlines()
    log.write_text("\n".join([lines[0], lines[2]]) + "\n")

    assert not verify_log_chain(log)


def test_missing_log_is_valid():
    assert verify_log_chain("/nonexistent/audit.jsonl")


def test_cli_checks_state(tmp_path, capsys):
    log = tmp_path / "audit.jsonl"
    append_event(log, {"event": "e"})

    assert verify_main([str(log), "--check-state"]) == 0
    assert "OK" in capsys.readouterr().out

    state_path_for(log).write_text("0" * 64)
    assert verify_main([str(log), "--check-state"]) == 1


async def test_sink_writes_store_and_file(store, tmp_path, clock):
    log = tmp_path / "audit.jsonl"
    sink = AuditSink(store, log_path=str(log), clock=clock)

    await sink.emit("challenge.denied", merchant_id="mch_1", session_id="ses_1", reason="denied", jti=None)
    await sink.analytics("otp_sent", merchant_id="mch_1", session_id="ses_1")

    doc = await store.db["audits"].find_one({"session_id": "ses_1"})
    assert doc["event"] == "challenge.denied"
    assert doc["ts"] == clock()
    assert "jti" not in doc
    assert await store.db["analytics_events"].count_documents({"type": "otp_sent"}) == 1
    assert verify_log_chain(log)


async def test_full_flow_mirrored(ctx, new_session, tmp_path):
    log = tmp_path / "flow.jsonl"
    ctx.audit._log_path = log
    sess = await new_session()
    await ctx.engine.approve_factor(sess, Method.EMAIL_OTP)

    events = [json.loads(x)["event"] for x in log.read_text().splitlines()]
    assert events == ["session.created", "challenge.approved"]
    assert verify_audit(log, check_state=True).ok
