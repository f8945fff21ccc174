#!/usr/bin/env python3
"""
verify_audit.py: Verify the hash-chained audit mirror written by stepup.audit.

Checks:
- every line is a JSON object
- prev_hash links to the previous line (genesis = 64 zeros)
- hash recomputes from the line's content
- optional: the <log>.state file holds the last hash

Exit codes:
- 0: OK
- 1: Verification failed
"""

from __future__ import annotations

import argparse
import json
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from stepup.audit import GENESIS_HASH, chain_hash, state_path_for


@dataclass
class VerifyResult:
    ok: bool
    lines: int
    last_hash: Optional[str]
    message: str


def _is_hex64(s) -> bool:
    if not isinstance(s, str) or len(s) != 64:
        return False
    try:
        bytes.fromhex(s)
    except ValueError:
        return False
    return True


def verify_audit(log_path: Path, *, check_state: bool = False) -> VerifyResult:
    if not log_path.exists():
        return VerifyResult(False, 0, None, f"Log not found: {log_path}")

    lines = 0
    prev = GENESIS_HASH
    last_hash: Optional[str] = None

    with log_path.open("r", encoding="utf-8") as f:
        for lineno, raw in enumerate(f, start=1):
            raw = raw.strip()
            if not raw:
                continue
            lines += 1
            try:
                event = json.loads(raw)
            except ValueError as e:
                return VerifyResult(False, lines, last_hash, f"{log_path}:{lineno}: invalid JSON: {e}")
            if not isinstance(event, dict):
                return VerifyResult(False, lines, last_hash, f"{log_path}:{lineno}: JSON root must be an object")

            claimed_prev = event.pop("prev_hash", None)
            claimed = event.pop("hash", None)
            if not (_is_hex64(claimed_prev) and _is_hex64(claimed)):
                return VerifyResult(False, lines, last_hash, f"{log_path}:{lineno}: missing or malformed chain fields")
            if claimed_prev != prev:
                return VerifyResult(
                    False, lines, last_hash,
                    f"{log_path}:{lineno}: prev_hash mismatch: expected {prev} got {claimed_prev}",
                )

            recomputed = chain_hash(prev, event)
            if recomputed != claimed:
                return VerifyResult(
                    False, lines, last_hash,
                    f"{log_path}:{lineno}: hash mismatch: expected {recomputed} got {claimed}",
                )
            prev = last_hash = claimed

    if check_state:
        state = state_path_for(log_path)
        if not state.exists():
            return VerifyResult(False, lines, last_hash, f"State file not found: {state}")
        state_val = state.read_text(encoding="utf-8").strip()
        if state_val != (last_hash or GENESIS_HASH):
            return VerifyResult(False, lines, last_hash, f"State mismatch: state={state_val} log_last={last_hash}")

    return VerifyResult(True, lines, last_hash, "OK")


def main(argv=None) -> int:
    p = argparse.ArgumentParser(description="Verify step-up audit log integrity (hash-chained JSONL).")
    p.add_argument("log", type=Path, help="Path to the audit JSONL file (AUDIT_LOG_PATH)")
    p.add_argument(
        "--check-state",
        action="store_true",
        help="Also require <log>.state to hold the last hash.",
    )
    args = p.parse_args(argv)

    res = verify_audit(args.log, check_state=args.check_state)
    if res.ok:
        print("OK")
        print(f"lines={res.lines}")
        if res.last_hash:
            print(f"last_hash={res.last_hash}")
        return 0

    print("FAIL", file=sys.stderr)
    print(res.message, file=sys.stderr)
    print(f"lines={res.lines}", file=sys.stderr)
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
