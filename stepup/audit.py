"""
stepup/audit.py

Append-only audit trail for every session transition.

Events go to the `audits` collection of the document store. When
AUDIT_LOG_PATH is configured they are also mirrored into a tamper-evident
JSONL file where each line is hash-chained:

  H_0 = "0"*64
  H_n = SHA3-256( bytes.fromhex(H_{n-1}) || canonical_json(event_without_hash_fields) )

Each line stores:
  - prev_hash: hex string (64 chars)
  - hash:      hex string (64 chars)

Properties:
- Any modification, deletion, or reordering of log lines breaks the chain.
- Chain state is persisted next to the log in <log>.state
- Uses file locking (flock) to keep chain consistent under concurrency.

Analytics events (`analytics_events`) are plain counters for dashboards and
are not chained.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import os
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional

# Linux file lock (works in Docker/Linux)
import fcntl

from .signing import canonical_json_bytes

GENESIS_HASH = "0" * 64  # 32 bytes hex


def _sha3_256_hex(data: bytes) -> str:
    return hashlib.sha3_256(data).hexdigest()


def chain_hash(prev_hash: str, event: Dict[str, Any]) -> str:
    """Hash of one log line given its predecessor; `event` excludes the chain fields."""
    return _sha3_256_hex(bytes.fromhex(prev_hash) + canonical_json_bytes(event))


def state_path_for(log_path: Path) -> Path:
    return _state_path(Path(log_path))


def _state_path(log_path: Path) -> Path:
    return log_path.with_name(log_path.name + ".state")


def _lock_path(log_path: Path) -> Path:
    return log_path.with_name(log_path.name + ".lock")


def _read_last_hash_unlocked(log_path: Path) -> str:
    """
    Read last hash from the state file. Caller must hold lock.
    Returns GENESIS_HASH if state missing/empty.
    """
    state = _state_path(log_path)
    if not state.exists():
        return GENESIS_HASH
    s = state.read_text(encoding="utf-8").strip().lower()
    if len(s) != 64:
        return GENESIS_HASH
    try:
        bytes.fromhex(s)
    except ValueError:
        return GENESIS_HASH
    return s


def append_event(log_path: Path, event: Dict[str, Any]) -> str:
    """
    Append one event to the log with hash chaining; returns the new hash.

    The function:
    - locks <log>.lock
    - reads prev hash
    - computes next hash over canonical event (excluding hash fields)
    - writes JSONL line containing prev_hash + hash
    - updates state file
    """
    log_path = Path(log_path)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    # We lock a dedicated lock file so it works even if log/state don't exist yet.
    with open(_lock_path(log_path), "a+", encoding="utf-8") as lockf:
        fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
        try:
            prev_hash = _read_last_hash_unlocked(log_path)

            # Never allow callers to inject their own chain fields.
            e = dict(event)
            e.pop("prev_hash", None)
            e.pop("hash", None)

            next_hash = chain_hash(prev_hash, e)

            stored = dict(e)
            stored["prev_hash"] = prev_hash
            stored["hash"] = next_hash

            with open(log_path, "ab") as f:
                f.write(canonical_json_bytes(stored) + b"\n")
                f.flush()
                os.fsync(f.fileno())

            _state_path(log_path).write_text(next_hash + "\n", encoding="utf-8")
            return next_hash
        finally:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)


def verify_log_chain(log_path: Path) -> bool:
    """
    Verify the hash chain of an audit log file.
    Returns True if valid (or absent), False otherwise.
    """
    log_path = Path(log_path)
    if not log_path.exists():
        return True

    prev = GENESIS_HASH
    with open(log_path, "rb") as f:
        for raw_line in f:
            raw_line = raw_line.strip()
            if not raw_line:
                continue
            try:
                obj = json.loads(raw_line.decode("utf-8"))
            except ValueError:
                return False

            if obj.get("prev_hash") != prev:
                return False

            # recompute from event excluding hash fields
            line_hash = obj.pop("hash", None)
            obj.pop("prev_hash", None)
            expect = chain_hash(prev, obj)
            if expect != line_hash:
                return False
            prev = line_hash

    return True


class AuditSink:
    """Write-only sink; callers never read their events back."""

    def __init__(self, store, *, log_path: Optional[str] = None, clock: Callable[[], float] = time.time):
        self._store = store
        self._log_path = Path(log_path) if log_path else None
        self._clock = clock

    async def emit(self, event: str, *, merchant_id: str, session_id: str, **fields: Any) -> None:
        e: Dict[str, Any] = {
            "ts": int(self._clock()),
            "event": event,
            "merchant_id": merchant_id,
            "session_id": session_id,
        }
        e.update({k: v for k, v in fields.items() if v is not None})

        await self._store.insert_audit(e)
        if self._log_path is not None:
            await asyncio.to_thread(append_event, self._log_path, e)

    async def analytics(self, type_: str, *, merchant_id: str, session_id: str) -> None:
        await self._store.insert_analytics(
            {
                "ts": int(self._clock()),
                "type": type_,
                "merchant_id": merchant_id,
                "session_id": session_id,
            }
        )
