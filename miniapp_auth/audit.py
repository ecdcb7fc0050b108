"""
miniapp_auth/audit.py

Tamper-evident audit log of authentication events.

One JSON object per line (JSONL), hash-chained:

  H_0 = "0"*64
  H_n = SHA3-256( bytes.fromhex(H_{n-1}) || canonical_json(event_without_hash_fields) )

Each line stores:
  - prev_hash: hex string (64 chars)
  - hash:      hex string (64 chars)

Properties:
- Any modification, deletion, or reordering of log lines breaks the chain.
- Chain head is persisted in auth_audit.state next to the log.
- Writers serialize on auth_audit.lock with flock.
- Raw launch data is never stored, only its length and SHA3-256.
"""

from __future__ import annotations

import hashlib
import json
import os
import time
from pathlib import Path
from typing import Any, Dict, Optional

# Linux file lock (works in Docker/Linux)
import fcntl

GENESIS_HASH = "0" * 64  # 32 bytes hex

LOG_NAME = "auth_audit.jsonl"
STATE_NAME = "auth_audit.state"
LOCK_NAME = "auth_audit.lock"


# -----------------------------------------------------------------------------
# Canonical JSON
# -----------------------------------------------------------------------------
def canonical_json_bytes(obj: Dict[str, Any]) -> bytes:
    """sorted keys, no whitespace, UTF-8"""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def sha3_256_hex(data: bytes) -> str:
    return hashlib.sha3_256(data).hexdigest()


def chain_hash(prev_hash: str, event: Dict[str, Any]) -> str:
    return sha3_256_hex(bytes.fromhex(prev_hash) + canonical_json_bytes(event))


# -----------------------------------------------------------------------------
# Event helpers used by main.py
# -----------------------------------------------------------------------------
def build_common(
    *,
    event: str,
    user_id: Optional[int] = None,
    init_data: Optional[str] = None,
    request_ip: Optional[str] = None,
    user_agent: Optional[str] = None,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    """
    Common audit fields. Keep this "boring" and stable.
    """
    out: Dict[str, Any] = {
        "ts": int(time.time() if now is None else now),
        "event": event,
    }

    if user_id is not None:
        out["user_id"] = user_id
    if request_ip:
        out["request_ip"] = request_ip
    if user_agent:
        out["user_agent"] = user_agent[:200]

    if init_data is not None:
        raw = init_data.encode("utf-8")
        out["init_data_len"] = len(raw)
        out["init_data_sha3_256"] = sha3_256_hex(raw)

    return out


class AuditLog:
    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self.log_path = self.directory / LOG_NAME
        self.state_path = self.directory / STATE_NAME
        self.lock_path = self.directory / LOCK_NAME

    def _read_last_hash_unlocked(self) -> str:
        """
        Read chain head from the state file. Caller must hold lock.
        Returns GENESIS_HASH if state missing or unreadable.
        """
        if not self.state_path.exists():
            return GENESIS_HASH
        s = self.state_path.read_text(encoding="utf-8").strip().lower()
        if len(s) != 64:
            return GENESIS_HASH
        try:
            bytes.fromhex(s)
        except ValueError:
            return GENESIS_HASH
        return s

    def append(self, event: Dict[str, Any]) -> str:
        """
        Append one event with hash chaining; returns the new chain head.
        """
        self.directory.mkdir(parents=True, exist_ok=True)

        # Lock a dedicated file so it works even if log/state don't exist yet.
        with open(self.lock_path, "a+", encoding="utf-8") as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                prev_hash = self._read_last_hash_unlocked()

                # Never allow callers to inject their own chain fields.
                e = dict(event)
                e.pop("prev_hash", None)
                e.pop("hash", None)

                next_hash = chain_hash(prev_hash, e)

                stored = dict(e)
                stored["prev_hash"] = prev_hash
                stored["hash"] = next_hash

                with open(self.log_path, "ab") as f:
                    f.write(canonical_json_bytes(stored) + b"\n")
                    f.flush()
                    os.fsync(f.fileno())

                self.state_path.write_text(next_hash + "\n", encoding="utf-8")
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

        return next_hash


class NullAuditLog:
    """Stand-in when AUDIT_ENABLED is off."""

    def append(self, event: Dict[str, Any]) -> str:
        return GENESIS_HASH
