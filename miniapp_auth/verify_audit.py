#!/usr/bin/env python3
"""
verify_audit.py: check the hash chain of the authentication audit log.

Walks auth_audit.jsonl line by line, recomputing

  hash = SHA3-256( bytes.fromhex(prev_hash) || canonical_json(event_without_hash_fields) )

and, when a state file is given (or found next to the log), checks that it
holds the last hash.

Exit codes:
- 0: OK
- 1: Verification failed
- 2: Log file missing or unreadable
"""

from __future__ import annotations

import argparse
import json
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .audit import GENESIS_HASH, STATE_NAME, chain_hash


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


def verify_audit(log_path: Path, state_path: Optional[Path] = None) -> VerifyResult:
    lines = 0
    prev = GENESIS_HASH

    with log_path.open("r", encoding="utf-8") as f:
        for lineno, raw in enumerate(f, start=1):
            raw = raw.strip()
            if not raw:
                continue
            lines += 1
            where = f"{log_path}:{lineno}"

            try:
                event = json.loads(raw)
            except json.JSONDecodeError as e:
                return VerifyResult(False, lines, prev, f"{where}: invalid JSON: {e}")
            if not isinstance(event, dict):
                return VerifyResult(False, lines, prev, f"{where}: JSON root must be an object")

            claimed_prev = event.pop("prev_hash", None)
            claimed_hash = event.pop("hash", None)
            if not _is_hex64(claimed_prev) or not _is_hex64(claimed_hash):
                return VerifyResult(False, lines, prev, f"{where}: missing or bad prev_hash/hash")

            if claimed_prev != prev:
                return VerifyResult(
                    False, lines, prev, f"{where}: prev_hash mismatch: expected {prev} got {claimed_prev}"
                )

            recomputed = chain_hash(prev, event)
            if recomputed != claimed_hash:
                return VerifyResult(
                    False, lines, prev, f"{where}: hash mismatch: expected {recomputed} got {claimed_hash}"
                )
            prev = claimed_hash

    if state_path is not None and state_path.exists():
        state_val = state_path.read_text(encoding="utf-8").strip().lower()
        if state_val != prev:
            return VerifyResult(False, lines, prev, f"State mismatch: state={state_val} log_last={prev}")

    return VerifyResult(True, lines, prev, "OK")


def main(argv: Optional[list[str]] = None) -> int:
    p = argparse.ArgumentParser(description="Verify the mini app auth audit log hash chain.")
    p.add_argument("log", type=Path, help="Path to audit JSONL file (e.g. audit/auth_audit.jsonl)")
    p.add_argument(
        "--state",
        type=Path,
        default=None,
        help=f"State file holding the chain head (default: {STATE_NAME} next to the log)",
    )
    args = p.parse_args(argv)

    state = args.state if args.state is not None else args.log.with_name(STATE_NAME)

    try:
        res = verify_audit(args.log, state_path=state)
    except OSError as e:
        print(f"FAIL: cannot read {args.log}: {e}", file=sys.stderr)
        return 2

    out = sys.stdout if res.ok else sys.stderr
    print("OK" if res.ok else "FAIL", file=out)
    if not res.ok:
        print(res.message, file=out)
    print(f"lines={res.lines}", file=out)
    if res.last_hash:
        print(f"last_hash={res.last_hash}", file=out)
    return 0 if res.ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
