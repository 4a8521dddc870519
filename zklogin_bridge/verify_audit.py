"""
verify_audit.py: verify the login audit log (JSONL, SHA3-256 hash chain).

Checks, line by line:
  - valid JSON object
  - prev_hash links to the previous line's hash (genesis = 64 zeros)
  - hash == SHA3-256(prev_hash_bytes || canonical_json(event_without_chain_fields))
Optionally the state file must hold the last line's hash.

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
from typing import List, Optional

from .audit import GENESIS_HASH, chain_hash


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
        int(s, 16)
        return True
    except ValueError:
        return False


def verify_audit(log_path: Path, state_path: Optional[Path] = None) -> VerifyResult:
    if not log_path.exists():
        return VerifyResult(False, 0, None, f"Log not found: {log_path}")

    lines = 0
    prev = GENESIS_HASH

    with log_path.open("r", encoding="utf-8") as f:
        for lineno, raw in enumerate(f, start=1):
            raw = raw.strip()
            if not raw:
                continue
            lines += 1

            try:
                event = json.loads(raw)
            except ValueError as e:
                return VerifyResult(False, lines, None, f"{log_path}:{lineno}: invalid JSON: {e}")
            if not isinstance(event, dict):
                return VerifyResult(False, lines, None, f"{log_path}:{lineno}: JSON root must be object")

            claimed_prev = event.get("prev_hash")
            claimed = event.get("hash")
            if not _is_hex64(claimed_prev) or not _is_hex64(claimed):
                return VerifyResult(False, lines, None, f"{log_path}:{lineno}: missing or malformed chain fields")

            if claimed_prev != prev:
                return VerifyResult(
                    False, lines, None,
                    f"{log_path}:{lineno}: prev_hash mismatch: expected {prev} got {claimed_prev}",
                )

            recomputed = chain_hash(prev, event)
            if claimed != recomputed:
                return VerifyResult(
                    False, lines, None,
                    f"{log_path}:{lineno}: hash mismatch: expected {recomputed} got {claimed}",
                )
            prev = claimed

    last_hash = prev if lines else None

    if state_path is not None:
        if not state_path.exists():
            return VerifyResult(False, lines, last_hash, f"State file not found: {state_path}")
        state_val = state_path.read_text(encoding="utf-8").strip()
        if state_val != (last_hash or ""):
            return VerifyResult(False, lines, last_hash, f"State mismatch: state={state_val} log_last={last_hash}")

    return VerifyResult(True, lines, last_hash, "OK")


def main(argv: Optional[List[str]] = None) -> int:
    p = argparse.ArgumentParser(description="Verify zkLogin bridge audit log integrity.")
    p.add_argument("log", type=Path, help="Path to audit JSONL file (e.g. audit/login_audit.jsonl)")
    p.add_argument(
        "--state",
        type=Path,
        default=None,
        help="Optional state file containing last hash (e.g. audit/login_audit.state)",
    )
    args = p.parse_args(argv)

    res = verify_audit(args.log, state_path=args.state)

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
