"""
zklogin_bridge/audit.py

Tamper-evident login audit log.

One JSON object per line (JSONL), hash-chained:

  H_0 = "0"*64
  H_n = SHA3-256( bytes.fromhex(H_{n-1}) || canonical_json(event_without_hash_fields) )

Each line stores prev_hash and hash. Any modification, deletion, or
reordering of lines breaks the chain. The chain head is persisted in
<dir>/login_audit.state and appends are serialized with flock so several
workers can share one log.

Identity tokens are never written: only their SHA3-256 and length.
"""

from __future__ import annotations

import json
import os
import time
import hashlib
from pathlib import Path
from typing import Any, Dict, Optional

# Linux file lock (works in Docker/Linux)
import fcntl


GENESIS_HASH = "0" * 64  # 32 bytes hex

LOG_NAME = "login_audit.jsonl"
STATE_NAME = "login_audit.state"
LOCK_NAME = "login_audit.lock"


# -----------------------------------------------------------------------------
# Canonical JSON
# -----------------------------------------------------------------------------
def canonical_json_bytes(obj: Dict[str, Any]) -> bytes:
    """Sorted keys, no whitespace, UTF-8."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def sha3_256_hex(data: bytes) -> str:
    return hashlib.sha3_256(data).hexdigest()


def chain_hash(prev_hash: str, event: Dict[str, Any]) -> str:
    e = dict(event)
    e.pop("prev_hash", None)
    e.pop("hash", None)
    return sha3_256_hex(bytes.fromhex(prev_hash) + canonical_json_bytes(e))


# -----------------------------------------------------------------------------
# Event helpers
# -----------------------------------------------------------------------------
def build_common(
    *,
    session_id: Optional[str] = None,
    subject_id: Optional[str] = None,
    client_type: Optional[str] = None,
    token: Optional[str] = None,
    request_ip: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Build common audit fields. Keep this "boring" and stable.
    """
    out: Dict[str, Any] = {"ts": int(time.time())}

    if session_id:
        out["session_id"] = session_id
    if subject_id:
        out["subject_id"] = subject_id
    if client_type:
        out["client_type"] = client_type
    if request_ip:
        out["request_ip"] = request_ip
    if user_agent:
        out["user_agent"] = user_agent[:200]

    if token is not None:
        raw = token.encode("utf-8")
        out["token_len"] = len(raw)
        out["token_sha3_256"] = sha3_256_hex(raw)

    return out


class AuditLog:
    def __init__(self, directory: str | Path):
        self.directory = Path(directory)
        self.log_path = self.directory / LOG_NAME
        self.state_path = self.directory / STATE_NAME
        self.lock_path = self.directory / LOCK_NAME

    def _read_last_hash_unlocked(self) -> str:
        """Caller must hold the lock. GENESIS_HASH if state missing/garbled."""
        try:
            if not self.state_path.exists():
                return GENESIS_HASH
            s = self.state_path.read_text(encoding="utf-8").strip()
            if len(s) != 64:
                return GENESIS_HASH
            bytes.fromhex(s)
            return s.lower()
        except (OSError, ValueError):
            return GENESIS_HASH

    def append_event(self, event: Dict[str, Any]) -> str:
        """
        Append one event with hash chaining. Returns the new chain head.
        """
        self.directory.mkdir(parents=True, exist_ok=True)

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

    def record(self, result: str, reason: str, **fields: Any) -> None:
        extra = {k: v for k, v in fields.items() if k not in _COMMON_KEYS}
        common = build_common(**{k: v for k, v in fields.items() if k in _COMMON_KEYS})
        self.append_event({**common, **extra, "result": result, "reason": reason})

    def verify_chain(self) -> bool:
        return verify_log_chain(self.log_path)


_COMMON_KEYS = {"session_id", "subject_id", "client_type", "token", "request_ip", "user_agent"}


class NullAuditLog:
    """Drop-in for deployments with AUDIT_ENABLED=false."""

    def record(self, result: str, reason: str, **fields: Any) -> None:
        return None


# -----------------------------------------------------------------------------
# Verification
# -----------------------------------------------------------------------------
def verify_log_chain(path: Path) -> bool:
    """
    Verify the hash chain of an audit log file.
    Returns True if valid (or absent), False otherwise.
    """
    if not path.exists():
        return True

    prev = GENESIS_HASH
    try:
        with open(path, "rb") as f:
            for raw_line in f:
                raw_line = raw_line.strip()
                if not raw_line:
                    continue
                obj = json.loads(raw_line.decode("utf-8"))

                if obj.get("prev_hash") != prev:
                    return False
                if chain_hash(prev, obj) != obj.get("hash"):
                    return False

                prev = obj["hash"]

        return True
    except (OSError, ValueError, UnicodeDecodeError, AttributeError):
        return False
