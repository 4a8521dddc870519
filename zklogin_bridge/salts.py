"""
zklogin_bridge/salts.py

Per-subject salt registry + the persistent keyed store behind it.

The salt is an input to zkLogin address derivation, so it must never change
once committed for a subject: a new salt means a new address and a user
locked out of their assets.

Canonical representation: 32 lowercase hex chars (16 random bytes).
The prover wants the same bytes as standard Base64; see salt_to_base64().

Store backends:
  - SqliteSaltStore : durable, one file, INSERT OR IGNORE gives insert-if-absent
  - InMemorySaltStore : process-local, for tests and throwaway deployments

Both expose the three operations the bridge needs:
  find_salt(subject_id) -> salt | None
  insert_salt_if_absent(subject_id, salt) -> bool (False on conflict)
  update_profile_address(subject_id, address)
"""

from __future__ import annotations

import base64
import logging
import secrets
import sqlite3
import threading
import time
from typing import Dict, Optional, Protocol

logger = logging.getLogger(__name__)

SALT_BYTES = 16


class SaltStorageError(RuntimeError):
    """Persistence failure while reading or writing salts/profiles."""


# -----------------------------------------------------------------------------
# Encodings
# -----------------------------------------------------------------------------
def generate_salt() -> str:
    return secrets.token_hex(SALT_BYTES)


def salt_to_base64(salt_hex: str) -> str:
    """Re-encode a canonical hex salt as standard Base64 (prover wire format)."""
    raw = bytes.fromhex(salt_hex)
    return base64.b64encode(raw).decode("ascii")


# -----------------------------------------------------------------------------
# Store backends
# -----------------------------------------------------------------------------
class SaltStore(Protocol):
    def find_salt(self, subject_id: str) -> Optional[str]: ...

    def insert_salt_if_absent(self, subject_id: str, salt: str) -> bool: ...

    def update_profile_address(self, subject_id: str, address: str) -> None: ...


class SqliteSaltStore:
    def __init__(self, db_path: str):
        self.db_path = db_path
        self._schema_ready = False
        self._schema_lock = threading.Lock()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path, timeout=10)

    def _get_conn(self) -> sqlite3.Connection:
        # schema is created on first use, not at construction
        if not self._schema_ready:
            self.init_db()
        return self._connect()

    def init_db(self) -> None:
        with self._schema_lock:
            if self._schema_ready:
                return
            self._create_schema()
            self._schema_ready = True

    def _create_schema(self) -> None:
        try:
            conn = self._connect()
            try:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS salts (
                        subject_id TEXT PRIMARY KEY,
                        salt TEXT NOT NULL,
                        created_at INTEGER NOT NULL
                    );
                """)
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS profiles (
                        subject_id TEXT PRIMARY KEY,
                        zklogin_address TEXT,
                        last_login INTEGER
                    );
                """)
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise SaltStorageError(f"failed to initialise salt store: {e}") from e

    def find_salt(self, subject_id: str) -> Optional[str]:
        try:
            conn = self._get_conn()
            try:
                row = conn.execute(
                    "SELECT salt FROM salts WHERE subject_id=?;", (subject_id,)
                ).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise SaltStorageError(f"failed to query salt: {e}") from e
        return row[0] if row else None

    def insert_salt_if_absent(self, subject_id: str, salt: str) -> bool:
        try:
            conn = self._get_conn()
            try:
                cur = conn.execute(
                    "INSERT OR IGNORE INTO salts (subject_id, salt, created_at) VALUES (?, ?, ?);",
                    (subject_id, salt, int(time.time())),
                )
                conn.commit()
                return cur.rowcount == 1
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise SaltStorageError(f"failed to insert salt: {e}") from e

    def update_profile_address(self, subject_id: str, address: str) -> None:
        try:
            conn = self._get_conn()
            try:
                conn.execute(
                    """
                    INSERT INTO profiles (subject_id, zklogin_address, last_login)
                    VALUES (?, ?, ?)
                    ON CONFLICT(subject_id) DO UPDATE SET
                        zklogin_address=excluded.zklogin_address,
                        last_login=excluded.last_login;
                    """,
                    (subject_id, address, int(time.time())),
                )
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise SaltStorageError(f"failed to update profile: {e}") from e

    def get_profile_address(self, subject_id: str) -> Optional[str]:
        try:
            conn = self._get_conn()
            try:
                row = conn.execute(
                    "SELECT zklogin_address FROM profiles WHERE subject_id=?;", (subject_id,)
                ).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise SaltStorageError(f"failed to query profile: {e}") from e
        return row[0] if row else None


class InMemorySaltStore:
    def __init__(self):
        self._lock = threading.Lock()
        self.salts: Dict[str, str] = {}
        self.addresses: Dict[str, str] = {}

    def find_salt(self, subject_id: str) -> Optional[str]:
        with self._lock:
            return self.salts.get(subject_id)

    def insert_salt_if_absent(self, subject_id: str, salt: str) -> bool:
        with self._lock:
            if subject_id in self.salts:
                return False
            self.salts[subject_id] = salt
            return True

    def update_profile_address(self, subject_id: str, address: str) -> None:
        with self._lock:
            self.addresses[subject_id] = address

    def get_profile_address(self, subject_id: str) -> Optional[str]:
        with self._lock:
            return self.addresses.get(subject_id)


# -----------------------------------------------------------------------------
# Registry
# -----------------------------------------------------------------------------
class SaltRegistry:
    def __init__(self, store: SaltStore):
        self.store = store

    def get_or_create_salt(self, subject_id: str) -> str:
        """
        Return the committed salt for subject_id, creating it on first use.

        Concurrent first logins for one subject race on the conditional
        insert; the loser re-reads and returns the winner's salt, so every
        caller converges on the single stored value.
        """
        if not subject_id:
            raise ValueError("subject_id is required")

        salt = self.store.find_salt(subject_id)
        if salt is not None:
            logger.debug("salt retrieved for subject %s", subject_id)
            return salt

        candidate = generate_salt()
        if self.store.insert_salt_if_absent(subject_id, candidate):
            logger.info("new salt created for subject %s", subject_id)
            return candidate

        salt = self.store.find_salt(subject_id)
        if salt is None:
            raise SaltStorageError(f"salt for {subject_id} vanished after insert conflict")
        logger.info("salt insert lost race for subject %s, using committed salt", subject_id)
        return salt


def build_salt_store(kind: str, db_path: str) -> SaltStore:
    if kind == "memory":
        return InMemorySaltStore()
    return SqliteSaltStore(db_path)
