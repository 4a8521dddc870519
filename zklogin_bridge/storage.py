# zklogin_bridge/storage.py
#
# Process-local, non-durable state for in-flight logins.
#
# Both maps are keyed by the client-generated session id and are
# delete-on-read. They are NOT shared across Uvicorn workers or nodes: a login
# whose callback lands on another worker than its poll simply stalls and the
# client restarts it after its poll timeout.
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Generic, Optional, Tuple, TypeVar


class LoginState(str, Enum):
    STARTED = "started"
    CALLBACK_RECEIVED = "callback_received"
    EXCHANGED = "exchanged"
    RECONCILED = "reconciled"
    SALTED = "salted"
    DELIVERED = "delivered"
    CONSUMED = "consumed"

    # terminal failures
    EXCHANGE_FAILED = "exchange_failed"
    NO_TOKEN_RETURNED = "no_token_returned"


@dataclass(frozen=True)
class TokenEnvelope:
    """
    Completed login handed to the polling client.

    identity_token is a claims carrier only: after nonce reconciliation its
    signature segment may no longer match its payload. Never verify it as a
    provider-signed token.
    """

    identity_token: str = field(repr=False)
    salt: str = field(repr=False)

    def public_view(self):
        return {"identityToken": self.identity_token, "salt": self.salt}


V = TypeVar("V")


class EphemeralMap(Generic[V]):
    """
    Lock-guarded dict with per-entry TTL and take-once reads.

    A single lock makes put/take for the same key behave as if serialized.
    Critical sections are dict operations only, so unrelated keys never wait
    on I/O.
    """

    def __init__(self, ttl_seconds: int, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, Tuple[V, float]] = {}

    def put(self, key: str, value: V) -> None:
        now = self._clock()
        with self._lock:
            self._prune_unlocked(now)
            # last write wins
            self._entries[key] = (value, now + self.ttl_seconds)

    def take(self, key: str) -> Optional[V]:
        now = self._clock()
        with self._lock:
            entry = self._entries.pop(key, None)
        if entry is None:
            return None
        value, expires_at = entry
        if now >= expires_at:
            return None
        return value

    def discard(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def prune(self) -> int:
        """Drop expired entries. Returns how many were removed."""
        with self._lock:
            return self._prune_unlocked(self._clock())

    def _prune_unlocked(self, now: float) -> int:
        dead = [k for k, (_, exp) in self._entries.items() if now >= exp]
        for k in dead:
            del self._entries[k]
        return len(dead)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
        return entry is not None and self._clock() < entry[1]


class NonceCorrelator:
    """session id -> client-chosen nonce, between login start and callback."""

    def __init__(self, ttl_seconds: int = 600, clock: Callable[[], float] = time.monotonic):
        self._map: EphemeralMap[str] = EphemeralMap(ttl_seconds, clock)

    def put(self, session_id: str, nonce: str) -> None:
        self._map.put(session_id, nonce)

    def take_and_clear(self, session_id: str) -> Optional[str]:
        return self._map.take(session_id)

    def clear(self, session_id: str) -> None:
        self._map.discard(session_id)

    def prune(self) -> int:
        return self._map.prune()

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._map

    def __len__(self) -> int:
        return len(self._map)


class TokenMailbox:
    """session id -> completed TokenEnvelope, delivered at most once."""

    def __init__(self, ttl_seconds: int = 300, clock: Callable[[], float] = time.monotonic):
        self._map: EphemeralMap[TokenEnvelope] = EphemeralMap(ttl_seconds, clock)

    def deposit(self, session_id: str, envelope: TokenEnvelope) -> None:
        # a second completion for the same login replaces the first
        self._map.put(session_id, envelope)

    def take_once(self, session_id: str) -> Optional[TokenEnvelope]:
        return self._map.take(session_id)

    def prune(self) -> int:
        return self._map.prune()

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._map

    def __len__(self) -> int:
        return len(self._map)
