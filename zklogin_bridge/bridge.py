# zklogin_bridge/bridge.py
#
# -----------------------------------------------------------------------------
# OAuth bridge: login start -> provider callback -> mailbox -> poll
# -----------------------------------------------------------------------------
# The client (e.g. an embedded game) cannot receive the provider redirect, so
# it invents a session id, opens the start URL in a browser, and polls for the
# result. The session id travels through the provider as the OAuth "state"
# parameter and is the only correlation key.
#
# Per-session states:
#
#   STARTED -> CALLBACK_RECEIVED -> EXCHANGED -> RECONCILED -> SALTED
#           -> DELIVERED -> CONSUMED
#
#   terminal failures: EXCHANGE_FAILED, NO_TOKEN_RETURNED
#
# Failures reach the end user only as a generic "failed" redirect; the
# provider's error detail goes to the log.
#
# One bridge serves several client types. The client type only selects the
# callback URI, the success landing page and the state prefix:
#
#   state = "<prefix><session_id>"     desktop -> "desktop:", web -> "web:"
#
# An unprefixed state decodes as a desktop session (legacy clients).
# -----------------------------------------------------------------------------

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple
from urllib.parse import urlencode

from .audit import NullAuditLog
from .jwt_tokens import InvalidToken, decode_unverified_claims, reconcile_nonce, subject_of
from .provider import ExchangeFailed, NoTokenReturned, OAuthProvider
from .salts import SaltRegistry, SaltStorageError
from .storage import LoginState, NonceCorrelator, TokenEnvelope, TokenMailbox

logger = logging.getLogger(__name__)


class MissingParameter(ValueError):
    pass


class ClientType(str, Enum):
    DESKTOP = "desktop"
    WEB = "web"

    @property
    def state_prefix(self) -> str:
        return f"{self.value}:"

    @classmethod
    def parse(cls, value: Optional[str]) -> "ClientType":
        v = (value or "").strip().lower()
        if not v:
            return cls.DESKTOP
        try:
            return cls(v)
        except ValueError:
            raise MissingParameter(f"unknown client type: {value}")


def encode_state(client_type: ClientType, session_id: str) -> str:
    return client_type.state_prefix + session_id


def decode_state(state: Optional[str]) -> Tuple[ClientType, str]:
    state = (state or "").strip()
    for ct in ClientType:
        if state.startswith(ct.state_prefix):
            return ct, state[len(ct.state_prefix):]
    return ClientType.DESKTOP, state


@dataclass(frozen=True)
class ClientSurface:
    redirect_uri: str
    success_url: str


@dataclass(frozen=True)
class StartResult:
    authorization_url: str
    state: str


@dataclass(frozen=True)
class CallbackResult:
    redirect_url: str
    state: LoginState
    session_id: str
    client_type: ClientType

    @property
    def ok(self) -> bool:
        return self.state == LoginState.DELIVERED


def _with_query(url: str, **params: str) -> str:
    sep = "&" if "?" in url else "?"
    return f"{url}{sep}{urlencode(params)}"


class OAuthBridge:
    def __init__(
        self,
        provider: OAuthProvider,
        nonces: NonceCorrelator,
        mailbox: TokenMailbox,
        salts: SaltRegistry,
        surfaces: Dict[ClientType, ClientSurface],
        failure_url: str,
        audit=None,
    ):
        self.provider = provider
        self.nonces = nonces
        self.mailbox = mailbox
        self.salts = salts
        self.surfaces = surfaces
        self.failure_url = failure_url
        self.audit = audit or NullAuditLog()

    # -------------------------------------------------------------------------
    # start
    # -------------------------------------------------------------------------
    def start(
        self,
        session_id: Optional[str],
        nonce: Optional[str],
        client_type: ClientType = ClientType.DESKTOP,
    ) -> StartResult:
        session_id = (session_id or "").strip()
        if not session_id:
            raise MissingParameter("sessionId parameter required")

        nonce = (nonce or "").strip() or None
        # a restart replaces whatever an earlier attempt registered
        if nonce:
            self.nonces.put(session_id, nonce)
        else:
            self.nonces.clear(session_id)

        state = encode_state(client_type, session_id)
        url = self.provider.authorization_url(
            redirect_uri=self.surfaces[client_type].redirect_uri,
            state=state,
            nonce=nonce,
        )

        logger.info("login started session=%s client=%s nonce=%s", session_id, client_type.value, bool(nonce))
        self.audit.record(
            "started", "login_started",
            session_id=session_id, client_type=client_type.value, has_nonce=bool(nonce),
        )
        return StartResult(authorization_url=url, state=state)

    # -------------------------------------------------------------------------
    # callback
    # -------------------------------------------------------------------------
    def _fail(self, session_id: str, client_type: ClientType, state: LoginState, reason: str) -> CallbackResult:
        if session_id:
            self.nonces.clear(session_id)
        self.audit.record(
            "failed", reason,
            session_id=session_id or None, client_type=client_type.value, login_state=state.value,
        )
        return CallbackResult(
            redirect_url=_with_query(self.failure_url, status="failed"),
            state=state,
            session_id=session_id,
            client_type=client_type,
        )

    def callback(self, code: Optional[str], state: Optional[str], error: Optional[str] = None) -> CallbackResult:
        """
        Handle the provider redirect.

        Returns where to send the end user. Provider failures never raise;
        SaltStorageError does (internal error, nothing deposited).
        """
        client_type, session_id = decode_state(state)

        if not session_id:
            logger.warning("callback without usable state")
            return self._fail("", client_type, LoginState.EXCHANGE_FAILED, "missing_state")

        if not code:
            logger.warning("callback without code session=%s provider_error=%s", session_id, (error or "")[:200])
            return self._fail(session_id, client_type, LoginState.EXCHANGE_FAILED, "missing_code")

        # CALLBACK_RECEIVED
        try:
            tokens = self.provider.exchange_code(code, self.surfaces[client_type].redirect_uri)
        except NoTokenReturned as e:
            logger.error("no id_token for session=%s: %s", session_id, e)
            return self._fail(session_id, client_type, LoginState.NO_TOKEN_RETURNED, "no_id_token")
        except ExchangeFailed as e:
            logger.error("code exchange failed for session=%s: %s", session_id, e)
            return self._fail(session_id, client_type, LoginState.EXCHANGE_FAILED, "exchange_failed")

        # EXCHANGED
        id_token = tokens["id_token"]
        try:
            claims = decode_unverified_claims(id_token)
            subject_id = subject_of(claims)
        except InvalidToken as e:
            logger.error("unusable id_token for session=%s: %s", session_id, e)
            return self._fail(session_id, client_type, LoginState.NO_TOKEN_RETURNED, "invalid_id_token")

        logger.info(
            "id_token received session=%s sub=%s iss=%s aud=%s nonce_present=%s",
            session_id, subject_id, claims.get("iss"), claims.get("aud"), bool(claims.get("nonce")),
        )

        # RECONCILED (claims-only from here on)
        expected_nonce = self.nonces.take_and_clear(session_id)
        reconciled = reconcile_nonce(id_token, expected_nonce)

        # SALTED
        try:
            salt = self.salts.get_or_create_salt(subject_id)
        except SaltStorageError:
            logger.exception("salt lookup failed session=%s sub=%s", session_id, subject_id)
            self.audit.record(
                "error", "salt_storage_error",
                session_id=session_id, subject_id=subject_id, client_type=client_type.value,
            )
            raise

        # DELIVERED
        self.mailbox.deposit(session_id, TokenEnvelope(identity_token=reconciled, salt=salt))
        self.nonces.clear(session_id)

        try:
            self.audit.record(
                "delivered", "login_completed",
                session_id=session_id, subject_id=subject_id, client_type=client_type.value,
                token=reconciled, nonce_injected=reconciled != id_token,
            )
        except OSError:
            # the envelope is already in the mailbox
            logger.exception("audit write failed after delivery session=%s", session_id)
        return CallbackResult(
            redirect_url=self.surfaces[client_type].success_url,
            state=LoginState.DELIVERED,
            session_id=session_id,
            client_type=client_type,
        )

    # -------------------------------------------------------------------------
    # poll
    # -------------------------------------------------------------------------
    def poll(self, session_id: Optional[str]) -> Optional[TokenEnvelope]:
        """
        Take the completed login for session_id, once.

        None means "not ready yet" (or already consumed). Clients should
        re-poll every 1-2 seconds until the mailbox TTL runs out.
        """
        session_id = (session_id or "").strip()
        if not session_id:
            raise MissingParameter("sessionId parameter required")

        envelope = self.mailbox.take_once(session_id)
        if envelope is not None:
            # CONSUMED
            self.audit.record("consumed", "envelope_delivered", session_id=session_id)
        return envelope
