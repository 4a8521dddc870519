# zklogin_bridge/jwt_tokens.py
#
# -----------------------------------------------------------------------------
# Architectural notes
# -----------------------------------------------------------------------------
# This module is the *claims layer* for provider identity tokens (OIDC JWTs).
#
# Responsibilities:
#   - Decode JWT claims WITHOUT signature verification
#   - Reconcile a missing "nonce" claim (see reconcile_nonce)
#   - Cheap claim sanity checks (expiry, issuer) for the /auth/verify surface
#
# What this module is NOT:
#   - Not a JWT verifier. Nothing here checks a provider signature.
#
# TRUST BOUNDARY:
#   The server obtains the id_token itself, from the provider's token endpoint,
#   over TLS, authenticated with the client secret. That exchange is the
#   authentication signal. The nonce claim is defense-in-depth against replay
#   of a client-supplied anti-replay value. Some providers drop the nonce under
#   the authorization-code flow, so reconcile_nonce() writes the nonce the
#   client registered at login start into the payload and keeps the ORIGINAL
#   signature segment. The result no longer verifies against the provider key.
#   Treat every token that leaves this module as claims-only, unverified data.
#
# Wire format (RFC 7519 compact serialization):
#
#     <header_b64url>.<payload_b64url>.<signature_b64url>
# -----------------------------------------------------------------------------


import base64
import json
import logging
import time
from typing import Any, Dict, Iterable, Optional, Tuple

import jwt

logger = logging.getLogger(__name__)


class InvalidToken(ValueError):
    """Token is not a decodable JWT or lacks a required claim."""


class TokenExpired(InvalidToken):
    pass


class IssuerNotAllowed(InvalidToken):
    pass


# -----------------------------------------------------------------------------
# Base64 helpers
# -----------------------------------------------------------------------------
def b64url_encode(b: bytes) -> str:
    """URL-safe Base64 encoding WITHOUT padding (JWT segment encoding)."""
    return base64.urlsafe_b64encode(b).decode("ascii").rstrip("=")


def b64url_decode(s: str) -> bytes:
    """
    Decode URL-safe Base64 with optional missing padding.

    Padding is restored automatically to allow lenient decoding.
    """
    s = str(s).strip()
    s += "=" * (-len(s) % 4)
    return base64.urlsafe_b64decode(s.encode("ascii"))


# -----------------------------------------------------------------------------
# Structure
# -----------------------------------------------------------------------------
def split_token(token: str) -> Tuple[str, str, str]:
    """
    Split a compact JWT into its three segments.

    Format validation only; segments are returned verbatim.
    """
    parts = str(token or "").strip().split(".")
    if len(parts) != 3 or not parts[0] or not parts[1]:
        raise InvalidToken("bad token format")
    return parts[0], parts[1], parts[2]


def decode_unverified_claims(token: str) -> Dict[str, Any]:
    """
    Return the payload claims of a JWT. The signature is NOT checked.
    """
    try:
        claims = jwt.decode(str(token or "").strip(), options={"verify_signature": False})
    except jwt.PyJWTError as e:
        raise InvalidToken(f"undecodable token: {e}") from e
    if not isinstance(claims, dict):
        raise InvalidToken("token payload must be a JSON object")
    return claims


def subject_of(claims: Dict[str, Any]) -> str:
    sub = claims.get("sub")
    if not isinstance(sub, str) or not sub.strip():
        raise InvalidToken("missing 'sub' claim in JWT")
    return sub


def audience_of(claims: Dict[str, Any]) -> Optional[str]:
    aud = claims.get("aud")
    # OIDC allows a list; the first entry is the client the token was issued to
    if isinstance(aud, list):
        aud = aud[0] if aud else None
    return str(aud) if aud else None


# -----------------------------------------------------------------------------
# Nonce reconciliation
# -----------------------------------------------------------------------------
def _encode_payload(claims: Dict[str, Any]) -> str:
    payload_bytes = json.dumps(
        claims,
        separators=(",", ":"),   # no whitespace
        ensure_ascii=False,
    ).encode("utf-8")
    return b64url_encode(payload_bytes)


def reconcile_nonce(token: str, expected_nonce: Optional[str]) -> str:
    """
    Ensure the token's payload carries a nonce claim.

    - nonce already present      -> token returned unchanged
    - no expected_nonce supplied -> token returned unchanged
    - otherwise                  -> payload rewritten with nonce=expected_nonce,
                                    header and signature segments reused verbatim

    Claim order and every claim other than "nonce" are preserved. Idempotent:
    once a nonce is present a second call is a no-op.

    The returned token is claims-only: its signature does not cover the
    rewritten payload.
    """
    header_seg, payload_seg, sig_seg = split_token(token)

    try:
        claims = json.loads(b64url_decode(payload_seg).decode("utf-8"))
    except (ValueError, UnicodeDecodeError) as e:
        raise InvalidToken(f"undecodable payload: {e}") from e
    if not isinstance(claims, dict):
        raise InvalidToken("token payload must be a JSON object")

    present = claims.get("nonce")
    if present:
        if expected_nonce and present != expected_nonce:
            logger.warning("id_token nonce differs from the nonce registered at login start")
        return token

    if not expected_nonce:
        return token

    claims["nonce"] = expected_nonce
    return f"{header_seg}.{_encode_payload(claims)}.{sig_seg}"


# -----------------------------------------------------------------------------
# Claims sanity checks (still unverified!)
# -----------------------------------------------------------------------------
def check_claims(
    claims: Dict[str, Any],
    allowed_issuers: Iterable[str],
    now: Optional[int] = None,
) -> None:
    """
    Reject expired tokens and unexpected issuers.

    Raises TokenExpired / IssuerNotAllowed. This is a convenience filter for
    trusted clients, not a substitute for signature verification.
    """
    now = int(time.time()) if now is None else now

    exp = claims.get("exp")
    if exp is not None:
        try:
            exp = int(exp)
        except (TypeError, ValueError):
            raise InvalidToken("exp must be int")
        if exp < now:
            raise TokenExpired("Token expired")

    if claims.get("iss") not in set(allowed_issuers):
        raise IssuerNotAllowed("Invalid token issuer")
