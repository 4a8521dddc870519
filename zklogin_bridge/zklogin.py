"""
zklogin_bridge/zklogin.py

zkLogin proof broker.

Given a (claims-only) identity token from the bridge plus the client's
ephemeral key material, this module:

  1) resolves the subject's salt (same registry as the bridge, so the same
     subject always derives the same address)
  2) derives the zkLogin address from (iss, sub, aud, salt)
  3) asks the external proving service for a proof
  4) records the address on the subject's profile

Salt encodings:
  - storage / client facing : hex (what the bridge handed out at poll time)
  - prover wire format      : standard Base64 of the same 16 bytes

The proof is opaque here; we only care whether we got one.

Prover modes:
  - live    : HTTPS POST to PROVER_URL
  - sandbox : deterministic fake proof, every response carries "sandbox": true
"""

import hashlib
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import requests

from .audit import NullAuditLog
from .bridge import MissingParameter
from .jwt_tokens import audience_of, decode_unverified_claims, subject_of
from .salts import SaltRegistry, SaltStorageError, SaltStore, salt_to_base64

logger = logging.getLogger(__name__)

# Signature scheme flag Sui assigns to zkLogin authenticators
ZKLOGIN_FLAG = 0x05
KEY_CLAIM_NAME = "sub"


class ProverError(RuntimeError):
    def __init__(self, message: str, status: Optional[int] = None, details: Any = None):
        super().__init__(message)
        self.status = status
        self.details = details


# -----------------------------------------------------------------------------
# Address derivation
# -----------------------------------------------------------------------------
def address_seed(sub: str, aud: str, salt_hex: str, key_claim_name: str = KEY_CLAIM_NAME) -> bytes:
    """
    32-byte seed binding the key claim, its value, the audience and the salt.

    Length-prefixed fields so ("ab","c") and ("a","bc") never collide.
    """
    h = hashlib.blake2b(digest_size=32)
    for part in (key_claim_name, sub, aud):
        raw = part.encode("utf-8")
        h.update(len(raw).to_bytes(2, "big"))
        h.update(raw)
    h.update(bytes.fromhex(salt_hex))
    return h.digest()


def derive_zklogin_address(iss: str, sub: str, aud: str, salt_hex: str) -> str:
    """
    address = blake2b256( flag || len(iss) as u16 BE || iss || address_seed )

    Deterministic and salt-sensitive. Deployments that need on-chain parity
    with Sui's Poseidon-based seed pass their own derive_address callable to
    ProofBroker.
    """
    iss_bytes = iss.encode("utf-8")
    h = hashlib.blake2b(digest_size=32)
    h.update(bytes([ZKLOGIN_FLAG]))
    h.update(len(iss_bytes).to_bytes(2, "big"))
    h.update(iss_bytes)
    h.update(address_seed(sub, aud, salt_hex))
    return "0x" + h.hexdigest()


# -----------------------------------------------------------------------------
# Provers
# -----------------------------------------------------------------------------
class ProverClient:
    sandbox = False

    def __init__(self, url: str, timeout: float = 60.0, session: Optional[requests.Session] = None):
        self.url = url
        self.timeout = timeout
        self.http = session or requests.Session()

    def prove(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            resp = self.http.post(self.url, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise ProverError("prover unreachable", details=str(e)[:200]) from e

        if not 200 <= resp.status_code < 300:
            try:
                details = resp.json()
            except ValueError:
                details = resp.text[:500]
            raise ProverError("prover rejected request", status=resp.status_code, details=details)

        try:
            proof = resp.json()
        except ValueError as e:
            raise ProverError("prover returned non-JSON body", status=resp.status_code) from e

        if not proof:
            raise ProverError("prover returned an empty proof", status=resp.status_code)
        return proof


class SandboxProver:
    """Fake prover for local development. Never use with real funds."""

    sandbox = True

    def prove(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        digest = hashlib.sha3_256(
            "|".join(str(payload.get(k, "")) for k in sorted(payload)).encode("utf-8")
        ).hexdigest()
        return {
            "sandbox": True,
            "proofPoints": {"a": [digest[:32]], "b": [[digest[32:]]], "c": [digest[::-1][:32]]},
            "issBase64Details": {"value": "", "indexMod4": 0},
            "headerBase64": "",
        }


def build_prover(mode: str, url: str, timeout: float):
    if mode == "sandbox":
        logger.warning("PROVER_MODE=sandbox: proofs are fake and labeled as such")
        return SandboxProver()
    return ProverClient(url, timeout=timeout)


# -----------------------------------------------------------------------------
# Broker
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class ProofResult:
    proof: Dict[str, Any]
    address: str
    salt: str
    sandbox: bool = False

    def public_view(self):
        out = {"proof": self.proof, "address": self.address, "salt": self.salt}
        if self.sandbox:
            out["sandbox"] = True
        return out


class ProofBroker:
    def __init__(
        self,
        salts: SaltRegistry,
        profiles: SaltStore,
        prover,
        derive_address: Callable[[str, str, str, str], str] = derive_zklogin_address,
        audit=None,
    ):
        self.salts = salts
        self.profiles = profiles
        self.prover = prover
        self.derive_address = derive_address
        self.audit = audit or NullAuditLog()

    def derive_and_prove(
        self,
        token: Optional[str],
        randomness: Optional[str],
        audience_key: Optional[str],
        ephemeral_public_key: Optional[str],
        max_epoch: Optional[int],
    ) -> ProofResult:
        """
        token is claims-only (possibly nonce-reconciled); nothing here treats
        it as signature-verified.
        """
        if not token:
            raise MissingParameter("credential required")
        if not ephemeral_public_key or randomness in (None, "") or max_epoch is None:
            raise MissingParameter("ephemeralPublicKey, randomness and maxEpoch are required")

        claims = decode_unverified_claims(token)
        sub = subject_of(claims)
        iss = str(claims.get("iss") or "")
        aud = audience_of(claims) or (audience_key or "")

        salt = self.salts.get_or_create_salt(sub)
        address = self.derive_address(iss, sub, aud, salt)
        logger.info("derived zkLogin address for sub=%s: %s", sub, address)

        payload = {
            "jwt": token,
            "extendedEphemeralPublicKey": ephemeral_public_key,
            "maxEpoch": max_epoch,
            "jwtRandomness": randomness,
            "salt": salt_to_base64(salt),
            "keyClaimName": KEY_CLAIM_NAME,
        }

        try:
            proof = self.prover.prove(payload)
        except ProverError as e:
            logger.error("prover failed for sub=%s status=%s details=%s", sub, e.status, str(e.details)[:200])
            self.audit.record(
                "failed", "prover_error",
                subject_id=sub, token=token, upstream_status=e.status,
            )
            raise

        try:
            self.profiles.update_profile_address(sub, address)
        except SaltStorageError:
            # the proof is already paid for; the profile catches up next login
            logger.exception("failed to record zkLogin address for sub=%s", sub)

        sandbox = bool(getattr(self.prover, "sandbox", False))
        try:
            self.audit.record(
                "issued", "proof_issued",
                subject_id=sub, token=token, address=address, sandbox=sandbox,
            )
        except OSError:
            logger.exception("audit write failed after proof for sub=%s", sub)
        return ProofResult(proof=proof, address=address, salt=salt, sandbox=sandbox)
