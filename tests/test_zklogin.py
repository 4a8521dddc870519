import base64
import hashlib
from unittest.mock import Mock

import pytest
import requests

from zklogin_bridge.bridge import MissingParameter
from zklogin_bridge.jwt_tokens import InvalidToken, reconcile_nonce
from zklogin_bridge.salts import SaltRegistry, SaltStorageError
from zklogin_bridge.zklogin import (
    ProofBroker,
    ProverClient,
    ProverError,
    SandboxProver,
    address_seed,
    build_prover,
    derive_zklogin_address,
)

PROOF = {"proofPoints": {"a": ["1"], "b": [["2"]], "c": ["3"]}, "issBase64Details": {}, "headerBase64": "e30"}


@pytest.fixture
def prover():
    p = Mock()
    p.sandbox = False
    p.prove.return_value = PROOF
    return p


@pytest.fixture
def broker(salt_store, prover):
    return ProofBroker(salts=SaltRegistry(salt_store), profiles=salt_store, prover=prover)


def _prove(broker, token, **overrides):
    kwargs = dict(
        token=token,
        randomness="1234567890",
        audience_key="client-123",
        ephemeral_public_key="84029355920633174015103288781128426107680789454168570548782290541079926444544",
        max_epoch=10,
    )
    kwargs.update(overrides)
    return broker.derive_and_prove(**kwargs)


def test_address_is_deterministic_and_salt_sensitive():
    salt_a = "00" * 16
    salt_b = "00" * 15 + "01"
    iss = "https://accounts.google.com"

    a1 = derive_zklogin_address(iss, "u1", "client-123", salt_a)
    a2 = derive_zklogin_address(iss, "u1", "client-123", salt_a)

    assert a1 == a2
    assert a1.startswith("0x") and len(a1) == 66
    assert derive_zklogin_address(iss, "u1", "client-123", salt_b) != a1
    assert derive_zklogin_address(iss, "u2", "client-123", salt_a) != a1
    assert derive_zklogin_address(iss, "u1", "client-456", salt_a) != a1
    assert derive_zklogin_address("https://other.example", "u1", "client-123", salt_a) != a1


def test_same_subject_twice_same_address(broker, make_token, claims_for):
    token = reconcile_nonce(make_token(claims_for("u1")), "n1")

    first = _prove(broker, token)
    second = _prove(broker, token)

    assert first.address == second.address
    assert first.salt == second.salt
    assert first.proof == PROOF


def test_prover_receives_base64_salt_and_hex_is_returned(broker, prover, make_token, claims_for):
    token = make_token(claims_for("u1", nonce="n1"))

    result = _prove(broker, token)

    payload = prover.prove.call_args.args[0]
    assert base64.b64decode(payload["salt"]) == bytes.fromhex(result.salt)
    assert payload["jwt"] == token
    assert payload["maxEpoch"] == 10
    assert payload["jwtRandomness"] == "1234567890"
    assert payload["keyClaimName"] == "sub"
    assert payload["extendedEphemeralPublicKey"].startswith("8402")
    assert result.public_view() == {"proof": PROOF, "address": result.address, "salt": result.salt}


def test_broker_reuses_bridge_salt(broker, salt_store, make_token, claims_for):
    bridge_salt = SaltRegistry(salt_store).get_or_create_salt("u1")
    assert _prove(broker, make_token(claims_for("u1"))).salt == bridge_salt


def test_address_recorded_on_profile(broker, salt_store, make_token, claims_for):
    result = _prove(broker, make_token(claims_for("u1")))
    assert salt_store.get_profile_address("u1") == result.address


def test_profile_write_failure_does_not_lose_proof(broker, salt_store, make_token, claims_for, monkeypatch):
    def boom(subject_id, address):
        raise SaltStorageError("db down")

    monkeypatch.setattr(salt_store, "update_profile_address", boom)
    assert _prove(broker, make_token(claims_for("u1"))).proof == PROOF


def test_prover_error_propagates_and_nothing_recorded(broker, prover, salt_store, make_token, claims_for):
    prover.prove.side_effect = ProverError("prover rejected request", status=400, details={"error": "bad jwt"})

    with pytest.raises(ProverError) as exc:
        _prove(broker, make_token(claims_for("u1")))

    assert exc.value.status == 400
    assert exc.value.details == {"error": "bad jwt"}
    assert salt_store.get_profile_address("u1") is None


@pytest.mark.parametrize("missing", ["token", "ephemeral_public_key", "randomness", "max_epoch"])
def test_missing_inputs_make_no_external_calls(broker, prover, make_token, claims_for, missing):
    kwargs = {"token": make_token(claims_for("u1"))}
    kwargs[missing] = None
    with pytest.raises(MissingParameter):
        _prove(broker, **kwargs)
    prover.prove.assert_not_called()


def test_token_without_sub_rejected(broker, prover, make_token):
    with pytest.raises(InvalidToken):
        _prove(broker, make_token({"iss": "https://accounts.google.com"}))
    prover.prove.assert_not_called()


def test_sandbox_results_are_labeled(salt_store, make_token, claims_for):
    broker = ProofBroker(salts=SaltRegistry(salt_store), profiles=salt_store, prover=SandboxProver())

    result = _prove(broker, make_token(claims_for("u1")))

    assert result.sandbox is True
    assert result.proof["sandbox"] is True
    assert result.public_view()["sandbox"] is True


def test_build_prover_modes():
    assert isinstance(build_prover("sandbox", "https://p", 60), SandboxProver)
    live = build_prover("live", "https://p", 45)
    assert isinstance(live, ProverClient)
    assert live.timeout == 45


def _response(status, body):
    resp = Mock(status_code=status, text=str(body))
    resp.json.return_value = body
    return resp


def test_prover_client_success():
    session = Mock()
    session.post.return_value = _response(200, PROOF)
    client = ProverClient("https://prover.example.com/v1", timeout=60, session=session)

    assert client.prove({"jwt": "x"}) == PROOF
    args, kwargs = session.post.call_args
    assert args[0] == "https://prover.example.com/v1"
    assert kwargs["json"] == {"jwt": "x"}
    assert kwargs["timeout"] == 60


def test_prover_client_passes_upstream_error_through():
    session = Mock()
    session.post.return_value = _response(400, {"error": "Invalid JWT"})
    client = ProverClient("https://prover.example.com/v1", session=session)

    with pytest.raises(ProverError) as exc:
        client.prove({"jwt": "x"})
    assert exc.value.status == 400
    assert exc.value.details == {"error": "Invalid JWT"}


def test_prover_client_transport_error():
    session = Mock()
    session.post.side_effect = requests.ConnectionError("refused")
    client = ProverClient("https://prover.example.com/v1", session=session)

    with pytest.raises(ProverError) as exc:
        client.prove({"jwt": "x"})
    assert exc.value.status is None
    assert "refused" in exc.value.details


def test_audit_failure_after_proof_still_returns_it(salt_store, prover, make_token, claims_for):
    def record(result, reason, **fields):
        if result == "issued":
            raise OSError("audit disk full")

    audit = Mock()
    audit.record.side_effect = record
    broker = ProofBroker(salts=SaltRegistry(salt_store), profiles=salt_store, prover=prover, audit=audit)

    result = _prove(broker, make_token(claims_for("u1")))

    assert result.proof == PROOF
    assert salt_store.get_profile_address("u1") == result.address
    prover.prove.assert_called_once()


def test_issuer_length_prefix_is_two_bytes():
    salt = "00" * 16
    iss = "https://" + "i" * 300

    h = hashlib.blake2b(digest_size=32)
    h.update(bytes([0x05]))
    h.update(len(iss).to_bytes(2, "big"))
    h.update(iss.encode("utf-8"))
    h.update(address_seed("u1", "aud", salt))

    assert derive_zklogin_address(iss, "u1", "aud", salt) == "0x" + h.hexdigest()
