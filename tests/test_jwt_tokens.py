import json

import pytest

from zklogin_bridge.jwt_tokens import (
    InvalidToken,
    IssuerNotAllowed,
    TokenExpired,
    audience_of,
    b64url_decode,
    check_claims,
    decode_unverified_claims,
    reconcile_nonce,
    split_token,
    subject_of,
)

GOOGLE = {"https://accounts.google.com", "accounts.google.com"}


def _payload(token):
    return json.loads(b64url_decode(split_token(token)[1]))


def test_reconcile_injects_missing_nonce(make_token, claims_for):
    token = make_token(claims_for("u1"))

    out = reconcile_nonce(token, "n1")

    assert out != token
    assert decode_unverified_claims(out)["nonce"] == "n1"


def test_reconcile_keeps_header_and_signature_segments(make_token, claims_for):
    token = make_token(claims_for("u1"))
    header, _, sig = split_token(token)

    out_header, _, out_sig = split_token(reconcile_nonce(token, "n1"))

    assert out_header == header
    assert out_sig == sig


def test_reconcile_preserves_other_claims_and_order(make_token, claims_for):
    claims = claims_for("u1", name="Ana", picture="https://x/y.png")
    out = _payload(reconcile_nonce(make_token(claims), "n1"))

    assert list(out)[:-1] == list(claims)
    assert {k: v for k, v in out.items() if k != "nonce"} == claims


def test_reconcile_is_idempotent(make_token, claims_for):
    once = reconcile_nonce(make_token(claims_for("u1")), "n1")
    assert reconcile_nonce(once, "n1") == once


def test_existing_nonce_is_left_alone(make_token, claims_for):
    token = make_token(claims_for("u1", nonce="from-provider"))
    assert reconcile_nonce(token, "n1") == token
    assert reconcile_nonce(token, None) == token


def test_no_expected_nonce_leaves_token_unchanged(make_token, claims_for):
    token = make_token(claims_for("u1"))
    assert reconcile_nonce(token, None) == token
    assert reconcile_nonce(token, "") == token


@pytest.mark.parametrize("bad", ["", "abc", "a.b", "a.b.c.d", ".x.y"])
def test_malformed_tokens_rejected(bad):
    with pytest.raises(InvalidToken):
        reconcile_nonce(bad, "n1")


def test_non_object_payload_rejected(make_token):
    with pytest.raises(InvalidToken):
        reconcile_nonce(make_token(["not", "an", "object"]), "n1")


def test_decode_garbage_raises_invalid_token():
    with pytest.raises(InvalidToken):
        decode_unverified_claims("not-a-jwt")


def test_subject_required(make_token):
    claims = decode_unverified_claims(make_token({"iss": "https://accounts.google.com"}))
    with pytest.raises(InvalidToken):
        subject_of(claims)


def test_audience_list_uses_first_entry():
    assert audience_of({"aud": ["client-a", "client-b"]}) == "client-a"
    assert audience_of({"aud": "client-a"}) == "client-a"
    assert audience_of({}) is None


def test_check_claims_accepts_fresh_google_token(claims_for):
    check_claims(claims_for("u1"), GOOGLE, now=1700000100)


def test_check_claims_rejects_expired(claims_for):
    with pytest.raises(TokenExpired):
        check_claims(claims_for("u1", exp=1700000000), GOOGLE, now=1700000100)


def test_check_claims_rejects_foreign_issuer(claims_for):
    with pytest.raises(IssuerNotAllowed):
        check_claims(claims_for("u1", iss="https://evil.example.com"), GOOGLE, now=1700000100)
