from unittest.mock import Mock
from urllib.parse import parse_qs, urlparse

import pytest
import requests

from zklogin_bridge.provider import ExchangeFailed, NoTokenReturned


def test_authorization_url_carries_oauth_params(provider):
    url = provider.authorization_url(
        redirect_uri="https://bridge.example.com/login/google/callback",
        state="desktop:s1",
        nonce="n1",
    )
    parsed = urlparse(url)
    q = parse_qs(parsed.query)

    assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == "https://accounts.example.com/auth"
    assert q["client_id"] == ["client-123"]
    assert q["redirect_uri"] == ["https://bridge.example.com/login/google/callback"]
    assert q["response_type"] == ["code"]
    assert q["scope"] == ["openid email profile"]
    assert q["state"] == ["desktop:s1"]
    assert q["nonce"] == ["n1"]


def test_authorization_url_without_nonce(provider):
    q = parse_qs(urlparse(provider.authorization_url("https://cb", "s1")).query)
    assert "nonce" not in q


def test_exchange_posts_form_with_timeout(provider, respond_with_token):
    post = respond_with_token("h.p.s")

    body = provider.exchange_code("abc", "https://cb")

    assert body["id_token"] == "h.p.s"
    args, kwargs = post.call_args
    assert args[0] == "https://oauth.example.com/token"
    assert kwargs["data"] == {
        "code": "abc",
        "client_id": "client-123",
        "client_secret": "secret",
        "redirect_uri": "https://cb",
        "grant_type": "authorization_code",
    }
    assert kwargs["timeout"] == 10.0


def test_non_2xx_is_exchange_failure(provider, respond_with_token):
    respond_with_token("h.p.s", status=400)
    with pytest.raises(ExchangeFailed):
        provider.exchange_code("abc", "https://cb")


def test_missing_id_token(provider, respond_with_token):
    respond_with_token(None)
    with pytest.raises(NoTokenReturned):
        provider.exchange_code("abc", "https://cb")


def test_transport_error_is_exchange_failure(provider, http_session):
    http_session.post.side_effect = requests.Timeout("read timed out")
    with pytest.raises(ExchangeFailed):
        provider.exchange_code("abc", "https://cb")


def test_non_json_body_is_exchange_failure(provider, http_session):
    resp = Mock(status_code=200, text="<html>")
    resp.json.side_effect = ValueError("no json")
    http_session.post.return_value = resp
    with pytest.raises(ExchangeFailed):
        provider.exchange_code("abc", "https://cb")
