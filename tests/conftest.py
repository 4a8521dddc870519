import base64
import json
import os
from unittest.mock import Mock

# keep module-level app construction free of disk side effects
os.environ.setdefault("SALT_STORE", "memory")
os.environ.setdefault("AUDIT_ENABLED", "false")

import pytest

from zklogin_bridge.bridge import ClientSurface, ClientType, OAuthBridge
from zklogin_bridge.provider import OAuthProvider
from zklogin_bridge.salts import InMemorySaltStore, SaltRegistry
from zklogin_bridge.storage import NonceCorrelator, TokenMailbox

SIGNATURE_SEG = "c2lnbmF0dXJlLWJ5dGVz"


def _seg(obj) -> str:
    raw = json.dumps(obj, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def make_jwt(claims, header=None, signature=SIGNATURE_SEG) -> str:
    header = header or {"alg": "RS256", "kid": "test-kid", "typ": "JWT"}
    return f"{_seg(header)}.{_seg(claims)}.{signature}"


def google_claims(sub="u1", **extra):
    claims = {
        "iss": "https://accounts.google.com",
        "azp": "client-123",
        "aud": "client-123",
        "sub": sub,
        "email": f"{sub}@example.com",
        "iat": 1700000000,
        "exp": 4102444800,
    }
    claims.update(extra)
    return claims


def token_response(id_token, status=200):
    resp = Mock()
    resp.status_code = status
    resp.json.return_value = {"access_token": "ya29.x", "id_token": id_token} if id_token else {"access_token": "ya29.x"}
    resp.text = json.dumps(resp.json.return_value)
    return resp


@pytest.fixture
def make_token():
    return make_jwt


@pytest.fixture
def claims_for():
    return google_claims


@pytest.fixture
def http_session():
    return Mock()


@pytest.fixture
def provider(http_session):
    return OAuthProvider(
        client_id="client-123",
        client_secret="secret",
        authorize_url="https://accounts.example.com/auth",
        token_url="https://oauth.example.com/token",
        scopes=["openid", "email", "profile"],
        timeout=10.0,
        session=http_session,
    )


@pytest.fixture
def respond_with_token(http_session):
    def _respond(id_token, status=200):
        http_session.post.return_value = token_response(id_token, status)
        return http_session.post
    return _respond


@pytest.fixture
def salt_store():
    return InMemorySaltStore()


@pytest.fixture
def bridge(provider, salt_store):
    return OAuthBridge(
        provider=provider,
        nonces=NonceCorrelator(ttl_seconds=600),
        mailbox=TokenMailbox(ttl_seconds=300),
        salts=SaltRegistry(salt_store),
        surfaces={
            ClientType.DESKTOP: ClientSurface("https://bridge.example.com/login/google/callback", "/success"),
            ClientType.WEB: ClientSurface("https://bridge.example.com/auth/google/callback", "https://game.example.com/done"),
        },
        failure_url="/failure",
    )
