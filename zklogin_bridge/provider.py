"""
zklogin_bridge/provider.py

Identity-provider collaborator (OAuth2 authorization-code flow).

Two touch points:
  1) browser redirect to the authorization endpoint
  2) server-to-server POST to the token endpoint (form-encoded), authenticated
     with the client secret, returning JSON with an "id_token"

Failures are raised, never retried here. Error detail is kept for logs; the
bridge decides what the end user sees.
"""

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import requests

logger = logging.getLogger(__name__)


class ProviderError(RuntimeError):
    pass


class ExchangeFailed(ProviderError):
    """Token endpoint unreachable, timed out, or returned non-2xx / non-JSON."""


class NoTokenReturned(ProviderError):
    """Token endpoint answered 2xx but without an id_token."""


class OAuthProvider:
    def __init__(
        self,
        client_id: str,
        client_secret: str,
        authorize_url: str,
        token_url: str,
        scopes: List[str],
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.authorize_url = authorize_url
        self.token_url = token_url
        self.scopes = scopes
        self.timeout = timeout
        self.http = session or requests.Session()

    def authorization_url(self, redirect_uri: str, state: str, nonce: Optional[str] = None) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "state": state,
        }
        if nonce:
            params["nonce"] = nonce
        return f"{self.authorize_url}?{urlencode(params)}"

    def exchange_code(self, code: str, redirect_uri: str) -> Dict[str, Any]:
        """
        Trade an authorization code for tokens.

        Returns the decoded token response; guarantees a non-empty "id_token".
        """
        form = {
            "code": code,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "redirect_uri": redirect_uri,
            "grant_type": "authorization_code",
        }

        try:
            resp = self.http.post(self.token_url, data=form, timeout=self.timeout)
        except requests.RequestException as e:
            raise ExchangeFailed(f"token endpoint unreachable: {e!s}"[:200]) from e

        if not 200 <= resp.status_code < 300:
            raise ExchangeFailed(f"token endpoint returned {resp.status_code}: {resp.text[:200]}")

        try:
            body = resp.json()
        except ValueError as e:
            raise ExchangeFailed("token endpoint returned non-JSON body") from e

        if not isinstance(body, dict) or not body.get("id_token"):
            raise NoTokenReturned("token response carries no id_token")

        return body
