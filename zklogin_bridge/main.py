# zklogin_bridge/main.py
#
# -----------------------------------------------------------------------------
# Architectural notes (high level)
# -----------------------------------------------------------------------------
# This file is intentionally "thin" orchestration glue:
#   - It wires HTTP endpoints to the domain objects implemented elsewhere.
#   - It maps domain exceptions to HTTP status codes.
#   - It owns no state itself: every store is built by create_app() and hung
#     on app.state, so tests get isolated instances per app.
#
# Key modules / responsibilities:
#   - config.py      : environment-driven settings
#   - storage.py     : nonce correlator + token mailbox (ephemeral, take-once)
#   - salts.py       : salt registry + persistent salt/profile store
#   - jwt_tokens.py  : unverified claim decoding + nonce reconciliation
#   - provider.py    : OAuth2 code exchange with the identity provider
#   - bridge.py      : login state machine (start / callback / poll)
#   - zklogin.py     : address derivation + prover calls
#   - audit.py       : append-only audit log (security telemetry, forensics)
#   - qr.py          : QR rendering of the login-start URL
#
# Flow:
#   client  -> GET /auth/google?sessionId=..&nonce=..   (browser, 307 to provider)
#   provider-> GET /login/google/callback | /auth/google/callback (307 to landing)
#   client  -> GET /auth/poll?sessionId=..              (404 until ready, then once)
#   client  -> POST /v1/zklogin                         (proof + address)
#
# WARNING (DEPLOYMENT):
# - The nonce correlator and mailbox are in-process dicts: NOT shared across
#   Uvicorn workers or nodes. Run one worker, or pin a login's callback and
#   polls to the same process. The salt store is the only shared state.
# -----------------------------------------------------------------------------

import logging
from pathlib import Path
from typing import Optional
from urllib.parse import urlencode

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, RedirectResponse, Response
from fastapi.templating import Jinja2Templates

from .audit import AuditLog, NullAuditLog
from .bridge import ClientSurface, ClientType, MissingParameter, OAuthBridge
from .config import Settings, settings as default_settings
from .jwt_tokens import InvalidToken, IssuerNotAllowed, TokenExpired, check_claims, decode_unverified_claims
from .models import ProofRequest, VerifyRequest
from .provider import OAuthProvider
from .qr import make_login_qr_svg_bytes
from .salts import SaltRegistry, SaltStorageError, build_salt_store
from .storage import NonceCorrelator, TokenMailbox
from .zklogin import ProofBroker, ProverError, build_prover

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent
templates = Jinja2Templates(directory=str(BASE_DIR / "templates"))


# -----------------------------------------------------------------------------
# Application factory
# -----------------------------------------------------------------------------
def create_app(
    settings: Optional[Settings] = None,
    *,
    provider=None,
    salt_store=None,
    prover=None,
    audit=None,
) -> FastAPI:
    """
    Build the service. Collaborators default to what settings describe and
    can be injected (tests, alternative backends).
    """
    settings = settings or default_settings
    logging.basicConfig(level=settings.LOG_LEVEL.upper())

    if audit is None:
        audit = AuditLog(settings.AUDIT_DIR) if settings.AUDIT_ENABLED else NullAuditLog()

    provider = provider or OAuthProvider(
        client_id=settings.GOOGLE_CLIENT_ID,
        client_secret=settings.GOOGLE_CLIENT_SECRET,
        authorize_url=settings.GOOGLE_AUTHORIZE_URL,
        token_url=settings.GOOGLE_TOKEN_URL,
        scopes=settings.scopes,
        timeout=settings.EXCHANGE_TIMEOUT_SECONDS,
    )
    salt_store = salt_store or build_salt_store(settings.SALT_STORE, settings.DB_PATH)
    prover = prover or build_prover(settings.PROVER_MODE, settings.PROVER_URL, settings.PROVER_TIMEOUT_SECONDS)

    salts = SaltRegistry(salt_store)

    app = FastAPI(title="zkLogin OAuth Bridge", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )
    app.state.settings = settings
    app.state.bridge = OAuthBridge(
        provider=provider,
        nonces=NonceCorrelator(ttl_seconds=settings.NONCE_TTL_SECONDS),
        mailbox=TokenMailbox(ttl_seconds=settings.MAILBOX_TTL_SECONDS),
        salts=salts,
        surfaces={
            ClientType.DESKTOP: ClientSurface(settings.desktop_redirect_uri, settings.DESKTOP_SUCCESS_URL),
            ClientType.WEB: ClientSurface(settings.web_redirect_uri, settings.WEB_SUCCESS_URL),
        },
        failure_url=settings.FAILURE_URL,
        audit=audit,
    )
    app.state.broker = ProofBroker(salts=salts, profiles=salt_store, prover=prover, audit=audit)

    _register_routes(app)
    return app


def _client_type(value: Optional[str]) -> ClientType:
    try:
        return ClientType.parse(value)
    except MissingParameter as e:
        raise HTTPException(400, str(e))


def _register_routes(app: FastAPI) -> None:
    # -------------------------------------------------------------------------
    # Login start
    # -------------------------------------------------------------------------
    @app.get("/auth/google")
    def auth_google(
        request: Request,
        session_id: Optional[str] = Query(None, alias="sessionId"),
        nonce: Optional[str] = None,
        client: Optional[str] = None,
    ):
        bridge: OAuthBridge = request.app.state.bridge
        try:
            started = bridge.start(session_id, nonce, _client_type(client))
        except MissingParameter as e:
            raise HTTPException(400, {"error": str(e)})
        return RedirectResponse(started.authorization_url, status_code=307)

    @app.get("/auth/google/qr.svg")
    def auth_google_qr(
        request: Request,
        session_id: Optional[str] = Query(None, alias="sessionId"),
        nonce: Optional[str] = None,
        client: Optional[str] = None,
    ):
        session_id = (session_id or "").strip()
        if not session_id:
            raise HTTPException(400, {"error": "sessionId parameter required"})

        params = {"sessionId": session_id, "client": _client_type(client).value}
        if nonce:
            params["nonce"] = nonce
        start_url = f"{request.app.state.settings.ORIGIN}/auth/google?{urlencode(params)}"

        return Response(content=make_login_qr_svg_bytes(start_url), media_type="image/svg+xml")

    # -------------------------------------------------------------------------
    # Provider callback (one route per registered redirect URI)
    # -------------------------------------------------------------------------
    @app.get("/auth/google/callback")
    @app.get("/login/google/callback")
    def google_callback(
        request: Request,
        code: Optional[str] = None,
        state: Optional[str] = None,
        error: Optional[str] = None,
    ):
        bridge: OAuthBridge = request.app.state.bridge
        try:
            result = bridge.callback(code, state, error)
        except SaltStorageError:
            raise HTTPException(500, {"error": "internal_error"})
        return RedirectResponse(result.redirect_url, status_code=307)

    # -------------------------------------------------------------------------
    # Client polling
    # -------------------------------------------------------------------------
    @app.get("/auth/poll")
    def auth_poll(request: Request, session_id: Optional[str] = Query(None, alias="sessionId")):
        bridge: OAuthBridge = request.app.state.bridge
        try:
            envelope = bridge.poll(session_id)
        except MissingParameter as e:
            raise HTTPException(400, {"error": str(e)})

        if envelope is None:
            raise HTTPException(404, {"error": "not_ready", "message": "login not completed yet, retry later"})
        return envelope.public_view()

    # -------------------------------------------------------------------------
    # zkLogin proof
    # -------------------------------------------------------------------------
    @app.post("/v1/zklogin")
    def zklogin_proof(request: Request, body: ProofRequest):
        broker: ProofBroker = request.app.state.broker
        try:
            result = broker.derive_and_prove(
                token=body.credential,
                randomness=body.randomness,
                audience_key=body.audience,
                ephemeral_public_key=body.ephemeralPublicKey,
                max_epoch=body.maxEpoch,
            )
        except MissingParameter as e:
            raise HTTPException(400, {"error": str(e)})
        except InvalidToken as e:
            raise HTTPException(400, {"error": str(e)})
        except SaltStorageError:
            raise HTTPException(500, {"error": "internal_error"})
        except ProverError as e:
            raise HTTPException(
                status_code=502,
                detail={"error": "Failed to generate ZK proof", "status": e.status, "details": e.details},
            )
        return result.public_view()

    # -------------------------------------------------------------------------
    # Claims check (unverified signature!)
    # -------------------------------------------------------------------------
    @app.post("/auth/verify")
    def auth_verify(request: Request, body: VerifyRequest):
        if not body.credential:
            raise HTTPException(400, {"error": "Credential required"})

        try:
            claims = decode_unverified_claims(body.credential)
            check_claims(claims, request.app.state.settings.allowed_issuers)
        except (TokenExpired, IssuerNotAllowed) as e:
            raise HTTPException(401, {"error": str(e)})
        except InvalidToken as e:
            raise HTTPException(400, {"error": str(e)})

        return {
            "success": True,
            "user": {k: claims.get(k) for k in ("sub", "email", "name", "picture")},
            "nonce": claims.get("nonce"),
        }

    # -------------------------------------------------------------------------
    # Landing pages
    # -------------------------------------------------------------------------
    @app.get("/success", response_class=HTMLResponse)
    def success(request: Request):
        return templates.TemplateResponse(
            request, "success.html", {"title": "Login complete", "client_label": "the game"}
        )

    @app.get("/failure", response_class=HTMLResponse)
    def failure(request: Request):
        return templates.TemplateResponse(request, "failure.html", {"title": "Login failed"})


app = create_app()
