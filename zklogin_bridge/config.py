from urllib.parse import urlparse, urlunparse

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # public base URL of this service (used to derive callback URIs)
    ORIGIN: str = "http://127.0.0.1:3000"

    # identity provider application
    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: str = ""
    GOOGLE_AUTHORIZE_URL: str = "https://accounts.google.com/o/oauth2/v2/auth"
    GOOGLE_TOKEN_URL: str = "https://oauth2.googleapis.com/token"
    OAUTH_SCOPES: str = "openid,email,profile"

    # per client type callback URIs; empty means "derive from ORIGIN"
    DESKTOP_REDIRECT_URI: str = ""
    WEB_REDIRECT_URI: str = ""

    # landing targets after the callback
    DESKTOP_SUCCESS_URL: str = "/success"
    WEB_SUCCESS_URL: str = "/success"
    FAILURE_URL: str = "/failure"

    # ephemeral state lifetimes
    NONCE_TTL_SECONDS: int = 600
    MAILBOX_TTL_SECONDS: int = 300

    # upstream timeouts
    EXCHANGE_TIMEOUT_SECONDS: float = 10.0
    PROVER_TIMEOUT_SECONDS: float = 60.0

    # zero-knowledge proving service
    PROVER_URL: str = "https://prover-dev.mystenlabs.com/v1"
    PROVER_MODE: str = "live"

    # salt / profile persistence
    SALT_STORE: str = "sqlite"
    DB_PATH: str = "zklogin.db"

    ALLOWED_ISSUERS: str = "https://accounts.google.com,accounts.google.com"

    # browser origins allowed to call the API; "*" for any
    CORS_ORIGINS: str = "*"

    AUDIT_ENABLED: bool = True
    AUDIT_DIR: str = "audit"

    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        extra = "ignore"

    @field_validator("ORIGIN")
    @classmethod
    def normalize_origin(cls, v: str) -> str:
        """
        ORIGIN must be an absolute http(s) origin reachable by the browser
        that performs the provider login.

        Normalization:
          - strip whitespace and trailing slash
          - require http/https and a hostname
          - lowercase hostname, keep an optional port
        """
        v = (v or "").strip().rstrip("/")
        p = urlparse(v)

        if p.scheme not in ("http", "https"):
            raise ValueError("ORIGIN must start with http:// or https://")

        if not p.hostname:
            raise ValueError("ORIGIN must include a hostname")

        netloc = p.hostname.lower()
        if p.port:
            netloc = f"{netloc}:{p.port}"

        return urlunparse((p.scheme, netloc, "", "", "", ""))

    @field_validator("DESKTOP_REDIRECT_URI", "WEB_REDIRECT_URI")
    @classmethod
    def normalize_redirect_uri(cls, v: str) -> str:
        v = (v or "").strip()
        if v and urlparse(v).scheme not in ("http", "https"):
            raise ValueError("redirect URIs must be absolute http(s) URLs")
        return v

    @field_validator("PROVER_MODE")
    @classmethod
    def normalize_prover_mode(cls, v: str) -> str:
        v = (v or "").strip().lower()
        if v not in ("live", "sandbox"):
            raise ValueError("PROVER_MODE must be 'live' or 'sandbox'")
        return v

    @field_validator("SALT_STORE")
    @classmethod
    def normalize_salt_store(cls, v: str) -> str:
        v = (v or "").strip().lower()
        if v not in ("sqlite", "memory"):
            raise ValueError("SALT_STORE must be 'sqlite' or 'memory'")
        return v

    @field_validator("NONCE_TTL_SECONDS", "MAILBOX_TTL_SECONDS")
    @classmethod
    def positive_ttl(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("TTL values must be positive")
        return v

    @field_validator("AUDIT_ENABLED", mode="before")
    @classmethod
    def normalize_audit_enabled(cls, v):
        # accept 0/1, "true"/"false" from env consistently
        if isinstance(v, bool):
            return v
        if isinstance(v, int):
            return bool(v)
        if isinstance(v, str):
            return v.strip().lower() not in ("0", "false", "no", "off", "")
        return True

    @property
    def scopes(self) -> list[str]:
        # OAUTH_SCOPES accepts "openid,email profile" style lists
        parts = [p for p in self.OAUTH_SCOPES.replace(",", " ").split() if p]
        return parts or ["openid"]

    @property
    def allowed_issuers(self) -> set[str]:
        return {p.strip() for p in self.ALLOWED_ISSUERS.split(",") if p.strip()}

    @property
    def cors_origins(self) -> list[str]:
        return [p.strip().rstrip("/") for p in self.CORS_ORIGINS.split(",") if p.strip()]

    @property
    def desktop_redirect_uri(self) -> str:
        return self.DESKTOP_REDIRECT_URI or f"{self.ORIGIN}/login/google/callback"

    @property
    def web_redirect_uri(self) -> str:
        return self.WEB_REDIRECT_URI or f"{self.ORIGIN}/auth/google/callback"


settings = Settings()
