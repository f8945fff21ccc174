from typing import Annotated, Optional
from urllib.parse import urlparse, urlunparse

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode


def normalize_origin(v: str) -> str:
    """
    Reduce an absolute http(s) URL to its origin.

    Normalization:
      - strip whitespace
      - strip trailing slash
      - require http/https
      - require hostname
      - lowercase hostname

    Note: we preserve an optional port if present.
    """
    v = (v or "").strip().rstrip("/")
    p = urlparse(v)

    if p.scheme not in ("http", "https"):
        raise ValueError("origin must start with http:// or https://")

    if not p.hostname:
        raise ValueError("origin must include a hostname")

    # Normalize host casing; keep port if present; drop username/password/path/query/fragment
    netloc = p.hostname.lower()
    if p.port:
        netloc = f"{netloc}:{p.port}"

    return urlunparse((p.scheme, netloc, "", "", "", ""))


class Settings(BaseSettings):
    # public base URL of the hosted flow; derived from request headers when unset
    PUBLIC_BASE_URL: Optional[str] = None

    # relying party / display
    RP_ID: Optional[str] = None
    RP_NAME: str = "Step-up MFA"

    # document store
    MONGODB_URI: str = "mongodb://localhost:27017"
    MONGODB_DB: str = "stepup"

    # session lifecycle
    SESSION_TTL_SECONDS: int = 600
    SESSION_MAX_FAILED_ATTEMPTS: int = 3

    # email one-time codes
    OTP_TTL_SECONDS: int = 300
    OTP_MAX_SENDS: int = 3
    OTP_MIN_INTERVAL_SECONDS: int = 60
    OTP_MAX_ATTEMPTS: int = 6
    OTP_HASH_ROUNDS: int = 10

    WEBAUTHN_CHALLENGE_TTL_SECONDS: int = 300

    # approval tokens
    JWT_PRIVATE_KEY_PEM: str = ""
    JWT_KID: str = "stepup-kid"
    JWT_ISSUER: Optional[str] = None
    JWT_AUDIENCE: str = "merchant"
    TOKEN_TTL_SECONDS: int = 300

    # merchants
    MERCHANT_KEY_ENV: str = "test"
    MERCHANT_KEY_HASH_ROUNDS: int = 12
    DEFAULT_ALLOWED_ORIGINS: Annotated[list[str], NoDecode] = [
        "http://localhost:3000",
        "http://localhost:3001",
    ]

    # email transport
    SMTP_HOST: str = "localhost"
    SMTP_PORT: int = 1025
    SMTP_USER: str = ""
    SMTP_PASS: str = ""
    SMTP_FROM: str = ""

    # optional hash-chained mirror of the audit collection
    AUDIT_LOG_PATH: Optional[str] = None

    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"

    @field_validator("PUBLIC_BASE_URL")
    @classmethod
    def normalize_base_url(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return normalize_origin(v)

    @field_validator("RP_ID")
    @classmethod
    def normalize_rp_id(cls, v: Optional[str]) -> Optional[str]:
        """
        RP_ID must be domain-only (WebAuthn rpId semantics).
        Accepts accidental full URLs and strips scheme/path/trailing slashes.
        """
        if v is None or not v.strip():
            return None
        v = v.strip()

        # If someone passes a URL, extract hostname
        if "://" in v:
            p = urlparse(v)
            if p.hostname:
                v = p.hostname

        v = v.strip().rstrip("/").lower()

        if "/" in v or ":" in v:
            # ":" would indicate a port; WebAuthn rpId must not include it
            raise ValueError("RP_ID must be a bare domain (no scheme, no port, no path)")

        return v

    @field_validator("DEFAULT_ALLOWED_ORIGINS", mode="before")
    @classmethod
    def normalize_allowed_origins(cls, v):
        # accept "https://a.example,https://b.example" from env
        if isinstance(v, str):
            v = [p.strip() for p in v.split(",") if p.strip()]
        return [normalize_origin(o) for o in v]

    @field_validator("JWT_PRIVATE_KEY_PEM")
    @classmethod
    def unescape_pem(cls, v: str) -> str:
        # single-line env vars carry the PEM with literal "\n" sequences
        v = (v or "").strip()
        if "\\n" in v:
            v = v.replace("\\n", "\n").strip()
        return v

    @field_validator("MERCHANT_KEY_ENV")
    @classmethod
    def normalize_key_env(cls, v: str) -> str:
        v = (v or "").strip().lower()
        if v not in ("test", "live"):
            raise ValueError("MERCHANT_KEY_ENV must be 'test' or 'live'")
        return v

    @field_validator("OTP_HASH_ROUNDS", "MERCHANT_KEY_HASH_ROUNDS")
    @classmethod
    def check_bcrypt_rounds(cls, v: int) -> int:
        if not 4 <= v <= 31:
            raise ValueError("bcrypt rounds must be between 4 and 31")
        return v

    @model_validator(mode="after")
    def check_rp_binding(self):
        # WebAuthn expectation: origin host must equal rp_id or be a subdomain of it.
        if self.PUBLIC_BASE_URL and self.RP_ID:
            host = urlparse(self.PUBLIC_BASE_URL).hostname or ""
            if not (host == self.RP_ID or host.endswith("." + self.RP_ID)):
                raise ValueError(
                    f"PUBLIC_BASE_URL host '{host}' does not match RP_ID '{self.RP_ID}'. "
                    f"Set RP_ID to the base URL hostname or one of its parent domains."
                )
        return self

    @property
    def issuer(self) -> str:
        return self.JWT_ISSUER or self.PUBLIC_BASE_URL or "stepup"


def load_settings(**overrides) -> Settings:
    """Read settings from the environment; fails fast on invalid values."""
    return Settings(**overrides)
