"""
stepup/models.py

Typed records for every persisted collection plus the HTTP request bodies.

Documents are validated when they cross the store boundary (`from_doc`) so the
rest of the code never has to trust the shape of a raw Mongo document.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class SessionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    EXPIRED = "expired"


class Method(str, Enum):
    EMAIL_OTP = "email_otp"
    WEBAUTHN = "webauthn"


class Strategy(str, Enum):
    FIRST_AVAILABLE = "first-available"
    ALL_REQUIRED = "all-required"


class Record(BaseModel):
    # Mongo adds "_id"; records never depend on it
    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_doc(cls, doc: Optional[Dict[str, Any]]):
        if doc is None:
            return None
        return cls.model_validate(doc)

    def to_doc(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class UserDescriptor(BaseModel):
    model_config = ConfigDict(extra="allow")

    email: str
    id: Optional[str] = None
    name: Optional[str] = None

    @field_validator("email")
    @classmethod
    def check_email(cls, v: str) -> str:
        v = (v or "").strip()
        local, _, domain = v.partition("@")
        if not local or not domain or " " in v:
            raise ValueError("user.email must be an email address")
        return v


# -----------------------------------------------------------------------------
# Sessions
# -----------------------------------------------------------------------------
class MfaSession(Record):
    session_id: str
    state: str
    merchant_id: str
    app_id: Optional[str] = None

    amount: float
    currency: str
    user: UserDescriptor
    metadata: Any = None

    methods: List[Method] = Field(min_length=1)
    strategy: Strategy
    satisfied_methods: List[Method] = Field(default_factory=list)
    failed_attempts: int = 0
    status: SessionStatus = SessionStatus.PENDING

    success_url: str
    failure_url: str

    created_at: int
    expires_at: int

    # written once, at the terminal transition
    challenge_id: Optional[str] = None
    deny_reason: Optional[str] = None
    redirect_url: Optional[str] = None

    email_sends: int = 0
    last_email_sent_at: Optional[int] = None

    @model_validator(mode="after")
    def satisfied_subset_of_methods(self):
        extra = [m for m in self.satisfied_methods if m not in self.methods]
        if extra:
            raise ValueError(f"satisfied_methods {extra} not in methods")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status != SessionStatus.PENDING

    def is_expired(self, now: int) -> bool:
        return now >= self.expires_at

    def effective_status(self, now: int) -> SessionStatus:
        if self.status == SessionStatus.PENDING and self.is_expired(now):
            return SessionStatus.EXPIRED
        return self.status

    @property
    def user_key(self) -> str:
        """Stable identity WebAuthn credentials are registered under."""
        return self.user.email.lower() or self.user.id or self.state

    def remaining_methods(self) -> List[Method]:
        return [m for m in self.methods if m not in self.satisfied_methods]

    def public_view(self, now: int) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "status": self.effective_status(now).value,
            "amount": self.amount,
            "currency": self.currency,
            "user": self.user.model_dump(exclude_none=True),
            "methods": [m.value for m in self.methods],
            "satisfiedMethods": [m.value for m in self.satisfied_methods],
            "expiresAt": self.expires_at,
        }


# -----------------------------------------------------------------------------
# Challenges / credentials
# -----------------------------------------------------------------------------
class EmailChallenge(Record):
    challenge_id: str
    session_id: str
    email: str
    code_hash: str
    attempts: int = 0
    created_at: int
    expires_at: int
    consumed_at: Optional[int] = None


class WebAuthnChallenge(Record):
    session_id: str
    user_key: str
    kind: str  # "registration" | "authentication"
    challenge: str
    created_at: int
    expires_at: int


class WebAuthnCredential(Record):
    user_key: str
    credential_id: str
    public_key: str
    sign_count: int = 0
    device_type: Optional[str] = None
    backed_up: bool = False
    transports: List[str] = Field(default_factory=list)
    created_at: Optional[int] = None
    updated_at: Optional[int] = None


class ApprovalTokenRecord(Record):
    jti: str
    merchant_id: str
    session_id: str
    challenge_id: str
    token: str
    exp: int
    created_at: int


# -----------------------------------------------------------------------------
# Merchants / apps
# -----------------------------------------------------------------------------
class AppRule(BaseModel):
    method: Method
    min_amount_cents: int = Field(default=0, ge=0)
    required: bool = False


class AppPolicy(Record):
    app_id: str
    merchant_id: str
    name: str
    rules: List[AppRule] = Field(default_factory=list)
    allowed_origins: List[str] = Field(default_factory=list)
    created_at: int
    updated_at: int


class MerchantKey(BaseModel):
    prefix: str
    last_four: str
    hash: str
    created_at: int
    rotated_at: Optional[int] = None


class Merchant(Record):
    merchant_id: str
    name: str = ""
    key: MerchantKey
    allowed_origins: List[str] = Field(default_factory=list)
    created_at: int

    def public_view(self) -> Dict[str, Any]:
        return {
            "merchantId": self.merchant_id,
            "name": self.name,
            "key": {
                "prefix": self.key.prefix,
                "lastFour": self.key.last_four,
                "createdAt": self.key.created_at,
                "rotatedAt": self.key.rotated_at,
            },
            "allowedOrigins": self.allowed_origins,
        }


# -----------------------------------------------------------------------------
# Request bodies
# -----------------------------------------------------------------------------
class Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


class CreateSessionRequest(Body):
    amount: float = Field(ge=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    user: UserDescriptor
    success_url: str = Field(alias="successUrl")
    failure_url: str = Field(alias="failureUrl")
    app_id: Optional[str] = Field(default=None, alias="appId")
    metadata: Any = None

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()


class SessionRef(Body):
    session_id: str = Field(alias="sessionId", min_length=1)


class VerifyCodeRequest(SessionRef):
    code: str = Field(min_length=1, max_length=16)


class AssertionRequest(SessionRef):
    assertion: Dict[str, Any]


class AttestationRequest(SessionRef):
    attestation: Dict[str, Any]
