"""Pydantic models for ACME protocol resources."""

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

# =============================================================================
# ACME Protocol Enums (RFC 8555)
# =============================================================================


class ChallengeStatus(StrEnum):
    """Challenge statuses (RFC 8555 Section 7.1.6)."""

    PENDING = "pending"
    PROCESSING = "processing"
    VALID = "valid"
    INVALID = "invalid"


class AuthorizationStatus(StrEnum):
    """Authorization statuses (RFC 8555 Section 7.1.6)."""

    PENDING = "pending"
    VALID = "valid"
    INVALID = "invalid"
    DEACTIVATED = "deactivated"
    EXPIRED = "expired"
    REVOKED = "revoked"


class OrderStatus(StrEnum):
    """Order statuses (RFC 8555 Section 7.1.6)."""

    PENDING = "pending"
    READY = "ready"
    PROCESSING = "processing"
    VALID = "valid"
    INVALID = "invalid"


class AccountStatus(StrEnum):
    """Account statuses (RFC 8555 Section 7.1.6)."""

    VALID = "valid"
    DEACTIVATED = "deactivated"
    REVOKED = "revoked"


class ChallengeType(StrEnum):
    """Challenge types (RFC 8555 Section 8)."""

    HTTP_01 = "http-01"
    DNS_01 = "dns-01"
    TLS_ALPN_01 = "tls-alpn-01"
    DNS_ACCOUNT_01 = "dns-account-01"


# =============================================================================
# Pydantic Models
# =============================================================================


class Directory(BaseModel):
    """ACME directory resource (RFC 8555 Section 7.1.1)."""

    new_nonce: str = Field(alias="newNonce")
    new_account: str = Field(alias="newAccount")
    new_order: str = Field(alias="newOrder")
    revoke_cert: str | None = Field(default=None, alias="revokeCert")
    key_change: str | None = Field(default=None, alias="keyChange")
    meta: dict[str, Any] | None = None

    model_config = {"populate_by_name": True}


class Account(BaseModel):
    """ACME account resource (RFC 8555 Section 7.1.2)."""

    status: AccountStatus
    contact: list[str] | None = None
    orders: str | None = None
    terms_of_service_agreed: bool | None = Field(default=None, alias="termsOfServiceAgreed")

    model_config = {"populate_by_name": True}


class Identifier(BaseModel):
    """ACME identifier (RFC 8555 Section 7.1.3)."""

    type: str
    value: str


class Challenge(BaseModel):
    """ACME challenge resource (RFC 8555 Section 7.5.1).

    Unknown challenge types are kept as plain strings so that a server
    offering e.g. a draft challenge type does not break parsing.
    """

    type: str
    url: str
    status: ChallengeStatus
    token: str | None = None
    validated: datetime | None = None
    error: dict[str, Any] | None = None


class Authorization(BaseModel):
    """ACME authorization resource (RFC 8555 Section 7.1.4)."""

    status: AuthorizationStatus
    identifier: Identifier
    challenges: list[Challenge]
    expires: datetime | None = None
    wildcard: bool | None = None


class Order(BaseModel):
    """ACME order resource (RFC 8555 Section 7.1.3)."""

    status: OrderStatus
    identifiers: list[Identifier]
    authorizations: list[str]
    finalize: str
    expires: datetime | None = None
    not_before: datetime | None = Field(default=None, alias="notBefore")
    not_after: datetime | None = Field(default=None, alias="notAfter")
    certificate: str | None = None
    error: dict[str, Any] | None = None

    model_config = {"populate_by_name": True}
