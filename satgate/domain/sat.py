"""Claim and decision types for signed action tokens.

Claims are a closed structure: the codec only produces :class:`SatClaims`
instances and the gate compares every field explicitly. Refusals travel as
values (:class:`SatDenied`) so callers must branch on them instead of
catching exceptions at the authorization boundary.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


ALLOWED_METHODS = frozenset({"GET", "POST", "PUT", "PATCH", "DELETE"})

FEATURE_CHAT_SEND = "chat.send"
FEATURE_CHAT_MEDIA = "chat.media"
FEATURE_CONTACTS_VIEW = "contacts.view"
FEATURE_WHATSAPP_HANDOFF = "whatsapp.handoff"

KNOWN_FEATURES = frozenset(
    {
        FEATURE_CHAT_SEND,
        FEATURE_CHAT_MEDIA,
        FEATURE_CONTACTS_VIEW,
        FEATURE_WHATSAPP_HANDOFF,
    }
)

# Features that expose contact channels and require a paid entitlement to mint.
PREMIUM_FEATURES = frozenset(
    {
        FEATURE_CHAT_MEDIA,
        FEATURE_CONTACTS_VIEW,
        FEATURE_WHATSAPP_HANDOFF,
    }
)


class SatErrorCode(str, Enum):
    TOKEN_REQUIRED = "SAT_REQUIRED"
    TOKEN_INVALID = "SAT_INVALID"
    SUBJECT_MISMATCH = "SAT_SUBJECT_MISMATCH"
    FEATURE_FORBIDDEN = "SAT_FEATURE_FORBIDDEN"
    BINDING_MISMATCH = "SAT_BINDING_MISMATCH"
    MISSING_TOKEN_ID = "SAT_MISSING_TOKEN_ID"
    REPLAYED_OR_EXPIRED = "SAT_REPLAYED_OR_EXPIRED"


class DecodeFailure(str, Enum):
    MALFORMED = "malformed"
    BAD_SIGNATURE = "bad_signature"
    EXPIRED = "expired"


@dataclass(frozen=True)
class SatClaims:
    subject: str
    feature: str
    method: str
    path: str
    token_id: str | None
    issued_at: datetime
    expires_at: datetime
    session_id: str | None = None


@dataclass(frozen=True)
class DecodeError:
    reason: DecodeFailure


@dataclass(frozen=True)
class IssuedToken:
    token: str
    token_id: str
    expires_at: datetime


@dataclass(frozen=True)
class SatAuthorized:
    claims: SatClaims

    @property
    def allowed(self) -> bool:
        return True


@dataclass(frozen=True)
class SatDenied:
    code: SatErrorCode
    message: str
    reason: str | None = None
    token_id: str | None = None

    @property
    def allowed(self) -> bool:
        return False


SatDecision = SatAuthorized | SatDenied
