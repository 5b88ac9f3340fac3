from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from jose import ExpiredSignatureError, JWTError, jwt
from starlette.requests import Request

from crm_admin.core.config import Settings, get_settings
from crm_admin.core.errors import (
    ExpiredCredential,
    InvalidSignature,
    MalformedCredential,
    MalformedToken,
    MissingCredential,
    MissingRoleClaim,
)


@dataclass(frozen=True)
class Identity:
    """Verified caller extracted from a bearer token.

    ``user_id`` comes from the numeric ``user_id`` claim and ``subject`` from
    ``sub``; when both are present the numeric id wins.
    """

    role: str
    user_id: int | None = None
    subject: str | None = None
    email: str | None = None
    name: str | None = None
    expires_at: datetime | None = None

    @property
    def actor_id(self) -> str:
        if self.user_id is not None:
            return str(self.user_id)
        return self.subject or ""

    @property
    def numeric_id(self) -> int | None:
        if self.user_id is not None:
            return self.user_id
        if self.subject is not None and self.subject.isdigit():
            return int(self.subject)
        return None


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _claim_user_id(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _claim_expiry(value: Any) -> datetime | None:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return None


def extract_bearer_token(raw_header: str | None) -> str:
    if not raw_header or not raw_header.strip():
        raise MissingCredential()
    parts = raw_header.strip().split(" ")
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1]:
        raise MalformedCredential()
    return parts[1]


def decode_token(token: str, settings: Settings) -> dict[str, Any]:
    try:
        jwt.get_unverified_header(token)
        jwt.get_unverified_claims(token)
    except JWTError as exc:
        raise MalformedToken() from exc

    options = {"verify_aud": False, "verify_iss": settings.jwt_issuer is not None}
    try:
        return jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            issuer=settings.jwt_issuer,
            options=options,
        )
    except ExpiredSignatureError as exc:
        raise ExpiredCredential() from exc
    except JWTError as exc:
        # covers bad signatures, algorithm mismatch and claim checks
        raise InvalidSignature() from exc


def identity_from_claims(claims: dict[str, Any]) -> Identity:
    role = _optional_str(claims.get("role"))
    if role is None:
        raise MissingRoleClaim()
    return Identity(
        role=role,
        user_id=_claim_user_id(claims.get("user_id")),
        subject=_optional_str(claims.get("sub")),
        email=_optional_str(claims.get("email")),
        name=_optional_str(claims.get("name")),
        expires_at=_claim_expiry(claims.get("exp")),
    )


def verify_authorization_header(raw_header: str | None, settings: Settings | None = None) -> Identity:
    settings = settings or get_settings()
    token = extract_bearer_token(raw_header)
    claims = decode_token(token, settings)
    return identity_from_claims(claims)


async def get_current_identity(request: Request) -> Identity:
    identity = verify_authorization_header(request.headers.get("authorization"))
    request.state.identity = identity
    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = identity.actor_id
    return identity
