import hmac
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from jose import JWTError, jwt

from onboarding_billing.core.config import settings

ALGORITHM = "HS256"
CHECKOUT_TOKEN_TYPE = "checkout_csrf"


class TokenValidationError(ValueError):
    pass


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_at: datetime


def checkout_token_key(submission_id: str, session_id: str | None = None) -> str:
    """Sessions own their submissions, so a session-scoped token wins when present."""
    return str(session_id or submission_id)


def create_token(
    subject: str,
    expires_delta: timedelta,
    token_type: str,
    jti: str | None = None,
) -> IssuedToken:
    now = datetime.now(timezone.utc)
    expires_at = now + expires_delta
    payload = {
        "sub": subject,
        "type": token_type,
        "jti": jti or str(uuid4()),
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    token = jwt.encode(payload, settings.secret_key, algorithm=ALGORITHM)
    return IssuedToken(token=token, expires_at=expires_at)


def decode_token(token: str, *, expected_type: str | None = None) -> dict:
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM])
    except JWTError as exc:
        raise TokenValidationError("Invalid token") from exc

    subject = payload.get("sub")
    if not subject:
        raise TokenValidationError("Invalid token subject")

    token_type = payload.get("type")
    if expected_type and token_type != expected_type:
        raise TokenValidationError("Invalid token type")

    if not payload.get("jti"):
        raise TokenValidationError("Invalid token id")

    return payload


def create_checkout_token(submission_id: str, session_id: str | None = None) -> IssuedToken:
    return create_token(
        subject=checkout_token_key(submission_id, session_id),
        expires_delta=timedelta(minutes=settings.checkout_token_expire_minutes),
        token_type=CHECKOUT_TOKEN_TYPE,
    )


def verify_checkout_token(token: str | None, submission_id: str, session_id: str | None = None) -> None:
    if not token:
        raise TokenValidationError("Missing checkout token")
    payload = decode_token(token, expected_type=CHECKOUT_TOKEN_TYPE)
    expected = checkout_token_key(submission_id, session_id)
    if not hmac.compare_digest(str(payload["sub"]), expected):
        raise TokenValidationError("Checkout token does not match this submission")
