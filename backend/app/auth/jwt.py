"""Access tokens issued by the Worksheet Hub accounts service.

This service never logs anyone in. It only checks the bearer token the
accounts service handed out and reads the user id from its ``sub`` claim.
:func:`create_access_token` mints the same shape of token for scripts and
the test suite.
"""

import uuid
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from app.config import settings

ACCESS_TOKEN_TYPE = "access"


class InvalidAccessToken(Exception):
    """The bearer token cannot identify a user."""

    def __init__(self, message: str = "Could not validate credentials") -> None:
        super().__init__(message)
        self.message = message


def create_access_token(user_id: uuid.UUID | str, expires_delta: timedelta | None = None) -> str:
    """Sign an access token for ``user_id``, valid for ``jwt_access_token_expire_minutes`` by default."""
    issued_at = datetime.now(timezone.utc)
    lifetime = expires_delta or timedelta(minutes=settings.jwt_access_token_expire_minutes)
    claims = {
        "sub": str(user_id),
        "type": ACCESS_TOKEN_TYPE,
        "iat": issued_at,
        "exp": issued_at + lifetime,
    }
    return jwt.encode(claims, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def user_id_from_token(token: str) -> uuid.UUID:
    """Verify ``token`` and return the user id it was issued for.

    Raises:
        InvalidAccessToken: bad signature, expired, not an access token, or
            a ``sub`` that is not a UUID.
    """
    try:
        claims = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        raise InvalidAccessToken() from None

    if claims.get("type") != ACCESS_TOKEN_TYPE:
        raise InvalidAccessToken("Invalid token type")
    try:
        return uuid.UUID(str(claims.get("sub")))
    except ValueError:
        raise InvalidAccessToken() from None
