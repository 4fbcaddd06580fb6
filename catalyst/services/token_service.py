"""App-specific access tokens (HS256, signed with JWT_SECRET, 1 hour)."""

import logging
from datetime import datetime, timedelta, timezone

import jwt
from flask import current_app
from jwt.exceptions import PyJWTError

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
TOKEN_LIFETIME = timedelta(hours=1)
ISSUER = "catalyst-api"


def sign_token(user_id, email=None):
    now = datetime.now(timezone.utc)
    payload = {
        "id": user_id,
        "iss": ISSUER,
        "iat": now,
        "exp": now + TOKEN_LIFETIME,
    }
    if email:
        payload["email"] = email
    return jwt.encode(payload, current_app.config["JWT_SECRET"], algorithm=ALGORITHM)


def verify_token(token):
    """Return the token claims, or None if the token is not one of ours."""
    try:
        return jwt.decode(
            token,
            current_app.config["JWT_SECRET"],
            algorithms=[ALGORITHM],
            issuer=ISSUER,
        )
    except PyJWTError as e:
        logger.debug(f"Not a valid app token: {e}")
        return None
