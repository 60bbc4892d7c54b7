"""Credential verification for REST requests and WebSocket connections.

Tokens are HS256 (configurable) JWTs issued elsewhere. The verifier only
checks the signature and expiry and maps the claims to an ``Identity``:

    sub | id           -> user_id   (required)
    username | name    -> user_name (defaults to user_id)
"""
import logging
from typing import Optional

import jwt
from pydantic import BaseModel

from roomchat.config import AppConfig, get_config
from roomchat.errors import AuthError

logger = logging.getLogger(__name__)


class Identity(BaseModel):
    """Authenticated user attached to a request or session."""
    user_id: str
    user_name: str


class IdentityVerifier:
    """Validates bearer tokens and resolves the caller's identity."""

    def __init__(self, secret_key: str, algorithm: str = "HS256"):
        self.secret_key = secret_key
        self.algorithm = algorithm

    @classmethod
    def from_config(cls, config: Optional[AppConfig] = None) -> "IdentityVerifier":
        config = config or get_config()
        return cls(
            secret_key=config.secrets.jwt.secret_key,
            algorithm=config.secrets.jwt.algorithm,
        )

    def verify(self, credential: Optional[str]) -> Identity:
        """Decode a token into an Identity.

        Raises:
            AuthError: 401 if the token is missing, 403 if it is invalid,
                expired, or lacks a user id.
        """
        if not credential:
            raise AuthError("Access token required", status_code=401)

        try:
            claims = jwt.decode(credential, self.secret_key, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            logger.info("Rejected expired token")
            raise AuthError("Token expired", status_code=403)
        except jwt.InvalidTokenError as e:
            logger.info(f"Rejected invalid token: {e}")
            raise AuthError("Invalid token", status_code=403)

        user_id = claims.get("sub") or claims.get("id")
        if user_id is None or user_id == "":
            raise AuthError("Invalid token", status_code=403)
        user_id = str(user_id)
        user_name = claims.get("username") or claims.get("name") or user_id
        return Identity(user_id=user_id, user_name=str(user_name))
