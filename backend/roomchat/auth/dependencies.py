"""FastAPI dependencies for authentication."""
import asyncio
import logging
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .service import Identity

logger = logging.getLogger(__name__)

# auto_error=False so a missing header becomes our own AuthError (401)
security = HTTPBearer(auto_error=False)


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Identity:
    """Resolve the Bearer token into an Identity and record the user.

    Raises:
        AuthError: 401 if the token is missing, 403 if it is invalid.
    """
    token = credentials.credentials if credentials else None
    identity = request.app.state.verifier.verify(token)
    await asyncio.to_thread(
        request.app.state.store.upsert_user, identity.user_id, identity.user_name
    )
    return identity
