"""Request-scoped dependencies."""

import logging
from typing import Any, Dict, Optional

import jwt
from fastapi import Depends, HTTPException, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from pulse_engine.core.context import AppContext

logger = logging.getLogger(__name__)

optional_security = HTTPBearer(auto_error=False)


class CurrentUser:
    """Identity carried by the bearer JWT."""

    def __init__(self, user_id: str, username: Optional[str] = None, github_token: Optional[str] = None):
        self.user_id = user_id
        self.username = username
        self.github_token = github_token

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.user_id, "username": self.username}


def get_context(request: Request) -> AppContext:
    return request.app.state.context


def decode_token(token: str, secret: str) -> CurrentUser:
    """Validate an HS256 token and build the user from its claims."""
    try:
        payload = jwt.decode(token, secret, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError as e:
        logger.warning("Invalid token: %s", e)
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("id") or payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token: missing user id")

    return CurrentUser(
        user_id=str(user_id),
        username=payload.get("username"),
        github_token=payload.get("githubToken"),
    )


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(optional_security),
    context: AppContext = Depends(get_context),
) -> Optional[CurrentUser]:
    """Authenticated user, or None for anonymous requests.

    With no JWT secret configured every request is anonymous.
    """
    secret = context.settings.JWT_SECRET
    if credentials is None or not secret:
        return None
    return decode_token(credentials.credentials, secret)
