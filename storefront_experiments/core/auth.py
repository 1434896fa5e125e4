from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from typing import Annotated

from .settings import config_settings

# Clients would request a token at this URL if the API supported
# username/password login. Only the admin routes require it.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/token")


def require_auth_token(token: Annotated[str, Depends(oauth2_scheme)]):
    """
    Dependency function that requires a Bearer token and validates it against
    the configured admin tokens.

    If no token is provided, OAuth2PasswordBearer automatically raises
    a 401 Unauthorized exception.
    """
    if not token or token not in config_settings.TOKENS:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return token
