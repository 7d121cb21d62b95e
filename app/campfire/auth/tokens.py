import logging

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from pymongo.database import Database

from campfire.database.connection import get_db
from campfire.database.profile_repository import ProfileRepository
from configs.config import get_config

logger = logging.getLogger(__name__)
cfg = get_config()

# Tokens are issued by the external identity provider; this service only
# verifies them.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/token")


async def get_current_user_id(token: str = Depends(oauth2_scheme)) -> str:
    """Dependency returning the ``sub`` claim of a valid bearer token."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid session.",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = jwt.decode(token, cfg.JWT_SECRET_KEY, algorithms=[cfg.JWT_ALGORITHM])
    except JWTError:
        logger.warning("Rejected bearer token that failed verification")
        raise credentials_exception

    user_id = payload.get("sub")
    if not user_id:
        raise credentials_exception
    return user_id


async def require_admin(
    user_id: str = Depends(get_current_user_id),
    db: Database = Depends(get_db),
) -> str:
    """Dependency that lets only profiles flagged ``is_admin`` through."""
    if not ProfileRepository(db).is_admin(user_id):
        logger.warning("Non-admin %s attempted an admin operation", user_id)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden.")
    return user_id
