import logging
from datetime import datetime, timedelta, timezone
from functools import lru_cache
import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy import select
from sqlalchemy.orm import Session
from examprep.core.config import settings
from examprep.core.database import get_db
from examprep.models.orm import User

logger = logging.getLogger(__name__)

bearer = HTTPBearer(auto_error=False)


@lru_cache()
def _jwks_client(url: str) -> jwt.PyJWKClient:
    return jwt.PyJWKClient(url, cache_keys=True)


def create_token(uid: str, ttl_minutes: int | None = None) -> str:
    now = datetime.now(timezone.utc)
    ttl = ttl_minutes or settings.ACCESS_TOKEN_EXPIRE_MINUTES
    payload = {"sub": uid, "iat": int(now.timestamp()), "exp": int((now + timedelta(minutes=ttl)).timestamp())}
    return jwt.encode(payload, settings.SECRET_KEY.get_secret_value(), algorithm=settings.ALGORITHM)


def verify_token(token: str) -> dict:
    """Decode a bearer token, against the JWKS endpoint when one is configured."""
    if settings.JWKS_URL:
        signing_key = _jwks_client(settings.JWKS_URL).get_signing_key_from_jwt(token)
        return jwt.decode(token, signing_key.key, algorithms=["RS256"],
                          audience=settings.JWT_AUDIENCE, issuer=settings.JWT_ISSUER)
    return jwt.decode(token, settings.SECRET_KEY.get_secret_value(), algorithms=[settings.ALGORITHM])


def get_current_uid(creds: HTTPAuthorizationCredentials | None = Depends(bearer)) -> str:
    if creds is None or creds.scheme.lower() != "bearer":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing Authorization header")
    try:
        payload = verify_token(creds.credentials)
    except jwt.PyJWTError as e:
        logger.info(f"Rejected token: {e}")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token")
    uid = payload.get("sub")
    if not uid:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token")
    return uid


def get_current_user_id(uid: str = Depends(get_current_uid), db: Session = Depends(get_db)) -> int:
    user_id = db.scalar(select(User.id).where(User.uid == uid))
    if user_id is None:
        logger.warning(f"Authenticated uid {uid} has no user record")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    return user_id
