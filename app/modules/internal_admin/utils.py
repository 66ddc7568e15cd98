from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import HTTPException, status
from passlib.context import CryptContext

from app.core.config import settings

SECRET_KEY = settings.APP_SECRET_STRING
ALGORITHM = settings.ALGORITHM
INTERNAL_TOKEN_EXPIRE_MINUTES = settings.INTERNAL_TOKEN_EXPIRE_MINUTES

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    """Hash a password using bcrypt."""
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: Optional[str]) -> bool:
    """Verify a hashed password against a plain password."""
    if not hashed:
        return False
    return pwd_context.verify(plain, hashed)


def create_internal_token(user_id: str, email: str, role: str, expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a JWT for an internal operator.
    If expires_delta is not provided, it defaults to INTERNAL_TOKEN_EXPIRE_MINUTES.
    """
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=INTERNAL_TOKEN_EXPIRE_MINUTES))
    to_encode = {
        "sub": user_id,
        "email": email,
        "role": role,
        "exp": expire,
        "type": "internal",
    }
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_internal_token(token: str) -> dict:
    """Verify an internal JWT and return the payload."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="No se pudieron validar las credenciales",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token expirado",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.PyJWTError:
        raise credentials_exception

    if payload.get("type") != "internal" or not payload.get("sub"):
        raise credentials_exception
    return payload
