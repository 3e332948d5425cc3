# auth.py
from asyncio import iscoroutinefunction
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import wraps
from typing import Optional

from jose import JWTError, jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from .dependencies import UserRole
import logging

# Tokens come from the identity service; this service only verifies them
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token")


@dataclass
class Actor:
    user_id: str
    name: Optional[str] = None
    role: Optional[str] = None


def create_access_token(data: dict, secret_key: str, algorithm: str = "HS256", expires_delta: timedelta = None):
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(minutes=15)
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, secret_key, algorithm=algorithm)
    return encoded_jwt


async def get_current_user(request: Request, token: str = Depends(oauth2_scheme)) -> Actor:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    settings = request.app.state.settings
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
        user_id: str = payload.get("sub")
        if user_id is None:
            raise credentials_exception
    except JWTError as e:
        logging.error(f"JWTError: {str(e)}")
        raise credentials_exception
    return Actor(user_id=str(user_id), name=payload.get("name"), role=payload.get("role"))


def role_required(required_roles):
    def decorator(func):
        @wraps(func)
        async def async_wrapper(*args, current_user: Actor = Depends(get_current_user), **kwargs):
            if current_user.role not in required_roles and current_user.role != UserRole.ADMIN.value:
                raise HTTPException(status_code=403, detail="User does not have the required role")
            return await func(*args, current_user=current_user, **kwargs)

        @wraps(func)
        def sync_wrapper(*args, current_user: Actor = Depends(get_current_user), **kwargs):
            if current_user.role not in required_roles and current_user.role != UserRole.ADMIN.value:
                raise HTTPException(status_code=403, detail="User does not have the required role")
            return func(*args, current_user=current_user, **kwargs)

        if iscoroutinefunction(func):
            return async_wrapper
        else:
            return sync_wrapper

    return decorator
