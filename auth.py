import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from bson import ObjectId
from fastapi import Depends, HTTPException, Request, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel

import config
from database import get_db

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
bearer_scheme = HTTPBearer(auto_error=False)

NOT_AUTHORIZED = "Not authorized to access this resource"
ADMIN_ONLY = "Access denied. Admin privileges required"


class Principal(BaseModel):
    """The authenticated account attached to a request."""
    id: str
    name: str
    email: str
    phone: Optional[str] = None
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def object_id(self) -> ObjectId:
        return ObjectId(self.id)


def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def create_access_token(user_id: str, expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(days=config.JWT_EXPIRE_DAYS))
    return jwt.encode({"sub": user_id, "exp": expire}, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def set_token_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        key="token",
        value=token,
        max_age=config.COOKIE_EXPIRE_DAYS * 24 * 60 * 60,
        httponly=True,
        secure=config.COOKIE_SECURE,
        samesite="lax",
    )


def principal_from_doc(user: dict) -> Principal:
    return Principal(
        id=str(user["_id"]),
        name=user.get("name"),
        email=user.get("email"),
        phone=user.get("phone"),
        role=user.get("role", "user"),
    )


def _extract_token(request: Request, credentials: Optional[HTTPAuthorizationCredentials]) -> Optional[str]:
    if credentials is not None and credentials.credentials:
        return credentials.credentials
    return request.cookies.get("token") or None


def protect(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db=Depends(get_db),
) -> Principal:
    """Resolve the bearer token (header or `token` cookie) to an account, or fail with 401."""
    credentials_exception = HTTPException(status_code=401, detail=NOT_AUTHORIZED)
    token = _extract_token(request, credentials)
    if not token:
        raise credentials_exception
    try:
        payload = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
        user_id: str = payload.get("sub")
        if user_id is None or not ObjectId.is_valid(user_id):
            raise credentials_exception
    except JWTError as exc:
        logger.debug("Rejected credential: %s", type(exc).__name__)
        raise credentials_exception
    user = db["user"].find_one({"_id": ObjectId(user_id)})
    if not user:
        logger.debug("Rejected credential for missing account %s", user_id)
        raise credentials_exception
    return principal_from_doc(user)


def admin(current: Principal = Depends(protect)) -> Principal:
    if not current.is_admin:
        raise HTTPException(status_code=403, detail=ADMIN_ONLY)
    return current
