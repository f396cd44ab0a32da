import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwt

from storefront import config
from storefront.errors import NotFoundError

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class CurrentUser:
    id: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def decode_token(token: str) -> CurrentUser:
    try:
        payload = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
    except ExpiredSignatureError:
        raise _unauthorized("Token expired")
    except JWTError as e:
        logger.info("Rejected bearer token: %s", e)
        raise _unauthorized("Invalid token")

    user_id = payload.get("id") or payload.get("sub")
    if not user_id:
        raise _unauthorized("Invalid token")
    return CurrentUser(id=str(user_id), role=payload.get("role", "user"))


async def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Optional[CurrentUser]:
    if credentials is None:
        return None
    return decode_token(credentials.credentials)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> CurrentUser:
    if credentials is None:
        raise _unauthorized("No token provided, authorization denied")
    return decode_token(credentials.credentials)


def check_order_access(order, user: Optional[CurrentUser]):
    """Guest orders are open to anyone holding the id; owned orders need the owner or an admin."""
    if not order.user_id:
        return
    if user is None:
        raise _unauthorized("No token provided, authorization denied")
    if not (user.is_admin or user.id == order.user_id):
        raise NotFoundError(f"Order {order.id} not found")


async def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return user
