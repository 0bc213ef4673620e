"""JWT handling for the verified (user_id, roles) identity carried by each request."""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Optional

from jose import JWTError, jwt
from pydantic import BaseModel

from .config import get_settings
from .errors import UnauthorizedError
from .models import RoleEnum

settings = get_settings()


class Identity(BaseModel):
    user_id: str
    roles: frozenset[RoleEnum]

    def has_role(self, *roles: RoleEnum) -> bool:
        return any(role in self.roles for role in roles)

    @property
    def is_admin(self) -> bool:
        return RoleEnum.ADMIN in self.roles


def create_access_token(
    user_id: str,
    roles: Iterable[RoleEnum | str],
    expires_delta: Optional[timedelta] = None,
) -> str:
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))
    to_encode: Dict[str, Any] = {
        "sub": user_id,
        "roles": [RoleEnum(role).value for role in roles],
        "exp": expire,
    }
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> Identity:
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise UnauthorizedError("Invalid token") from exc
    user_id = payload.get("sub")
    if not user_id:
        raise UnauthorizedError("Missing subject in token")
    try:
        roles = frozenset(RoleEnum(role) for role in payload.get("roles") or [])
    except ValueError as exc:
        raise UnauthorizedError("Unknown role in token") from exc
    return Identity(user_id=str(user_id), roles=roles)
