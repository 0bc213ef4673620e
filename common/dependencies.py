"""Reusable FastAPI dependencies for identity, collaborators and service keys."""
from functools import lru_cache
from typing import Callable, Optional

from fastapi import Depends, Security
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer

from .auth import Identity, decode_token
from .clients import PropertyCatalogClient
from .config import get_settings
from .errors import ForbiddenError, UnauthorizedError
from .models import RoleEnum

settings = get_settings()
bearer_scheme = HTTPBearer(auto_error=False)
service_api_key_header = APIKeyHeader(name="X-Service-Key", auto_error=False)


def get_current_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Identity:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise UnauthorizedError("Missing bearer token")
    return decode_token(credentials.credentials)


def allow_roles(*roles: RoleEnum) -> Callable[[Identity], Identity]:
    def dependency(identity: Identity = Depends(get_current_identity)) -> Identity:
        if not identity.has_role(*roles):
            raise ForbiddenError("Insufficient permissions")
        return identity

    return dependency


def require_service_key(api_key: Optional[str] = Security(service_api_key_header)) -> None:
    if not api_key or api_key != settings.service_api_key:
        raise ForbiddenError("Invalid service key")


@lru_cache
def get_property_catalog() -> PropertyCatalogClient:
    return PropertyCatalogClient.from_settings(get_settings())
