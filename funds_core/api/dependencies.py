"""
Authentication and authorization dependencies
"""

from dataclasses import dataclass
from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import jwt

from ..system import BankingSystem
from ..users import UserRole
from ..errors import AuthError, PermissionDeniedError


# JWT Security
security = HTTPBearer(auto_error=False)


@dataclass
class CallerIdentity:
    """Verified caller identity: ``sub`` and ``role`` claims of the bearer token"""
    user_id: str
    role: UserRole

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


# Dependency to get banking system
def get_banking_system(request: Request) -> BankingSystem:
    return request.app.state.banking_system


def get_current_identity(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    system: BankingSystem = Depends(get_banking_system)
) -> CallerIdentity:
    """Dependency that validates the JWT and returns the caller"""
    config = system.config
    if not config.auth_enabled:
        return CallerIdentity(user_id="test_user", role=UserRole.ADMIN)

    if not credentials:
        raise AuthError("Not authenticated")
    try:
        payload = jwt.decode(credentials.credentials, config.jwt_secret, algorithms=[config.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise AuthError("Token expired", code="token_expired")
    except jwt.InvalidTokenError:
        raise AuthError("Invalid token", code="invalid_token")

    user_id = payload.get("sub")
    if not user_id:
        raise AuthError("Invalid token", code="invalid_token")
    try:
        role = UserRole(payload.get("role", UserRole.USER.value))
    except ValueError:
        raise AuthError("Invalid token role", code="invalid_token")
    return CallerIdentity(user_id=user_id, role=role)


def require_admin(identity: CallerIdentity = Depends(get_current_identity)) -> CallerIdentity:
    if not identity.is_admin:
        raise PermissionDeniedError("Admin access required")
    return identity
