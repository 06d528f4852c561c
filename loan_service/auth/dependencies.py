import enum
from dataclasses import dataclass

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError

from loan_service.auth.jwt import decode_token

security = HTTPBearer(auto_error=False)


class UserRole(str, enum.Enum):
    ADMIN = "ADMIN"
    LIBRARIAN = "LIBRARIAN"
    MEMBER = "MEMBER"


STAFF_ROLES: tuple[UserRole, ...] = (UserRole.ADMIN, UserRole.LIBRARIAN)


@dataclass(frozen=True)
class Principal:
    """Caller identity taken from the JWT issued by the user service."""

    user_id: int
    role: UserRole
    token: str

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> Principal:
    if credentials is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        payload = decode_token(credentials.credentials)
        user_id = int(payload["sub"])
        role = UserRole(str(payload.get("role", UserRole.MEMBER.value)).upper())
    except (JWTError, KeyError, TypeError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return Principal(user_id=user_id, role=role, token=credentials.credentials)


def require_role(*roles: UserRole) -> Depends:
    async def _dep(current_user: Principal = Depends(get_current_user)) -> Principal:
        if current_user.role not in roles:
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return current_user

    return Depends(_dep)


def ensure_owner_or_staff(current_user: Principal, user_id: int) -> None:
    """Members may only act on their own loans; librarians and admins on any."""
    if not current_user.is_staff and current_user.user_id != user_id:
        raise HTTPException(status_code=403, detail="Cannot access another user's loans")
