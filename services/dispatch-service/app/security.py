import uuid
from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from .config import JWT_ALGORITHM, JWT_SECRET
from .errors import ValidationFailed

ROLE_CUSTOMER = "customer"
ROLE_TECHNICIAN = "technician"
ROLE_OWNER = "owner"

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Principal:
    """Resolved identity; authentication happens upstream of this service."""

    user_id: str
    role: str
    profile_id: str | None = None


def principal_from_claims(payload: dict) -> Principal:
    user_id = payload.get("sub")
    role = (payload.get("role") or "").strip().lower()
    if not user_id or not role:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token is missing subject or role",
        )
    return Principal(user_id=str(user_id), role=role, profile_id=payload.get("profile_id"))


def get_principal(
    request: Request,
    creds: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Principal:
    token = None
    if creds and creds.scheme.lower() == "bearer":
        token = creds.credentials

    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Bearer token",
        )

    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )

    principal = principal_from_claims(payload)
    request.state.user_sub = principal.user_id
    request.state.user_role = principal.role
    return principal


def require_role(principal: Principal, allowed_roles: list[str]):
    if principal.role not in {r.lower() for r in allowed_roles}:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Access forbidden for this role",
        )


def require_technician_profile(principal: Principal) -> str:
    require_role(principal, [ROLE_TECHNICIAN])
    if not principal.profile_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has no technician profile",
        )
    return principal.profile_id


def issue_token(principal: Principal) -> str:
    """Mint a token for a resolved principal (used by tooling and tests)."""
    claims = {"sub": principal.user_id, "role": principal.role}
    if principal.profile_id:
        claims["profile_id"] = principal.profile_id
    return jwt.encode(claims, JWT_SECRET, algorithm=JWT_ALGORITHM)


def parse_id(value: str, field: str = "id") -> str:
    try:
        return str(uuid.UUID(str(value)))
    except (TypeError, ValueError):
        raise ValidationFailed(f"Invalid {field} format", detail={"field": field})
