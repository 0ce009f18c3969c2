from dataclasses import dataclass
from enum import Enum

from fastapi import Depends, HTTPException, Request

from app.deps.auth import _verified_claims, require_auth


class Role(Enum):
    ADMIN = "ADMIN"
    MANAGER = "MANAGER"
    EMPLOYEE = "EMPLOYEE"


_RANK = {
    Role.EMPLOYEE: 1,
    Role.MANAGER: 2,
    Role.ADMIN: 3,
}


@dataclass(frozen=True)
class Actor:
    user_id: str
    company_id: int
    role: Role


def require_role(role: Role):
    def dependency(request: Request, _auth: tuple[str, int] = Depends(require_auth)) -> Actor:
        claims = _verified_claims(request)

        claim_role = claims.get("role") or "MANAGER"

        try:
            user_role = Role(str(claim_role).upper())
        except ValueError as exc:
            raise HTTPException(status_code=403, detail="Invalid role claim") from exc

        if _RANK[user_role] < _RANK[role]:
            raise HTTPException(status_code=403, detail="Insufficient role")

        request.state.role = user_role.value
        return Actor(
            user_id=str(request.state.user_id),
            company_id=int(request.state.company_id),
            role=user_role,
        )

    return dependency
