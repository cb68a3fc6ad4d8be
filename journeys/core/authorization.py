from enum import Enum

from fastapi import Depends, HTTPException, Request

from journeys.deps.auth import require_auth


class Role(Enum):
    ADMIN = "ADMIN"
    ORGANIZER = "ORGANIZER"
    VIEWER = "VIEWER"


_RANK = {
    Role.VIEWER: 1,
    Role.ORGANIZER: 2,
    Role.ADMIN: 3,
}


def require_role(role: Role):
    def dependency(request: Request, _auth: tuple[str, str] = Depends(require_auth)):
        claims = getattr(request.state, "claims", {}) or {}

        claim_role = claims.get("role")
        if not claim_role:
            claim_role = "ORGANIZER"

        try:
            user_role = Role(str(claim_role).upper())
        except ValueError as exc:
            raise HTTPException(status_code=403, detail="Invalid role claim") from exc

        if _RANK[user_role] < _RANK[role]:
            raise HTTPException(status_code=403, detail="Insufficient role")

        request.state.role = user_role.value
        return user_role

    return dependency
