from typing import Tuple

from fastapi import HTTPException, Request

from journeys.services.auth_service import verify_token


def _parse_bearer_token(request: Request) -> str:
    auth_header = request.headers.get("Authorization")
    if not auth_header:
        raise HTTPException(status_code=401, detail="Missing Authorization header")

    parts = auth_header.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1].strip():
        raise HTTPException(status_code=401, detail="Invalid Authorization header")

    return parts[1].strip()


def require_auth(request: Request) -> Tuple[str, str]:
    """Authenticate the caller and pin the request to one event (tenant)."""
    token = _parse_bearer_token(request)

    try:
        claims = verify_token(token)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    user_id = str(claims.get("sub"))
    token_event_id = str(claims.get("event_id"))

    header_event_id = request.headers.get("X-Event-Id")
    if header_event_id is None or not header_event_id.strip():
        raise HTTPException(status_code=403, detail="Missing X-Event-Id header")

    if header_event_id.strip() != token_event_id:
        raise HTTPException(status_code=403, detail="Event mismatch")

    request.state.user_id = user_id
    request.state.event_id = token_event_id
    request.state.claims = claims

    return user_id, token_event_id
