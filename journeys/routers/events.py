from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from journeys.core.authorization import Role, require_role
from journeys.database import SessionLocal
from journeys.schemas.enrollment import EmitEventRequest, EmitEventResponse
from journeys.services.trigger_dispatcher import DomainEvent, emit_event

router = APIRouter(prefix="/events", tags=["Events"])


@router.post("", response_model=EmitEventResponse, status_code=202)
def post_event(payload: EmitEventRequest, request: Request, _role=Depends(require_role(Role.ORGANIZER))):
    """Queue a domain event; the scheduler dispatches it on its next tick."""
    event = DomainEvent(
        type=payload.type,
        contact_id=payload.contact_id,
        event_id=request.state.event_id,
        edition_id=payload.edition_id,
        payload=payload.payload,
        idempotency_key=payload.idempotency_key,
    )

    db: Session = SessionLocal()
    try:
        row, duplicate = emit_event(event, db=db)
        body = {"id": row.id, "accepted": not duplicate, "duplicate": duplicate}
    finally:
        db.close()

    if duplicate:
        return JSONResponse(status_code=200, content=body)
    return body
