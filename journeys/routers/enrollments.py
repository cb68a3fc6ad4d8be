from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from journeys.core.authorization import Role, require_role
from journeys.core.clock import utcnow
from journeys.core.config import load_settings
from journeys.database import SessionLocal
from journeys.models.enrollment import ENROLLMENT_STATUSES, Enrollment
from journeys.schemas.enrollment import (
    EnrollmentListResponse,
    EnrollmentResponse,
    ExecutionLogResponse,
    ExitEnrollmentRequest,
)
from journeys.services import enrollment_store, execution_log
from journeys.services.errors import ClaimConflictError

router = APIRouter(prefix="/enrollments", tags=["Enrollments"])


def _get_enrollment(db: Session, event_id: str, enrollment_id: str) -> Enrollment:
    enrollment = (
        db.query(Enrollment)
        .filter(Enrollment.id == str(enrollment_id), Enrollment.event_id == str(event_id))
        .one_or_none()
    )
    if enrollment is None:
        raise HTTPException(status_code=404, detail="Enrollment not found")
    return enrollment


@router.get("", response_model=EnrollmentListResponse)
def list_enrollments(
    request: Request,
    automation_id: Optional[str] = None,
    contact_id: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0, le=1_000_000),
    _role=Depends(require_role(Role.VIEWER)),
):
    if status is not None and status not in ENROLLMENT_STATUSES:
        raise HTTPException(status_code=400, detail=f"Invalid status: {status}")

    db: Session = SessionLocal()
    try:
        rows = enrollment_store.list_enrollments(
            db,
            event_id=request.state.event_id,
            automation_id=automation_id,
            contact_id=contact_id,
            status=status,
            limit=limit,
            offset=offset,
        )
        return {"limit": int(limit), "offset": int(offset), "rows": rows}
    finally:
        db.close()


@router.get("/{enrollment_id}", response_model=EnrollmentResponse)
def get_enrollment(enrollment_id: str, request: Request, _role=Depends(require_role(Role.VIEWER))):
    db: Session = SessionLocal()
    try:
        return _get_enrollment(db, request.state.event_id, enrollment_id)
    finally:
        db.close()


@router.get("/{enrollment_id}/logs", response_model=list[ExecutionLogResponse])
def get_enrollment_logs(
    enrollment_id: str,
    request: Request,
    limit: int = Query(500, ge=1, le=2000),
    _role=Depends(require_role(Role.VIEWER)),
):
    db: Session = SessionLocal()
    try:
        enrollment = _get_enrollment(db, request.state.event_id, enrollment_id)
        return execution_log.history(db, enrollment.id, limit=limit)
    finally:
        db.close()


@router.post("/{enrollment_id}/exit", response_model=EnrollmentResponse)
def exit_enrollment(
    enrollment_id: str,
    payload: ExitEnrollmentRequest,
    request: Request,
    _role=Depends(require_role(Role.ORGANIZER)),
):
    settings = load_settings()
    db: Session = SessionLocal()
    try:
        enrollment = _get_enrollment(db, request.state.event_id, enrollment_id)
        if enrollment.is_terminal:
            raise HTTPException(status_code=409, detail=f"Enrollment is already {enrollment.status}")

        try:
            enrollment = enrollment_store.exit_one(
                db, enrollment.id, reason=payload.reason, now=utcnow(), ttl_seconds=settings.claim_ttl_seconds
            )
            db.commit()
        except ClaimConflictError as exc:
            db.rollback()
            raise HTTPException(status_code=409, detail="Enrollment is being processed; retry shortly") from exc
        return enrollment
    finally:
        db.close()
