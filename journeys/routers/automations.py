from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import ValidationError
from sqlalchemy.orm import Session

from journeys.core.authorization import Role, require_role
from journeys.core.config import load_settings
from journeys.database import SessionLocal
from journeys.schemas.automation import (
    AutomationCreate,
    AutomationDuplicate,
    AutomationResponse,
    AutomationStats,
    AutomationUpdate,
    DefinitionResponse,
    ExitActiveResult,
    RecountResult,
)
from journeys.schemas.enrollment import EnrollmentResponse, ExecutionLogResponse, ManualEnrollmentRequest
from journeys.schemas.steps import StepGraph
from journeys.services import automation_service
from journeys.services.automation_service import AutomationStateError
from journeys.services.errors import AutomationError, AutomationNotFound

router = APIRouter(prefix="/automations", tags=["Automations"])


def _raise_http(exc: Exception):
    if isinstance(exc, AutomationNotFound):
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    if isinstance(exc, AutomationStateError):
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    if isinstance(exc, ValidationError):
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False, include_context=False)) from exc
    if isinstance(exc, AutomationError):
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    raise exc


def _definition_response(row) -> dict:
    return {
        "automation_id": row.automation_id,
        "version": row.version,
        "start_step_id": row.start_step_id,
        "steps": row.steps,
        "created_at": row.created_at,
    }


@router.post("", response_model=AutomationResponse, status_code=201)
def create_automation(
    payload: AutomationCreate,
    request: Request,
    _role=Depends(require_role(Role.ORGANIZER)),
):
    db: Session = SessionLocal()
    try:
        try:
            return automation_service.create_automation(
                db,
                event_id=request.state.event_id,
                payload=payload,
                created_by=request.state.user_id,
            )
        except (AutomationError, ValidationError) as exc:
            db.rollback()
            _raise_http(exc)
    finally:
        db.close()


@router.get("", response_model=list[AutomationResponse])
def list_automations(
    request: Request,
    status: Optional[str] = None,
    trigger_type: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    _role=Depends(require_role(Role.VIEWER)),
):
    db: Session = SessionLocal()
    try:
        return automation_service.list_automations(
            db,
            request.state.event_id,
            status=status,
            trigger_type=trigger_type,
            limit=limit,
            offset=offset,
        )
    finally:
        db.close()


@router.get("/{automation_id}", response_model=AutomationResponse)
def get_automation(automation_id: str, request: Request, _role=Depends(require_role(Role.VIEWER))):
    db: Session = SessionLocal()
    try:
        try:
            return automation_service.get_automation(db, request.state.event_id, automation_id)
        except AutomationError as exc:
            _raise_http(exc)
    finally:
        db.close()


@router.patch("/{automation_id}", response_model=AutomationResponse)
def update_automation(
    automation_id: str,
    payload: AutomationUpdate,
    request: Request,
    _role=Depends(require_role(Role.ORGANIZER)),
):
    db: Session = SessionLocal()
    try:
        try:
            return automation_service.update_automation(db, request.state.event_id, automation_id, payload)
        except (AutomationError, ValidationError) as exc:
            db.rollback()
            _raise_http(exc)
    finally:
        db.close()


@router.put("/{automation_id}/definition", response_model=DefinitionResponse)
def publish_definition(
    automation_id: str,
    graph: StepGraph,
    request: Request,
    _role=Depends(require_role(Role.ORGANIZER)),
):
    db: Session = SessionLocal()
    try:
        try:
            row = automation_service.publish_definition(
                db, request.state.event_id, automation_id, graph, created_by=request.state.user_id
            )
        except AutomationError as exc:
            db.rollback()
            _raise_http(exc)
        return _definition_response(row)
    finally:
        db.close()


@router.get("/{automation_id}/definition", response_model=DefinitionResponse)
def get_definition(
    automation_id: str,
    request: Request,
    version: Optional[int] = Query(None, ge=1),
    _role=Depends(require_role(Role.VIEWER)),
):
    db: Session = SessionLocal()
    try:
        try:
            row = automation_service.get_definition(db, request.state.event_id, automation_id, version)
        except AutomationError as exc:
            _raise_http(exc)
        return _definition_response(row)
    finally:
        db.close()


def _lifecycle(action, automation_id: str, request: Request):
    db: Session = SessionLocal()
    try:
        try:
            return action(db, request.state.event_id, automation_id)
        except AutomationError as exc:
            db.rollback()
            _raise_http(exc)
    finally:
        db.close()


@router.post("/{automation_id}/activate", response_model=AutomationResponse)
def activate(automation_id: str, request: Request, _role=Depends(require_role(Role.ORGANIZER))):
    return _lifecycle(automation_service.activate, automation_id, request)


@router.post("/{automation_id}/pause", response_model=AutomationResponse)
def pause(automation_id: str, request: Request, _role=Depends(require_role(Role.ORGANIZER))):
    return _lifecycle(automation_service.pause, automation_id, request)


@router.post("/{automation_id}/resume", response_model=AutomationResponse)
def resume(automation_id: str, request: Request, _role=Depends(require_role(Role.ORGANIZER))):
    return _lifecycle(automation_service.resume, automation_id, request)


@router.post("/{automation_id}/exit-active", response_model=ExitActiveResult)
def exit_active(
    automation_id: str,
    request: Request,
    reason: str = Query("automation_paused", min_length=1, max_length=500),
    _role=Depends(require_role(Role.ORGANIZER)),
):
    settings = load_settings()
    db: Session = SessionLocal()
    try:
        try:
            exited, busy = automation_service.exit_active(
                db,
                request.state.event_id,
                automation_id,
                reason=reason,
                ttl_seconds=settings.claim_ttl_seconds,
            )
        except AutomationError as exc:
            _raise_http(exc)
        return {"exited": exited, "busy": busy}
    finally:
        db.close()


@router.post("/{automation_id}/enrollments", response_model=EnrollmentResponse, status_code=201)
def enroll_contact(
    automation_id: str,
    payload: ManualEnrollmentRequest,
    request: Request,
    _role=Depends(require_role(Role.ORGANIZER)),
):
    db: Session = SessionLocal()
    try:
        try:
            return automation_service.enroll_contact(db, request.state.event_id, automation_id, payload.contact_id)
        except AutomationError as exc:
            db.rollback()
            _raise_http(exc)
    finally:
        db.close()


@router.get("/{automation_id}/logs", response_model=list[ExecutionLogResponse])
def get_logs(
    automation_id: str,
    request: Request,
    contact_id: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    _role=Depends(require_role(Role.VIEWER)),
):
    db: Session = SessionLocal()
    try:
        try:
            return automation_service.get_logs(
                db, request.state.event_id, automation_id, contact_id=contact_id, limit=limit
            )
        except AutomationError as exc:
            _raise_http(exc)
    finally:
        db.close()


@router.post("/{automation_id}/duplicate", response_model=AutomationResponse, status_code=201)
def duplicate(
    automation_id: str,
    payload: AutomationDuplicate,
    request: Request,
    _role=Depends(require_role(Role.ORGANIZER)),
):
    db: Session = SessionLocal()
    try:
        try:
            return automation_service.duplicate(
                db, request.state.event_id, automation_id, name=payload.name, created_by=request.state.user_id
            )
        except AutomationError as exc:
            db.rollback()
            _raise_http(exc)
    finally:
        db.close()


@router.post("/{automation_id}/recount", response_model=RecountResult)
def recount(automation_id: str, request: Request, _role=Depends(require_role(Role.ADMIN))):
    return _lifecycle(automation_service.recount, automation_id, request)


@router.get("/{automation_id}/stats", response_model=AutomationStats)
def stats(automation_id: str, request: Request, _role=Depends(require_role(Role.VIEWER))):
    return _lifecycle(automation_service.stats, automation_id, request)
