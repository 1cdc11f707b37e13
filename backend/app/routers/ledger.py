"""API routes for case status transitions and per-case time analytics."""
from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, Header, HTTPException

from app.core.auth import OperatorContext, get_operator_context, require_roles
from app.core.errors import LedgerError
from app.core.logging import logger
from app.models.ledger import (
    CaseAnalysis,
    CaseCreateRequest,
    CaseCreateResponse,
    CaseRecord,
    HistoryResponse,
    InitializeRequest,
    StateDescriptor,
    TransitionEntry,
    TransitionRequest,
)
from app.routers.dependencies import get_services, ledger_http_error
from app.services import state_catalog
from app.services.wiring import LedgerServices

router = APIRouter(prefix="/ledger", tags=["ledger"])


def _idempotency_lookup(services: LedgerServices, operation: str, key: str | None):
    if not key:
        return None
    return services.database.get_idempotent(f"{operation}:{key.strip()}")


def _idempotency_store(services: LedgerServices, operation: str, key: str | None, response: dict):
    if not key:
        return
    services.database.set_idempotent(f"{operation}:{key.strip()}", response)


@router.get("/states", response_model=List[StateDescriptor])
def list_states():
    return state_catalog.describe()


@router.get("/cases", response_model=List[CaseRecord])
def list_cases(services: LedgerServices = Depends(get_services)):
    return services.cases.list_cases()


@router.post("/cases", response_model=CaseCreateResponse)
def create_case(
    request: CaseCreateRequest,
    services: LedgerServices = Depends(get_services),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    cached = _idempotency_lookup(services, "create_case", idempotency_key)
    if cached:
        return cached
    try:
        case = services.cases.register_case(
            created_by=request.actor,
            case_id=request.case_id,
            vehicle_code=request.vehicle_code,
            driver_name=request.driver_name,
            initial_state=request.initial_state,
            details=request.details,
        )
        try:
            entry = services.ledger.initialize_first(
                case.case_id,
                request.initial_state,
                request.actor,
                request.notes,
            )
        except Exception:
            services.cases.delete_case(case.case_id)
            raise
        response = CaseCreateResponse(case=case, entry=entry).model_dump(mode="json")
        _idempotency_store(services, "create_case", idempotency_key, response)
        return response
    except LedgerError as exc:
        raise ledger_http_error(exc)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except Exception as exc:
        logger.error("Failed to create case", case_id=request.case_id, error=str(exc))
        raise HTTPException(status_code=400, detail=str(exc))


@router.delete("/cases/{case_id}")
def delete_case(
    case_id: str,
    services: LedgerServices = Depends(get_services),
    context: OperatorContext = Depends(require_roles("manager", "admin")),
):
    try:
        removed = services.cases.delete_case(case_id)
    except LedgerError as exc:
        raise ledger_http_error(exc)
    logger.info("Case deleted via API", case_id=case_id, actor=context.actor, role=context.role)
    return {"case_id": case_id, "deleted": True, "entries_removed": removed}


@router.post("/cases/{case_id}/initialize", response_model=TransitionEntry)
def initialize_case(
    case_id: str,
    request: InitializeRequest,
    services: LedgerServices = Depends(get_services),
):
    try:
        return services.ledger.initialize_first(case_id, request.initial_state, request.actor, request.notes)
    except LedgerError as exc:
        raise ledger_http_error(exc)


@router.post("/cases/{case_id}/transitions", response_model=TransitionEntry)
def transition_case(
    case_id: str,
    request: TransitionRequest,
    services: LedgerServices = Depends(get_services),
    context: OperatorContext = Depends(get_operator_context),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    operation = f"transition:{case_id}:{request.new_state.value}"
    cached = _idempotency_lookup(services, operation, idempotency_key)
    if cached:
        return cached
    try:
        entry = services.ledger.transition(
            case_id,
            request.new_state,
            request.actor,
            request.notes,
            expected_sequence_no=request.expected_sequence_no,
        )
    except LedgerError as exc:
        if exc.code != "case_not_found":
            logger.warning("Status transition rejected", case_id=case_id, code=exc.code, role=context.role)
        raise ledger_http_error(exc)
    except Exception as exc:
        logger.error("Failed to transition case", case_id=case_id, error=str(exc))
        raise HTTPException(status_code=400, detail=str(exc))
    response = entry.model_dump(mode="json")
    _idempotency_store(services, operation, idempotency_key, response)
    return response


@router.get("/cases/{case_id}/current")
def get_current_entry(case_id: str, services: LedgerServices = Depends(get_services)):
    try:
        entry = services.ledger.current_entry(case_id)
    except LedgerError as exc:
        raise ledger_http_error(exc)
    retired = entry is not None and not entry.is_open and state_catalog.is_terminal(entry.new_state)
    return {
        "case_id": case_id,
        "entry": entry.model_dump(mode="json") if entry else None,
        "retired": retired,
    }


@router.get("/cases/{case_id}/history", response_model=HistoryResponse)
def get_history(case_id: str, services: LedgerServices = Depends(get_services)):
    try:
        entries = services.ledger.full_history(case_id)
    except LedgerError as exc:
        raise ledger_http_error(exc)
    retired = bool(entries) and not entries[-1].is_open and state_catalog.is_terminal(entries[-1].new_state)
    return HistoryResponse(case_id=case_id, entries=entries, retired=retired)


@router.get("/cases/{case_id}/analysis", response_model=CaseAnalysis)
def get_analysis(case_id: str, services: LedgerServices = Depends(get_services)):
    try:
        return services.analyzer.analyze_case(case_id)
    except LedgerError as exc:
        raise ledger_http_error(exc)
