"""FastAPI dependencies resolving services opened in the app lifespan."""
from __future__ import annotations

from fastapi import HTTPException, Request, status

from app.core.errors import (
    AlreadyInitialized,
    CaseNotFound,
    ConcurrentModification,
    InvalidState,
    LedgerError,
    TerminalStateViolation,
)
from app.services.wiring import LedgerServices


def get_services(request: Request) -> LedgerServices:
    services = getattr(request.app.state, "ledger_services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Ledger storage is not open",
        )
    return services


def ledger_http_error(exc: LedgerError) -> HTTPException:
    """Map ledger failures to HTTP responses the dashboard can tell apart."""
    if isinstance(exc, CaseNotFound):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, (AlreadyInitialized, TerminalStateViolation, ConcurrentModification)):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, InvalidState):
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
    else:
        code = status.HTTP_400_BAD_REQUEST
    return HTTPException(status_code=code, detail=exc.to_detail())
