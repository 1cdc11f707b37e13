"""Error taxonomy for the status ledger.

``CaseNotFound``, ``AlreadyInitialized`` and ``TerminalStateViolation`` are
expected conditions surfaced to callers. ``ConcurrentModification`` is retried
inside the ledger before it escapes. ``InvalidState`` is a programming error.
"""
from __future__ import annotations

from typing import Optional


class LedgerError(Exception):
    """Base class for all ledger failures."""

    code = "ledger_error"

    def __init__(self, message: str, *, case_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.case_id = case_id

    def __str__(self) -> str:
        return self.message

    def to_detail(self) -> dict:
        return {"code": self.code, "message": self.message, "case_id": self.case_id}


class CaseNotFound(LedgerError, KeyError):
    code = "case_not_found"

    def __init__(self, case_id: str) -> None:
        super().__init__(f"Case '{case_id}' not found", case_id=case_id)


class AlreadyInitialized(LedgerError):
    code = "already_initialized"

    def __init__(self, case_id: str) -> None:
        super().__init__(f"Case '{case_id}' already has a status ledger", case_id=case_id)


class TerminalStateViolation(LedgerError):
    code = "case_finalized"

    def __init__(self, case_id: str) -> None:
        super().__init__(
            f"Case '{case_id}' is finalized; no further status changes are accepted",
            case_id=case_id,
        )


class ConcurrentModification(LedgerError):
    code = "concurrent_modification"


class SequenceMismatch(ConcurrentModification):
    """Caller's expected sequence number no longer matches the ledger. Not retried."""

    code = "sequence_mismatch"

    def __init__(self, case_id: str, expected: int, current: int) -> None:
        super().__init__(
            f"Sequence conflict for {case_id}. expected={expected} current={current}",
            case_id=case_id,
        )
        self.expected = expected
        self.current = current


class InvalidState(LedgerError, ValueError):
    code = "invalid_state"

    def __init__(self, value: object) -> None:
        super().__init__(f"Unknown tracking state {value!r}")
        self.value = value
