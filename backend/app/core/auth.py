"""Operator identity for API routes.

Authentication itself belongs to the dashboard's identity provider; the API
only reads who is acting and in which role from request headers.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException, status

from app.core.logging import logger
from app.models.ledger import OperatorRole


@dataclass
class OperatorContext:
    actor: Optional[str]
    role: str


SUPPORTED_ROLES = {role.value for role in OperatorRole}


def _normalize_role(value: str | None) -> str:
    role = (value or "").strip().lower()
    if not role:
        return OperatorRole.OPERATOR.value
    if role not in SUPPORTED_ROLES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unsupported role '{value}'. Expected one of: {sorted(SUPPORTED_ROLES)}",
        )
    return role


def get_operator_context(
    x_operator_name: str | None = Header(default=None, alias="X-Operator-Name"),
    x_operator_role: str | None = Header(default=None, alias="X-Operator-Role"),
) -> OperatorContext:
    """Resolve the acting operator from headers."""
    actor = " ".join((x_operator_name or "").split()).strip() or None
    return OperatorContext(actor=actor, role=_normalize_role(x_operator_role))


def require_roles(*allowed_roles: str):
    """Dependency factory that enforces role-based access control."""
    allowed = {role.strip().lower() for role in allowed_roles if role.strip()}
    if not allowed:
        raise ValueError("At least one role is required")

    def _guard(context: OperatorContext = Depends(get_operator_context)) -> OperatorContext:
        if context.role not in allowed:
            logger.warning("Operator role rejected", role=context.role, allowed=sorted(allowed))
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Role '{context.role}' not permitted for this operation",
            )
        return context

    return _guard
