"""
Audit log endpoints

Staff read the events of their own bank. Verifying the hash chain covers
every bank, so it is reserved for super-admins.
"""

from enum import Enum
from typing import Optional, Type

from fastapi import APIRouter, Depends, Query

from .auth import BankingSystem, get_banking_system, get_current_actor
from .schemas import success_response
from ..access import Actor, Permission
from ..audit import AuditAction, AuditOutcome, AuditResourceType, AuditTrail
from ..errors import NotFound, ValidationError


router = APIRouter()


def _require_trail(system: BankingSystem) -> AuditTrail:
    trail = system.audit_trail
    if trail is None:
        raise NotFound("Audit trail is not enabled")
    return trail


def _scoped_tenant(system: BankingSystem, actor: Actor, tenant_id: Optional[str]) -> Optional[str]:
    system.access_policy.require_staff(actor, tenant_id)
    return tenant_id or system.access_policy.tenant_scope(actor)


def _parse_enum(enum_type: Type[Enum], value: Optional[str], field_name: str):
    if value is None:
        return None
    try:
        return enum_type(value)
    except ValueError:
        raise ValidationError(f"Unknown {field_name}: {value}", {"field": field_name})


@router.get("")
def list_events(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    tenant_id: Optional[str] = Query(None),
    actor_id: Optional[str] = Query(None),
    action: Optional[str] = Query(None),
    resource_type: Optional[str] = Query(None),
    resource_id: Optional[str] = Query(None),
    outcome: Optional[str] = Query(None),
    actor: Actor = Depends(get_current_actor),
    system: BankingSystem = Depends(get_banking_system)
):
    """Audit events of the caller's bank, newest first (staff only)"""
    scope = _scoped_tenant(system, actor, tenant_id)
    trail = _require_trail(system)
    filters = {
        'tenant_id': scope,
        'actor_id': actor_id,
        'action': _parse_enum(AuditAction, action, "action"),
        'resource_type': _parse_enum(AuditResourceType, resource_type, "resource_type"),
        'resource_id': resource_id,
        'outcome': _parse_enum(AuditOutcome, outcome, "outcome"),
    }
    result = trail.get_events(filters, page, limit)
    return success_response("Audit events retrieved successfully", {
        "events": [event.to_dict() for event in result['events']],
        "pagination": {
            "current": result['page'],
            "pages": result['pages'],
            "total": result['total'],
            "limit": limit
        }
    })


@router.get("/stats")
def audit_statistics(
    tenant_id: Optional[str] = Query(None),
    actor: Actor = Depends(get_current_actor),
    system: BankingSystem = Depends(get_banking_system)
):
    """Success and failure counts per action (staff only)"""
    scope = _scoped_tenant(system, actor, tenant_id)
    trail = _require_trail(system)
    return success_response("Audit statistics retrieved successfully", trail.statistics(scope))


@router.get("/verify")
def verify_chain(
    actor: Actor = Depends(get_current_actor),
    system: BankingSystem = Depends(get_banking_system)
):
    """Recompute every hash of the audit chain"""
    system.access_policy.require_permission(actor, Permission.CROSS_TENANT)
    trail = _require_trail(system)
    return success_response("Audit chain verified", trail.verify_integrity())
