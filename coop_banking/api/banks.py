"""
Cooperative bank endpoints

Registering and switching banks on or off is reserved for super-admins.
A bank's own staff and members may read its record.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from .auth import BankingSystem, get_banking_system, get_current_actor
from .schemas import RegisterBankRequest, success_response
from ..access import Actor, Permission
from ..errors import NotFound


router = APIRouter()


@router.post("")
def register_bank(
    request: RegisterBankRequest,
    actor: Actor = Depends(get_current_actor),
    system: BankingSystem = Depends(get_banking_system)
):
    """Register a new cooperative bank"""
    system.access_policy.require_permission(actor, Permission.MANAGE_BANKS)
    bank = system.banks.register_bank(
        request.bank_code,
        request.bank_name,
        short_name=request.short_name,
        registration_number=request.registration_number,
        license_number=request.license_number,
        actor_id=actor.actor_id
    )
    return success_response("Cooperative bank registered successfully", {"bank": bank.to_dict()}, 201)


@router.get("")
def list_banks(
    is_active: Optional[bool] = Query(None),
    actor: Actor = Depends(get_current_actor),
    system: BankingSystem = Depends(get_banking_system)
):
    """List cooperative banks"""
    system.access_policy.require_permission(actor, Permission.MANAGE_BANKS)
    banks = system.banks.list_banks(is_active)
    return success_response("Cooperative banks retrieved successfully",
                            {"banks": [bank.to_dict() for bank in banks]})


@router.get("/{bank_id}")
def get_bank(
    bank_id: str,
    actor: Actor = Depends(get_current_actor),
    system: BankingSystem = Depends(get_banking_system)
):
    """Get one cooperative bank"""
    system.access_policy.authorize_tenant(actor, bank_id)
    bank = system.banks.get_bank(bank_id)
    if bank is None:
        raise NotFound("Cooperative bank not found", {"bank_id": bank_id})
    return success_response("Cooperative bank retrieved successfully", {"bank": bank.to_dict()})


@router.put("/{bank_id}/activate")
def activate_bank(
    bank_id: str,
    actor: Actor = Depends(get_current_actor),
    system: BankingSystem = Depends(get_banking_system)
):
    """Allow a bank's members and staff to operate again"""
    system.access_policy.require_permission(actor, Permission.MANAGE_BANKS)
    bank = system.banks.activate_bank(bank_id, actor_id=actor.actor_id)
    return success_response("Cooperative bank activated successfully", {"bank": bank.to_dict()})


@router.put("/{bank_id}/deactivate")
def deactivate_bank(
    bank_id: str,
    actor: Actor = Depends(get_current_actor),
    system: BankingSystem = Depends(get_banking_system)
):
    """Block every request from a bank's members and staff"""
    system.access_policy.require_permission(actor, Permission.MANAGE_BANKS)
    bank = system.banks.deactivate_bank(bank_id, actor_id=actor.actor_id)
    return success_response("Cooperative bank deactivated successfully", {"bank": bank.to_dict()})
