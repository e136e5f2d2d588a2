"""
Account endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from .auth import BankingSystem, get_banking_system, get_current_actor
from .schemas import OpenAccountRequest, UpdateNomineeRequest, failure_response, success_response
from ..access import Actor


router = APIRouter()


@router.post("")
def open_account(
    request: OpenAccountRequest,
    actor: Actor = Depends(get_current_actor),
    system: BankingSystem = Depends(get_banking_system)
):
    """Open a new account"""
    result = system.accounts.open_account(
        actor,
        account_type=request.account_type,
        owner_id=request.owner_id,
        tenant_id=request.tenant_id,
        minimum_balance=request.minimum_balance,
        interest_rate=request.interest_rate,
        nominee=request.nominee.to_nominee() if request.nominee else None,
        branch_code=request.branch_code
    )
    if not result.ok:
        return failure_response(result.failure)
    return success_response("Account created successfully", {"account": result.value.summary()}, 201)


@router.get("/mine")
def list_my_accounts(
    actor: Actor = Depends(get_current_actor),
    system: BankingSystem = Depends(get_banking_system)
):
    """List the caller's active accounts"""
    result = system.accounts.list_my_accounts(actor)
    if not result.ok:
        return failure_response(result.failure)
    return success_response("Accounts retrieved successfully",
                            {"accounts": [account.summary() for account in result.value]})


@router.get("/admin/all")
def list_all_accounts(
    page: int = Query(1),
    limit: Optional[int] = Query(None),
    actor: Actor = Depends(get_current_actor),
    system: BankingSystem = Depends(get_banking_system)
):
    """List active accounts of the caller's bank (staff only)"""
    result = system.accounts.list_accounts(actor, page, limit)
    if not result.ok:
        return failure_response(result.failure)
    return success_response("Accounts retrieved successfully", {
        "accounts": [account.summary() for account in result.value.items],
        "pagination": result.value.pagination()
    })


@router.get("/admin/stats")
def account_statistics(
    actor: Actor = Depends(get_current_actor),
    system: BankingSystem = Depends(get_banking_system)
):
    """Account statistics for the caller's bank (staff only)"""
    result = system.accounts.statistics(actor)
    if not result.ok:
        return failure_response(result.failure)
    return success_response("Account statistics retrieved successfully", result.value)


@router.get("/{account_id}")
def get_account(
    account_id: str,
    actor: Actor = Depends(get_current_actor),
    system: BankingSystem = Depends(get_banking_system)
):
    """Get account details"""
    result = system.accounts.get_account(actor, account_id)
    if not result.ok:
        return failure_response(result.failure)
    return success_response("Account retrieved successfully", {"account": result.value.summary()})


@router.get("/{account_id}/balance")
def get_balance(
    account_id: str,
    actor: Actor = Depends(get_current_actor),
    system: BankingSystem = Depends(get_banking_system)
):
    """Get current and available balance"""
    result = system.accounts.get_balance(actor, account_id)
    if not result.ok:
        return failure_response(result.failure)
    return success_response("Balance retrieved successfully", result.value)


@router.put("/{account_id}/nominee")
def update_nominee(
    account_id: str,
    request: UpdateNomineeRequest,
    actor: Actor = Depends(get_current_actor),
    system: BankingSystem = Depends(get_banking_system)
):
    """Replace the nominee details"""
    nominee = request.nominee.to_nominee() if request.nominee else None
    result = system.accounts.update_nominee(actor, account_id, nominee)
    if not result.ok:
        return failure_response(result.failure)
    return success_response("Account updated successfully", {"account": result.value.summary()})


@router.put("/{account_id}/deactivate")
def deactivate_account(
    account_id: str,
    actor: Actor = Depends(get_current_actor),
    system: BankingSystem = Depends(get_banking_system)
):
    """Deactivate an account with a zero balance"""
    result = system.accounts.deactivate_account(actor, account_id)
    if not result.ok:
        return failure_response(result.failure)
    return success_response("Account deactivated successfully", {"account": result.value.summary()})
