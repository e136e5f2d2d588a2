"""
Transaction endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from .auth import BankingSystem, get_banking_system, get_current_actor
from .schemas import (
    DepositRequestModel, PostingRequestModel, TransferRequestModel, WithdrawRequestModel,
    failure_response, success_response
)
from ..access import Actor
from ..transactions import DepositRequest, PostingRequest, TransferRequest, WithdrawalRequest


router = APIRouter()


def _receipt_response(result, message: str):
    if not result.ok:
        return failure_response(result.failure)
    data = result.value.to_dict()
    data["states"] = [state.value for state in result.states]
    return success_response(message, data, 201)


@router.post("/deposit")
def deposit(
    request: DepositRequestModel,
    actor: Actor = Depends(get_current_actor),
    system: BankingSystem = Depends(get_banking_system)
):
    """Make a deposit"""
    result = system.engine.deposit(DepositRequest(
        account_id=request.account_id,
        amount=request.amount,
        description=request.description,
        reference_number=request.reference_number
    ), actor)
    return _receipt_response(result, "Deposit successful")


@router.post("/withdraw")
def withdraw(
    request: WithdrawRequestModel,
    actor: Actor = Depends(get_current_actor),
    system: BankingSystem = Depends(get_banking_system)
):
    """Make a withdrawal"""
    result = system.engine.withdraw(WithdrawalRequest(
        account_id=request.account_id,
        amount=request.amount,
        description=request.description,
        reference_number=request.reference_number
    ), actor)
    return _receipt_response(result, "Withdrawal successful")


@router.post("/transfer")
def transfer(
    request: TransferRequestModel,
    actor: Actor = Depends(get_current_actor),
    system: BankingSystem = Depends(get_banking_system)
):
    """Make a transfer between accounts"""
    result = system.engine.transfer(TransferRequest(
        from_account_id=request.from_account_id,
        to_account_id=request.to_account_id,
        amount=request.amount,
        description=request.description,
        reference_number=request.reference_number
    ), actor)
    return _receipt_response(result, "Transfer successful")


@router.post("/interest")
def post_interest(
    request: PostingRequestModel,
    actor: Actor = Depends(get_current_actor),
    system: BankingSystem = Depends(get_banking_system)
):
    """Post interest to an account (staff only)"""
    result = system.engine.post_interest(PostingRequest(
        account_id=request.account_id,
        amount=request.amount,
        description=request.description,
        reference_number=request.reference_number
    ), actor)
    return _receipt_response(result, "Interest posted successfully")


@router.post("/penalty")
def post_penalty(
    request: PostingRequestModel,
    actor: Actor = Depends(get_current_actor),
    system: BankingSystem = Depends(get_banking_system)
):
    """Charge a penalty to an account (staff only)"""
    result = system.engine.post_penalty(PostingRequest(
        account_id=request.account_id,
        amount=request.amount,
        description=request.description,
        reference_number=request.reference_number
    ), actor)
    return _receipt_response(result, "Penalty posted successfully")


@router.get("/history/{account_id}")
def get_history(
    account_id: str,
    page: int = Query(1),
    limit: Optional[int] = Query(None),
    actor: Actor = Depends(get_current_actor),
    system: BankingSystem = Depends(get_banking_system)
):
    """Transaction history of an account, newest first"""
    result = system.engine.get_history(account_id, actor, page, limit)
    if not result.ok:
        return failure_response(result.failure)
    return success_response("Transaction history retrieved successfully", {
        "transactions": [transaction.to_dict() for transaction in result.value.items],
        "pagination": result.value.pagination()
    })


@router.get("/admin/all")
def list_transactions(
    page: int = Query(1),
    limit: Optional[int] = Query(None),
    actor: Actor = Depends(get_current_actor),
    system: BankingSystem = Depends(get_banking_system)
):
    """All transactions of the caller's bank (staff only)"""
    result = system.engine.list_transactions(actor, page, limit)
    if not result.ok:
        return failure_response(result.failure)
    return success_response("Transactions retrieved successfully", {
        "transactions": [transaction.to_dict() for transaction in result.value.items],
        "pagination": result.value.pagination()
    })


@router.get("/admin/stats")
def transaction_statistics(
    actor: Actor = Depends(get_current_actor),
    system: BankingSystem = Depends(get_banking_system)
):
    """Transaction statistics for the caller's bank (staff only)"""
    result = system.engine.transaction_statistics(actor)
    if not result.ok:
        return failure_response(result.failure)
    return success_response("Transaction statistics retrieved successfully", result.value)


@router.get("/{transaction_id}")
def get_transaction(
    transaction_id: str,
    actor: Actor = Depends(get_current_actor),
    system: BankingSystem = Depends(get_banking_system)
):
    """Get a single transaction"""
    result = system.engine.get_transaction(transaction_id, actor)
    if not result.ok:
        return failure_response(result.failure)
    return success_response("Transaction retrieved successfully", {"transaction": result.value.to_dict()})
