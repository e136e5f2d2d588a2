"""
Pydantic schemas for API requests and the response envelope
"""

from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..accounts import NomineeDetails
from ..errors import ErrorKind, Failure

STATUS_BY_KIND = {
    ErrorKind.VALIDATION_ERROR: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.ACCESS_DENIED: 403,
    ErrorKind.CROSS_TENANT_ACCESS_DENIED: 403,
    ErrorKind.ACCOUNT_INACTIVE: 400,
    ErrorKind.INSUFFICIENT_BALANCE: 400,
    ErrorKind.INSUFFICIENT_FUNDS: 400,
    ErrorKind.DUPLICATE_ACCOUNT_TYPE: 400,
    ErrorKind.NON_ZERO_BALANCE: 400,
    ErrorKind.DUPLICATE_REFERENCE: 409,
    ErrorKind.CONCURRENCY_CONFLICT: 409,
    ErrorKind.STORAGE_FAILURE: 500,
}


def success_response(message: str, data: Optional[Dict[str, Any]] = None,
                     status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={
        "success": True,
        "message": message,
        "data": data or {}
    })


def failure_response(failure: Failure) -> JSONResponse:
    return JSONResponse(status_code=STATUS_BY_KIND[failure.kind], content={
        "success": False,
        "message": failure.message,
        "data": {"error": failure.to_dict()}
    })


class NomineeModel(BaseModel):
    name: Optional[str] = None
    relationship: Optional[str] = None
    phone: Optional[str] = Field(None, description="10-digit phone number")
    aadhaar_number: Optional[str] = Field(None, description="12-digit Aadhaar number")

    def to_nominee(self) -> NomineeDetails:
        return NomineeDetails(
            name=self.name,
            relationship=self.relationship,
            phone=self.phone,
            aadhaar_number=self.aadhaar_number
        )


# Account schemas
class OpenAccountRequest(BaseModel):
    account_type: str = Field(..., description="savings, current, fixed_deposit or recurring_deposit")
    owner_id: Optional[str] = Field(None, description="Staff only: open on behalf of a member")
    tenant_id: Optional[str] = Field(None, description="Super-admin only: target cooperative bank")
    minimum_balance: Optional[Decimal] = None
    interest_rate: Optional[Decimal] = None
    branch_code: Optional[str] = None
    nominee: Optional[NomineeModel] = None


class UpdateNomineeRequest(BaseModel):
    nominee: Optional[NomineeModel] = None


# Transaction schemas
class DepositRequestModel(BaseModel):
    account_id: str
    amount: Decimal = Field(..., description="Amount in rupees, minimum 0.01")
    description: str
    reference_number: Optional[str] = None


class WithdrawRequestModel(BaseModel):
    account_id: str
    amount: Decimal
    description: str
    reference_number: Optional[str] = None


class TransferRequestModel(BaseModel):
    from_account_id: str
    to_account_id: str
    amount: Decimal
    description: str
    reference_number: Optional[str] = None


class PostingRequestModel(BaseModel):
    account_id: str
    amount: Decimal
    description: str
    reference_number: Optional[str] = None


# Cooperative bank schemas
class RegisterBankRequest(BaseModel):
    bank_code: str = Field(..., description="Six letters, stored uppercase")
    bank_name: str
    short_name: str = ""
    registration_number: Optional[str] = None
    license_number: Optional[str] = None
