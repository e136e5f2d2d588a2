"""
Error Taxonomy Module

Typed failures raised by the storage, account and access layers, and the
result values the engine hands back to its callers. Every failure carries a
stable machine-readable kind, a human-readable message and optional details.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, Optional, Tuple, TypeVar


class ErrorKind(Enum):
    """Stable failure kinds exposed to callers"""
    VALIDATION_ERROR = "validation_error"
    NOT_FOUND = "not_found"
    ACCESS_DENIED = "access_denied"
    CROSS_TENANT_ACCESS_DENIED = "cross_tenant_access_denied"
    ACCOUNT_INACTIVE = "account_inactive"
    INSUFFICIENT_BALANCE = "insufficient_balance"  # Available balance check
    INSUFFICIENT_FUNDS = "insufficient_funds"      # Balance would go negative
    DUPLICATE_ACCOUNT_TYPE = "duplicate_account_type"
    NON_ZERO_BALANCE = "non_zero_balance"
    DUPLICATE_REFERENCE = "duplicate_reference"
    CONCURRENCY_CONFLICT = "concurrency_conflict"
    STORAGE_FAILURE = "storage_failure"


RETRYABLE_KINDS = frozenset({ErrorKind.CONCURRENCY_CONFLICT})


class BankingError(Exception):
    """Base class for all typed banking failures"""

    kind: ErrorKind = ErrorKind.STORAGE_FAILURE

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    def to_failure(self) -> 'Failure':
        """Convert to a failure value"""
        return Failure(kind=self.kind, message=self.message, details=dict(self.details))


class ValidationError(BankingError):
    kind = ErrorKind.VALIDATION_ERROR


class NotFound(BankingError):
    kind = ErrorKind.NOT_FOUND


class AccessDenied(BankingError):
    kind = ErrorKind.ACCESS_DENIED


class CrossTenantAccessDenied(AccessDenied):
    kind = ErrorKind.CROSS_TENANT_ACCESS_DENIED


class AccountInactive(BankingError):
    kind = ErrorKind.ACCOUNT_INACTIVE


class InsufficientBalance(BankingError):
    kind = ErrorKind.INSUFFICIENT_BALANCE


class InsufficientFunds(BankingError):
    kind = ErrorKind.INSUFFICIENT_FUNDS


class DuplicateAccountType(BankingError):
    kind = ErrorKind.DUPLICATE_ACCOUNT_TYPE


class NonZeroBalance(BankingError):
    kind = ErrorKind.NON_ZERO_BALANCE


class DuplicateReference(BankingError):
    kind = ErrorKind.DUPLICATE_REFERENCE


class ConcurrencyConflict(BankingError):
    """Storage transaction aborted or timed out; safe to retry"""
    kind = ErrorKind.CONCURRENCY_CONFLICT


class StorageFailure(BankingError):
    """Unexpected persistence error"""
    kind = ErrorKind.STORAGE_FAILURE


class UniqueConstraintViolation(StorageFailure):
    """A write collided with a unique index or an existing primary key"""

    def __init__(self, table: str, fields: Tuple[str, ...], message: Optional[str] = None):
        super().__init__(
            message or f"Unique constraint violated on {table}({', '.join(fields)})",
            {"table": table, "fields": list(fields)}
        )
        self.table = table
        self.fields = tuple(fields)


_ERROR_CLASSES = {
    ErrorKind.VALIDATION_ERROR: ValidationError,
    ErrorKind.NOT_FOUND: NotFound,
    ErrorKind.ACCESS_DENIED: AccessDenied,
    ErrorKind.CROSS_TENANT_ACCESS_DENIED: CrossTenantAccessDenied,
    ErrorKind.ACCOUNT_INACTIVE: AccountInactive,
    ErrorKind.INSUFFICIENT_BALANCE: InsufficientBalance,
    ErrorKind.INSUFFICIENT_FUNDS: InsufficientFunds,
    ErrorKind.DUPLICATE_ACCOUNT_TYPE: DuplicateAccountType,
    ErrorKind.NON_ZERO_BALANCE: NonZeroBalance,
    ErrorKind.DUPLICATE_REFERENCE: DuplicateReference,
    ErrorKind.CONCURRENCY_CONFLICT: ConcurrencyConflict,
    ErrorKind.STORAGE_FAILURE: StorageFailure,
}


@dataclass(frozen=True)
class Failure:
    """Typed failure value returned across the engine boundary"""
    kind: ErrorKind
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    def to_error(self) -> BankingError:
        """Rebuild the matching exception"""
        error = _ERROR_CLASSES[self.kind](self.message, dict(self.details))
        return error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


T = TypeVar("T")


@dataclass(frozen=True)
class OperationResult(Generic[T]):
    """
    Outcome of one engine call: either a value or a failure, never both.
    `states` lists the operation states visited, in order.
    """
    value: Optional[T] = None
    failure: Optional[Failure] = None
    states: Tuple[Any, ...] = ()

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def success(cls, value: T, states: Tuple[Any, ...] = ()) -> 'OperationResult[T]':
        return cls(value=value, failure=None, states=tuple(states))

    @classmethod
    def failed(cls, failure: Failure, states: Tuple[Any, ...] = ()) -> 'OperationResult[T]':
        return cls(value=None, failure=failure, states=tuple(states))

    def unwrap(self) -> T:
        """Return the value or raise the typed error"""
        if self.failure is not None:
            raise self.failure.to_error()
        return self.value
