"""
Transaction Processing Module

The transaction engine: deposits, withdrawals, transfers, interest and
penalty postings, plus ledger queries.

Each posting is one unit of work. The affected accounts are locked in
ascending id order and read fresh, business rules are checked, balances are
mutated through the account repository and the ledger record is inserted;
all of it commits together or not at all. Every call returns an
OperationResult carrying the visited states.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .access import AccessPolicy, Actor, Permission
from .accounts import Account, AccountRepository
from .audit import AuditAction, AuditOutcome, AuditResourceType, AuditSink, record_safely
from .config import CoopBankConfig, get_config
from .errors import (
    AccessDenied, AccountInactive, BankingError, CrossTenantAccessDenied, DuplicateReference,
    InsufficientBalance, InsufficientFunds, NotFound, OperationResult, StorageFailure,
    UniqueConstraintViolation, ValidationError
)
from .identifiers import generate_transaction_id
from .logging_config import get_logger, log_action
from .money import ZERO, format_amount, to_positive_amount
from .pagination import Page, paginate
from .storage import StorageInterface, StorageTransaction

logger = get_logger("coop_banking.transactions")


class TransactionType(Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    TRANSFER = "transfer"
    INTEREST = "interest"
    PENALTY = "penalty"


class TransactionStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class OperationState(Enum):
    """States of one engine call"""
    INITIATED = "initiated"
    VALIDATED = "validated"
    APPLIED = "applied"
    PERSISTED = "persisted"
    COMPLETED = "completed"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


@dataclass(frozen=True)
class DepositRequest:
    account_id: str
    amount: Any
    description: str
    reference_number: Optional[str] = None


@dataclass(frozen=True)
class WithdrawalRequest:
    account_id: str
    amount: Any
    description: str
    reference_number: Optional[str] = None


@dataclass(frozen=True)
class TransferRequest:
    from_account_id: str
    to_account_id: str
    amount: Any
    description: str
    reference_number: Optional[str] = None


@dataclass(frozen=True)
class PostingRequest:
    """Interest or penalty posting by staff"""
    account_id: str
    amount: Any
    description: str
    reference_number: Optional[str] = None


@dataclass(frozen=True)
class Transaction:
    """Ledger record. Immutable once completed; there is no update path."""
    id: str
    tenant_id: str
    transaction_type: TransactionType
    amount: Decimal
    description: str
    balance_after: Decimal  # Source account balance after the posting
    processed_by: str
    processed_at: datetime
    source_account_id: Optional[str] = None
    destination_account_id: Optional[str] = None
    status: TransactionStatus = TransactionStatus.COMPLETED
    reference_number: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'tenant_id': self.tenant_id,
            'transaction_type': self.transaction_type.value,
            'amount': str(self.amount),
            'description': self.description,
            'balance_after': str(self.balance_after),
            'processed_by': self.processed_by,
            'processed_at': self.processed_at.isoformat(),
            'source_account_id': self.source_account_id,
            'destination_account_id': self.destination_account_id,
            'status': self.status.value,
            'reference_number': self.reference_number
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transaction':
        return cls(
            id=data['id'],
            tenant_id=data['tenant_id'],
            transaction_type=TransactionType(data['transaction_type']),
            amount=Decimal(data['amount']),
            description=data['description'],
            balance_after=Decimal(data['balance_after']),
            processed_by=data['processed_by'],
            processed_at=datetime.fromisoformat(data['processed_at']),
            source_account_id=data.get('source_account_id'),
            destination_account_id=data.get('destination_account_id'),
            status=TransactionStatus(data.get('status', TransactionStatus.COMPLETED.value)),
            reference_number=data.get('reference_number')
        )


@dataclass(frozen=True)
class TransactionReceipt:
    """Committed transaction plus the updated balance of every touched account"""
    transaction: Transaction
    balances: Dict[str, Decimal] = field(default_factory=dict)

    @property
    def balance(self) -> Decimal:
        return self.balances[self.transaction.source_account_id]

    @property
    def destination_balance(self) -> Optional[Decimal]:
        if self.transaction.destination_account_id is None:
            return None
        return self.balances.get(self.transaction.destination_account_id)

    def to_dict(self) -> Dict[str, Any]:
        result = {'transaction': self.transaction.to_dict(), 'new_balance': str(self.balance)}
        if self.destination_balance is not None:
            result['to_account_balance'] = str(self.destination_balance)
        return result


HistoryPage = Page[Transaction]


@dataclass(frozen=True)
class _Movement:
    """Validated shape of one posting"""
    transaction_type: TransactionType
    audit_action: AuditAction
    amount: Decimal
    description: str
    reference_number: Optional[str]
    source_account_id: str
    destination_account_id: Optional[str] = None
    debit_account_id: Optional[str] = None
    credit_account_id: Optional[str] = None

    @property
    def account_ids(self) -> List[str]:
        ids = [self.source_account_id]
        if self.destination_account_id:
            ids.append(self.destination_account_id)
        return ids

    def audit_details(self) -> Dict[str, Any]:
        details = {
            'transaction_type': self.transaction_type.value,
            'amount': str(self.amount),
            'account_id': self.source_account_id
        }
        if self.destination_account_id:
            details['to_account_id'] = self.destination_account_id
        if self.reference_number:
            details['reference_number'] = self.reference_number
        return details


class TransactionEngine:
    """
    Stateless transaction processor. All mutable state lives in storage;
    balances are read fresh inside each unit of work.
    """

    TRANSACTIONS_TABLE = "transactions"
    MAX_ID_ATTEMPTS = 5

    def __init__(self, storage: StorageInterface, repository: AccountRepository,
                 access_policy: AccessPolicy, audit_sink: Optional[AuditSink] = None,
                 config: Optional[CoopBankConfig] = None,
                 id_generator: Callable[[], str] = generate_transaction_id):
        self.storage = storage
        self.repository = repository
        self.access_policy = access_policy
        self.audit_sink = audit_sink
        self.config = config or get_config()
        self.id_generator = id_generator

        self.storage.create_index(self.TRANSACTIONS_TABLE, ("reference_number",), unique=True)
        self.storage.create_index(self.TRANSACTIONS_TABLE, ("source_account_id",))
        self.storage.create_index(self.TRANSACTIONS_TABLE, ("destination_account_id",))
        self.storage.create_index(self.TRANSACTIONS_TABLE, ("tenant_id",))

    # Postings

    def deposit(self, request: DepositRequest, actor: Actor) -> OperationResult[TransactionReceipt]:
        """Credit an account"""
        def prepare() -> _Movement:
            account_id = self._require_id(request.account_id, "account_id")
            return _Movement(
                transaction_type=TransactionType.DEPOSIT,
                audit_action=AuditAction.TRANSACTION_DEPOSIT,
                amount=to_positive_amount(request.amount),
                description=self._validate_description(request.description),
                reference_number=self._validate_reference(request.reference_number),
                source_account_id=account_id,
                credit_account_id=account_id
            )
        return self._execute(actor, prepare, AuditAction.TRANSACTION_DEPOSIT, request.account_id)

    def withdraw(self, request: WithdrawalRequest, actor: Actor) -> OperationResult[TransactionReceipt]:
        """Debit an account, keeping it at or above its minimum balance"""
        def prepare() -> _Movement:
            account_id = self._require_id(request.account_id, "account_id")
            return _Movement(
                transaction_type=TransactionType.WITHDRAWAL,
                audit_action=AuditAction.TRANSACTION_WITHDRAWAL,
                amount=to_positive_amount(request.amount),
                description=self._validate_description(request.description),
                reference_number=self._validate_reference(request.reference_number),
                source_account_id=account_id,
                debit_account_id=account_id
            )
        return self._execute(actor, prepare, AuditAction.TRANSACTION_WITHDRAWAL, request.account_id)

    def transfer(self, request: TransferRequest, actor: Actor) -> OperationResult[TransactionReceipt]:
        """Move funds between two accounts of the same bank"""
        def prepare() -> _Movement:
            from_id = self._require_id(request.from_account_id, "from_account_id")
            to_id = self._require_id(request.to_account_id, "to_account_id")
            if from_id == to_id:
                raise ValidationError("Cannot transfer to the same account", {"field": "to_account_id"})
            return _Movement(
                transaction_type=TransactionType.TRANSFER,
                audit_action=AuditAction.TRANSACTION_TRANSFER,
                amount=to_positive_amount(request.amount),
                description=self._validate_description(request.description),
                reference_number=self._validate_reference(request.reference_number),
                source_account_id=from_id,
                destination_account_id=to_id,
                debit_account_id=from_id,
                credit_account_id=to_id
            )
        return self._execute(actor, prepare, AuditAction.TRANSACTION_TRANSFER, request.from_account_id)

    def post_interest(self, request: PostingRequest, actor: Actor) -> OperationResult[TransactionReceipt]:
        """Credit interest; staff only"""
        def prepare() -> _Movement:
            account_id = self._require_id(request.account_id, "account_id")
            return _Movement(
                transaction_type=TransactionType.INTEREST,
                audit_action=AuditAction.TRANSACTION_INTEREST,
                amount=to_positive_amount(request.amount),
                description=self._validate_description(request.description),
                reference_number=self._validate_reference(request.reference_number),
                source_account_id=account_id,
                credit_account_id=account_id
            )
        return self._execute(actor, prepare, AuditAction.TRANSACTION_INTEREST, request.account_id)

    def post_penalty(self, request: PostingRequest, actor: Actor) -> OperationResult[TransactionReceipt]:
        """Debit a penalty; staff only. May go below the minimum balance, never below zero."""
        def prepare() -> _Movement:
            account_id = self._require_id(request.account_id, "account_id")
            return _Movement(
                transaction_type=TransactionType.PENALTY,
                audit_action=AuditAction.TRANSACTION_PENALTY,
                amount=to_positive_amount(request.amount),
                description=self._validate_description(request.description),
                reference_number=self._validate_reference(request.reference_number),
                source_account_id=account_id,
                debit_account_id=account_id
            )
        return self._execute(actor, prepare, AuditAction.TRANSACTION_PENALTY, request.account_id)

    def _execute(self, actor: Actor, prepare: Callable[[], _Movement], audit_action: AuditAction,
                 requested_account_id: Optional[str]) -> OperationResult[TransactionReceipt]:
        states: List[OperationState] = [OperationState.INITIATED]
        tenant_id = actor.tenant_id
        movement: Optional[_Movement] = None
        validated = False

        try:
            movement = prepare()
            with self.storage.atomic(self.config.storage_transaction_timeout_seconds) as txn:
                accounts = self.repository.lock_accounts(txn, movement.account_ids, missing_ok=True)
                source = self._locked_account(accounts, movement.source_account_id)
                tenant_id = source.tenant_id
                self._check_rules(actor, movement, accounts)
                states.append(OperationState.VALIDATED)
                validated = True

                balances = self._apply(txn, movement)
                states.append(OperationState.APPLIED)

                transaction = self._persist(txn, actor, movement, source.tenant_id,
                                            balances[movement.source_account_id])
                states.append(OperationState.PERSISTED)
            states.append(OperationState.COMPLETED)
        except UniqueConstraintViolation as e:
            error = e
            if e.table == self.TRANSACTIONS_TABLE and "reference_number" in e.fields:
                error = DuplicateReference(
                    "Reference number already exists",
                    {"reference_number": movement.reference_number if movement else None}
                )
            return self._fail(actor, tenant_id, audit_action, requested_account_id, movement,
                              states, validated, error)
        except BankingError as e:
            return self._fail(actor, tenant_id, audit_action, requested_account_id, movement,
                              states, validated, e)

        receipt = TransactionReceipt(transaction=transaction, balances=balances)
        log_action(logger, "info",
                   f"{movement.transaction_type.value.capitalize()} of {format_amount(movement.amount)} completed",
                   user_id=actor.actor_id, tenant_id=tenant_id,
                   action=f"transaction_{movement.transaction_type.value}",
                   resource=f"transaction:{transaction.id}",
                   extra={'balances': {k: str(v) for k, v in balances.items()}})
        record_safely(
            self.audit_sink,
            actor_id=actor.actor_id,
            tenant_id=tenant_id,
            action=audit_action,
            resource_type=AuditResourceType.TRANSACTION,
            resource_id=transaction.id,
            details=movement.audit_details(),
            outcome=AuditOutcome.SUCCESS
        )
        return OperationResult.success(receipt, states)

    def _fail(self, actor: Actor, tenant_id: Optional[str], audit_action: AuditAction,
              account_id: Optional[str], movement: Optional[_Movement], states: List[OperationState],
              validated: bool, error: BankingError) -> OperationResult[TransactionReceipt]:
        if validated:
            states.append(OperationState.ROLLED_BACK)
        states.append(OperationState.FAILED)

        log_action(logger, "warning", f"Transaction rejected: {error.message}",
                   user_id=actor.actor_id, tenant_id=tenant_id, action=audit_action.value.lower(),
                   resource=f"account:{account_id}",
                   extra={'kind': error.kind.value, 'states': [s.value for s in states]})
        record_safely(
            self.audit_sink,
            actor_id=actor.actor_id,
            tenant_id=tenant_id,
            action=audit_action,
            resource_type=AuditResourceType.ACCOUNT,
            resource_id=account_id,
            details=movement.audit_details() if movement else {'account_id': account_id},
            outcome=AuditOutcome.FAILED,
            error_message=error.message
        )
        return OperationResult.failed(error.to_failure(), states)

    @staticmethod
    def _locked_account(accounts: Dict[str, Account], account_id: str) -> Account:
        account = accounts.get(account_id)
        if account is None:
            raise NotFound("Account not found", {"account_id": account_id})
        return account

    def _check_rules(self, actor: Actor, movement: _Movement, accounts: Dict[str, Account]) -> None:
        source = accounts[movement.source_account_id]

        if movement.transaction_type in (TransactionType.INTEREST, TransactionType.PENALTY):
            self.access_policy.require_permission(actor, Permission.POST_ADJUSTMENTS, source.tenant_id)
        else:
            self.access_policy.authorize_account(actor, source)

        if movement.destination_account_id:
            destination = self._locked_account(accounts, movement.destination_account_id)
            if destination.tenant_id != source.tenant_id:
                allowed = actor.is_super_admin and self.config.allow_super_admin_cross_tenant_transfers
                if not allowed:
                    raise CrossTenantAccessDenied(
                        "Transfers between different cooperative banks are not allowed",
                        {"from_tenant_id": source.tenant_id, "to_tenant_id": destination.tenant_id}
                    )

        inactive = [account.id for account in accounts.values() if not account.is_active]
        if inactive:
            message = "One or both accounts are deactivated" if len(accounts) > 1 else "Account is deactivated"
            raise AccountInactive(message, {"account_ids": inactive})

        if movement.transaction_type in (TransactionType.WITHDRAWAL, TransactionType.TRANSFER):
            available = source.available_balance
            if movement.amount > available:
                raise InsufficientBalance(
                    f"Insufficient balance. Available: {available}",
                    {"account_id": source.id, "available_balance": str(available),
                     "requested_amount": str(movement.amount)}
                )
        elif movement.transaction_type == TransactionType.PENALTY and movement.amount > source.balance:
            raise InsufficientFunds(
                f"Insufficient funds. Balance: {source.balance}",
                {"account_id": source.id, "balance": str(source.balance),
                 "requested_amount": str(movement.amount)}
            )

    def _apply(self, txn: StorageTransaction, movement: _Movement) -> Dict[str, Decimal]:
        balances: Dict[str, Decimal] = {}
        if movement.debit_account_id:
            balances[movement.debit_account_id] = self.repository.mutate_balance(
                movement.debit_account_id, -movement.amount, txn=txn)
        if movement.credit_account_id:
            balances[movement.credit_account_id] = self.repository.mutate_balance(
                movement.credit_account_id, movement.amount, txn=txn)
        return balances

    def _persist(self, txn: StorageTransaction, actor: Actor, movement: _Movement,
                 tenant_id: str, balance_after: Decimal) -> Transaction:
        if movement.reference_number and txn.find(self.TRANSACTIONS_TABLE,
                                                  {'reference_number': movement.reference_number}):
            raise DuplicateReference("Reference number already exists",
                                     {"reference_number": movement.reference_number})

        for _ in range(self.MAX_ID_ATTEMPTS):
            transaction_id = self.id_generator()
            if txn.exists(self.TRANSACTIONS_TABLE, transaction_id):
                continue
            transaction = Transaction(
                id=transaction_id,
                tenant_id=tenant_id,
                transaction_type=movement.transaction_type,
                amount=movement.amount,
                description=movement.description,
                balance_after=balance_after,
                processed_by=actor.actor_id,
                processed_at=datetime.now(timezone.utc),
                source_account_id=movement.source_account_id,
                destination_account_id=movement.destination_account_id,
                reference_number=movement.reference_number
            )
            txn.insert(self.TRANSACTIONS_TABLE, transaction.id, transaction.to_dict())
            return transaction

        raise StorageFailure("Could not allocate a unique transaction id",
                             {"attempts": self.MAX_ID_ATTEMPTS})

    # Request validation

    def _require_id(self, value: Optional[str], field_name: str) -> str:
        if not value or not str(value).strip():
            raise ValidationError(f"{field_name} is required", {"field": field_name})
        return str(value).strip()

    def _validate_description(self, description: Optional[str]) -> str:
        description = (description or "").strip()
        if not description:
            raise ValidationError("Description is required", {"field": "description"})
        if len(description) > self.config.max_description_length:
            raise ValidationError(
                f"Description cannot exceed {self.config.max_description_length} characters",
                {"field": "description"}
            )
        return description

    def _validate_reference(self, reference_number: Optional[str]) -> Optional[str]:
        if reference_number is None:
            return None
        reference_number = reference_number.strip()
        if not reference_number:
            return None
        if len(reference_number) > self.config.max_reference_length:
            raise ValidationError(
                f"Reference number cannot exceed {self.config.max_reference_length} characters",
                {"field": "reference_number"}
            )
        return reference_number

    # Queries

    def get_history(self, account_id: str, actor: Actor, page: int = 1,
                    limit: Optional[int] = None) -> OperationResult[HistoryPage]:
        """Transactions where the account is source or destination, newest first"""
        try:
            account = self.repository.find_by_id(account_id)
            self.access_policy.authorize_account(actor, account)

            records: Dict[str, Dict[str, Any]] = {}
            for column in ('source_account_id', 'destination_account_id'):
                for data in self.storage.find(self.TRANSACTIONS_TABLE, {column: account_id}):
                    records[data['id']] = data
            history = self._newest_first(records.values())
            result = paginate(history, page, limit or self.config.default_page_size, self.config.max_page_size)
        except BankingError as e:
            return OperationResult.failed(e.to_failure())
        return OperationResult.success(result)

    def get_transaction(self, transaction_id: str, actor: Actor) -> OperationResult[Transaction]:
        """Visible to staff of the transaction's bank and to owners of either account"""
        try:
            data = self.storage.load(self.TRANSACTIONS_TABLE, transaction_id)
            if not data:
                raise NotFound("Transaction not found", {"transaction_id": transaction_id})
            transaction = Transaction.from_dict(data)
            self.access_policy.authorize_tenant(actor, transaction.tenant_id)
            if not actor.has_permission(Permission.OPERATE_ANY_ACCOUNT):
                owners = set()
                for account_id in (transaction.source_account_id, transaction.destination_account_id):
                    if account_id:
                        owner_data = self.storage.load(self.repository.ACCOUNTS_TABLE, account_id)
                        if owner_data:
                            owners.add(owner_data['owner_id'])
                if actor.actor_id not in owners:
                    raise AccessDenied("Access denied", {"transaction_id": transaction_id})
        except BankingError as e:
            return OperationResult.failed(e.to_failure())
        return OperationResult.success(transaction)

    def list_transactions(self, actor: Actor, page: int = 1,
                          limit: Optional[int] = None) -> OperationResult[Page[Transaction]]:
        """Staff only; the actor's bank, or every bank for a super-admin"""
        try:
            self.access_policy.require_permission(actor, Permission.VIEW_TENANT_REPORTS)
            transactions = self._newest_first(self._scoped_records(actor))
            result = paginate(transactions, page, limit or self.config.default_page_size, self.config.max_page_size)
        except BankingError as e:
            return OperationResult.failed(e.to_failure())
        return OperationResult.success(result)

    def transaction_statistics(self, actor: Actor) -> OperationResult[Dict[str, Any]]:
        """Counts and volumes per type, today's count and total volume"""
        try:
            self.access_policy.require_permission(actor, Permission.VIEW_TENANT_REPORTS)
            transactions = [Transaction.from_dict(data) for data in self._scoped_records(actor)]
        except BankingError as e:
            return OperationResult.failed(e.to_failure())

        today = datetime.now(timezone.utc).date()
        by_type: Dict[str, Dict[str, Any]] = {}
        total_volume = ZERO
        today_count = 0
        for transaction in transactions:
            entry = by_type.setdefault(transaction.transaction_type.value, {'count': 0, 'total_amount': ZERO})
            entry['count'] += 1
            entry['total_amount'] += transaction.amount
            total_volume += transaction.amount
            if transaction.processed_at.astimezone(timezone.utc).date() == today:
                today_count += 1

        return OperationResult.success({
            'total_transactions': len(transactions),
            'today_transactions': today_count,
            'total_volume': str(total_volume),
            'transactions_by_type': {
                name: {'count': entry['count'], 'total_amount': str(entry['total_amount'])}
                for name, entry in sorted(by_type.items())
            }
        })

    def _scoped_records(self, actor: Actor) -> List[Dict[str, Any]]:
        tenant_id = self.access_policy.tenant_scope(actor)
        if tenant_id is None:
            return self.storage.load_all(self.TRANSACTIONS_TABLE)
        return self.storage.find(self.TRANSACTIONS_TABLE, {'tenant_id': tenant_id})

    @staticmethod
    def _newest_first(records) -> List[Transaction]:
        transactions = [Transaction.from_dict(data) for data in records]
        transactions.sort(key=lambda t: (t.processed_at, t.id), reverse=True)
        return transactions
