"""
Account Management Module

Account records, the repository that owns every balance write, and the
actor-checked account lifecycle (opening, nominee updates, deactivation,
listings and statistics).
"""

import re
from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional
from enum import Enum

from .access import AccessPolicy, Actor, Permission
from .audit import AuditAction, AuditOutcome, AuditResourceType, AuditSink, record_safely
from .config import CoopBankConfig, get_config
from .errors import (
    AccountInactive, BankingError, DuplicateAccountType, InsufficientFunds,
    NonZeroBalance, NotFound, OperationResult, ValidationError
)
from .identifiers import generate_account_number, generate_record_id
from .logging_config import get_logger, log_action
from .money import ZERO, to_amount, to_non_negative_amount
from .pagination import Page, paginate
from .storage import StorageInterface, StorageRecord, StorageTransaction

logger = get_logger("coop_banking.accounts")

PHONE_PATTERN = re.compile(r"^[0-9]{10}$")
AADHAAR_PATTERN = re.compile(r"^[0-9]{12}$")


class AccountType(Enum):
    """Deposit products offered by a cooperative bank"""
    SAVINGS = "savings"
    CURRENT = "current"
    FIXED_DEPOSIT = "fixed_deposit"
    RECURRING_DEPOSIT = "recurring_deposit"

    @classmethod
    def parse(cls, value) -> 'AccountType':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            allowed = ", ".join(t.value for t in cls)
            raise ValidationError(f"Invalid account type. Must be one of: {allowed}",
                                  {"field": "account_type"})


@dataclass
class NomineeDetails:
    name: Optional[str] = None
    relationship: Optional[str] = None
    phone: Optional[str] = None
    aadhaar_number: Optional[str] = None

    def __post_init__(self):
        if self.name is not None:
            self.name = self.name.strip()
            if not self.name:
                raise ValidationError("Nominee name cannot be empty", {"field": "nominee.name"})
        if self.relationship is not None:
            self.relationship = self.relationship.strip()
            if not self.relationship:
                raise ValidationError("Nominee relationship cannot be empty",
                                      {"field": "nominee.relationship"})
        if self.phone is not None and not PHONE_PATTERN.match(self.phone):
            raise ValidationError("Please provide a valid 10-digit phone number",
                                  {"field": "nominee.phone"})
        if self.aadhaar_number is not None and not AADHAAR_PATTERN.match(self.aadhaar_number):
            raise ValidationError("Please provide a valid 12-digit Aadhaar number",
                                  {"field": "nominee.aadhaar_number"})

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            'name': self.name,
            'relationship': self.relationship,
            'phone': self.phone,
            'aadhaar_number': self.aadhaar_number
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional['NomineeDetails']:
        if not data:
            return None
        return cls(**data)


@dataclass
class Account(StorageRecord):
    """Member deposit account scoped to one cooperative bank"""
    account_number: str
    owner_id: str
    tenant_id: str
    account_type: AccountType
    balance: Decimal
    minimum_balance: Decimal
    interest_rate: Decimal
    opened_at: datetime
    is_active: bool = True
    last_transaction_at: Optional[datetime] = None
    branch_code: str = "001"
    nominee: Optional[NomineeDetails] = None

    @property
    def available_balance(self) -> Decimal:
        """Amount that can leave the account without breaching the minimum balance"""
        return self.balance - self.minimum_balance

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'account_number': self.account_number,
            'owner_id': self.owner_id,
            'tenant_id': self.tenant_id,
            'account_type': self.account_type.value,
            'balance': str(self.balance),
            'minimum_balance': str(self.minimum_balance),
            'interest_rate': str(self.interest_rate),
            'opened_at': self.opened_at.isoformat(),
            'is_active': self.is_active,
            'last_transaction_at': self.last_transaction_at.isoformat() if self.last_transaction_at else None,
            'branch_code': self.branch_code,
            'nominee': self.nominee.to_dict() if self.nominee else None
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        last_transaction_at = data.get('last_transaction_at')
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            account_number=data['account_number'],
            owner_id=data['owner_id'],
            tenant_id=data['tenant_id'],
            account_type=AccountType(data['account_type']),
            balance=Decimal(data['balance']),
            minimum_balance=Decimal(data['minimum_balance']),
            interest_rate=Decimal(data['interest_rate']),
            opened_at=datetime.fromisoformat(data['opened_at']),
            is_active=data['is_active'],
            last_transaction_at=datetime.fromisoformat(last_transaction_at) if last_transaction_at else None,
            branch_code=data.get('branch_code', "001"),
            nominee=NomineeDetails.from_dict(data.get('nominee'))
        )

    def summary(self) -> Dict[str, Any]:
        """Public view of the account"""
        result = self.to_dict()
        result['available_balance'] = str(self.available_balance)
        return result


class AccountRepository:
    """
    Account lookup and creation, and the single code path that writes
    `balance`. Methods taking `txn` run inside the caller's unit of work;
    without one they open their own.
    """

    ACCOUNTS_TABLE = "accounts"
    ACCOUNT_NUMBER_SEQUENCE = "account_numbers"

    def __init__(self, storage: StorageInterface, config: Optional[CoopBankConfig] = None):
        self.storage = storage
        self.config = config or get_config()
        self.storage.create_index(self.ACCOUNTS_TABLE, ("tenant_id", "account_number"), unique=True)
        self.storage.create_index(self.ACCOUNTS_TABLE, ("owner_id", "tenant_id", "account_type", "is_active"))

    def find_by_id(self, account_id: str, txn: Optional[StorageTransaction] = None) -> Account:
        """
        Raises:
            NotFound: If no account has this id
        """
        source = txn or self.storage
        data = source.load(self.ACCOUNTS_TABLE, account_id)
        if not data:
            raise NotFound("Account not found", {"account_id": account_id})
        return Account.from_dict(data)

    def find_active_by_owner_and_type(self, owner_id: str, tenant_id: str, account_type: AccountType,
                                      txn: Optional[StorageTransaction] = None) -> Optional[Account]:
        source = txn or self.storage
        matches = source.find(self.ACCOUNTS_TABLE, {
            'owner_id': owner_id,
            'tenant_id': tenant_id,
            'account_type': account_type.value,
            'is_active': True
        })
        if matches:
            return Account.from_dict(matches[0])
        return None

    def create(self, owner_id: str, tenant_id: str, account_type: AccountType,
               minimum_balance: Optional[Decimal] = None,
               interest_rate: Optional[Decimal] = None,
               nominee: Optional[NomineeDetails] = None,
               branch_code: Optional[str] = None) -> Account:
        """
        Open an account with the next account number of the tenant.
        Savings accounts default to the configured minimum balance and
        interest rate; other types default to zero.

        Raises:
            DuplicateAccountType: If the owner already has an active account of this type
        """
        if minimum_balance is None:
            minimum_balance = self.config.savings_minimum_balance_amount if account_type == AccountType.SAVINGS else ZERO
        if interest_rate is None:
            interest_rate = self.config.savings_interest_rate_value if account_type == AccountType.SAVINGS else ZERO

        with self.storage.atomic(self.config.storage_transaction_timeout_seconds) as txn:
            # The sequence lock serialises account opening within the tenant
            sequence_value = txn.next_sequence(self.ACCOUNT_NUMBER_SEQUENCE, tenant_id)
            if self.find_active_by_owner_and_type(owner_id, tenant_id, account_type, txn):
                raise DuplicateAccountType(
                    f"You already have an active {account_type.value} account",
                    {"owner_id": owner_id, "account_type": account_type.value}
                )

            now = datetime.now(timezone.utc)
            account = Account(
                id=generate_record_id(),
                created_at=now,
                updated_at=now,
                account_number=generate_account_number(sequence_value),
                owner_id=owner_id,
                tenant_id=tenant_id,
                account_type=account_type,
                balance=ZERO,
                minimum_balance=to_amount(minimum_balance, "minimum_balance"),
                interest_rate=Decimal(interest_rate),
                opened_at=now,
                branch_code=branch_code or self.config.default_branch_code,
                nominee=nominee
            )
            txn.insert(self.ACCOUNTS_TABLE, account.id, account.to_dict())

        return account

    def lock_accounts(self, txn: StorageTransaction, account_ids: Iterable[str],
                      missing_ok: bool = False) -> Dict[str, Account]:
        """
        Lock accounts in ascending id order and read them fresh

        With missing_ok, ids that do not exist are left out of the result.

        Raises:
            NotFound: If any account does not exist and missing_ok is false
        """
        ordered = sorted(set(account_ids))
        txn.lock(self.ACCOUNTS_TABLE, ordered)
        if not missing_ok:
            return {account_id: self.find_by_id(account_id, txn) for account_id in ordered}
        accounts = {}
        for account_id in ordered:
            data = txn.load(self.ACCOUNTS_TABLE, account_id)
            if data:
                accounts[account_id] = Account.from_dict(data)
        return accounts

    def mutate_balance(self, account_id: str, delta: Decimal, expected_active: bool = True,
                       txn: Optional[StorageTransaction] = None) -> Decimal:
        """
        Apply a signed delta to the balance and stamp the last transaction time

        Returns:
            The new balance

        Raises:
            NotFound: If the account does not exist
            AccountInactive: If the active flag differs from expected_active
            InsufficientFunds: If the balance would go negative
        """
        if txn is None:
            with self.storage.atomic(self.config.storage_transaction_timeout_seconds) as own_txn:
                return self._apply_delta(own_txn, account_id, delta, expected_active)
        return self._apply_delta(txn, account_id, delta, expected_active)

    def _apply_delta(self, txn: StorageTransaction, account_id: str, delta: Decimal,
                     expected_active: bool) -> Decimal:
        account = self.lock_accounts(txn, [account_id])[account_id]
        if account.is_active != expected_active:
            raise AccountInactive("Account is inactive", {"account_id": account_id})

        new_balance = account.balance + delta
        if new_balance < ZERO:
            raise InsufficientFunds(
                "Insufficient funds",
                {"account_id": account_id, "balance": str(account.balance), "delta": str(delta)}
            )

        now = datetime.now(timezone.utc)
        account.balance = new_balance
        account.last_transaction_at = now
        account.updated_at = now
        txn.save(self.ACCOUNTS_TABLE, account.id, account.to_dict())
        return new_balance

    def deactivate(self, account_id: str) -> Account:
        """
        Soft-delete an account with a zero balance

        Raises:
            AccountInactive: If the account is already deactivated
            NonZeroBalance: If the balance is not exactly zero
        """
        with self.storage.atomic(self.config.storage_transaction_timeout_seconds) as txn:
            account = self.lock_accounts(txn, [account_id])[account_id]
            if not account.is_active:
                raise AccountInactive("Account is already deactivated", {"account_id": account_id})
            if account.balance != ZERO:
                raise NonZeroBalance(
                    "Cannot deactivate account with remaining balance. Please withdraw all funds first.",
                    {"account_id": account_id, "balance": str(account.balance)}
                )
            account.is_active = False
            account.updated_at = datetime.now(timezone.utc)
            txn.save(self.ACCOUNTS_TABLE, account.id, account.to_dict())
        return account

    def update_nominee(self, account_id: str, nominee: Optional[NomineeDetails]) -> Account:
        with self.storage.atomic(self.config.storage_transaction_timeout_seconds) as txn:
            account = self.lock_accounts(txn, [account_id])[account_id]
            account.nominee = nominee
            account.updated_at = datetime.now(timezone.utc)
            txn.save(self.ACCOUNTS_TABLE, account.id, account.to_dict())
        return account

    def list_owner_accounts(self, owner_id: str, tenant_id: str, include_inactive: bool = False) -> List[Account]:
        filters: Dict[str, Any] = {'owner_id': owner_id, 'tenant_id': tenant_id}
        if not include_inactive:
            filters['is_active'] = True
        accounts = [Account.from_dict(data) for data in self.storage.find(self.ACCOUNTS_TABLE, filters)]
        accounts.sort(key=lambda account: account.opened_at, reverse=True)
        return accounts

    def list_tenant_accounts(self, tenant_id: Optional[str] = None, include_inactive: bool = False) -> List[Account]:
        """Accounts of one tenant, or of every tenant when tenant_id is None; newest first"""
        filters: Dict[str, Any] = {}
        if tenant_id is not None:
            filters['tenant_id'] = tenant_id
        if not include_inactive:
            filters['is_active'] = True
        accounts = [Account.from_dict(data) for data in self.storage.find(self.ACCOUNTS_TABLE, filters)]
        accounts.sort(key=lambda account: (account.opened_at, account.id), reverse=True)
        return accounts

    def account_statistics(self, tenant_id: Optional[str] = None) -> Dict[str, Any]:
        """Active account count, total balance and per-type breakdown"""
        accounts = self.list_tenant_accounts(tenant_id)
        now = datetime.now(timezone.utc)
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)

        by_type: Dict[str, Dict[str, Any]] = {}
        total_balance = ZERO
        for account in accounts:
            entry = by_type.setdefault(account.account_type.value, {'count': 0, 'total_balance': ZERO})
            entry['count'] += 1
            entry['total_balance'] += account.balance
            total_balance += account.balance

        return {
            'total_accounts': len(accounts),
            'total_balance': str(total_balance),
            'accounts_by_type': {
                name: {'count': entry['count'], 'total_balance': str(entry['total_balance'])}
                for name, entry in sorted(by_type.items())
            },
            'new_accounts_this_month': sum(1 for account in accounts if account.opened_at >= month_start)
        }


class AccountManager:
    """
    Account lifecycle on behalf of an authenticated actor. Every public
    method returns an OperationResult; state changes are audited whatever
    their outcome.
    """

    def __init__(self, repository: AccountRepository, access_policy: AccessPolicy,
                 audit_sink: Optional[AuditSink] = None, config: Optional[CoopBankConfig] = None):
        self.repository = repository
        self.access_policy = access_policy
        self.audit_sink = audit_sink
        self.config = config or repository.config

    def open_account(self, actor: Actor, account_type, owner_id: Optional[str] = None,
                     tenant_id: Optional[str] = None, minimum_balance=None, interest_rate=None,
                     nominee: Optional[NomineeDetails] = None,
                     branch_code: Optional[str] = None) -> OperationResult[Account]:
        """
        Open an account. Members open accounts for themselves; staff may open
        one for another member of their bank. A super-admin must name the bank.
        """
        owner_id = owner_id or actor.actor_id
        tenant_id = tenant_id or actor.tenant_id
        try:
            if not tenant_id:
                raise ValidationError("tenant_id is required", {"field": "tenant_id"})
            if owner_id != actor.actor_id:
                self.access_policy.require_permission(actor, Permission.OPERATE_ANY_ACCOUNT, tenant_id)
            else:
                self.access_policy.authorize_tenant(actor, tenant_id)

            parsed_type = AccountType.parse(account_type)
            parsed_minimum = None if minimum_balance is None else to_non_negative_amount(minimum_balance, "minimum_balance")
            parsed_rate = None
            if interest_rate is not None:
                parsed_rate = to_non_negative_amount(interest_rate, "interest_rate")

            account = self.repository.create(
                owner_id=owner_id,
                tenant_id=tenant_id,
                account_type=parsed_type,
                minimum_balance=parsed_minimum,
                interest_rate=parsed_rate,
                nominee=nominee,
                branch_code=branch_code
            )
        except BankingError as e:
            self._audit(actor, tenant_id, AuditAction.ACCOUNT_CREATE, None,
                        {"account_type": str(account_type), "owner_id": owner_id}, e)
            return OperationResult.failed(e.to_failure())

        log_action(logger, "info", f"Opened {account.account_type.value} account {account.account_number}",
                   user_id=actor.actor_id, tenant_id=account.tenant_id, action="account_create",
                   resource=f"account:{account.id}")
        self._audit(actor, account.tenant_id, AuditAction.ACCOUNT_CREATE, account.id, {
            "account_number": account.account_number,
            "account_type": account.account_type.value,
            "owner_id": account.owner_id
        })
        return OperationResult.success(account)

    def get_account(self, actor: Actor, account_id: str) -> OperationResult[Account]:
        try:
            account = self.repository.find_by_id(account_id)
            self.access_policy.authorize_account(actor, account)
        except BankingError as e:
            return OperationResult.failed(e.to_failure())
        return OperationResult.success(account)

    def get_balance(self, actor: Actor, account_id: str) -> OperationResult[Dict[str, Any]]:
        result = self.get_account(actor, account_id)
        if not result.ok:
            return OperationResult.failed(result.failure)
        account = result.value
        return OperationResult.success({
            'account_id': account.id,
            'account_number': account.account_number,
            'balance': str(account.balance),
            'minimum_balance': str(account.minimum_balance),
            'available_balance': str(account.available_balance)
        })

    def list_my_accounts(self, actor: Actor) -> OperationResult[List[Account]]:
        try:
            if not actor.tenant_id:
                raise ValidationError("tenant_id is required", {"field": "tenant_id"})
            self.access_policy.authorize_tenant(actor, actor.tenant_id)
            accounts = self.repository.list_owner_accounts(actor.actor_id, actor.tenant_id)
        except BankingError as e:
            return OperationResult.failed(e.to_failure())
        return OperationResult.success(accounts)

    def update_nominee(self, actor: Actor, account_id: str,
                       nominee: Optional[NomineeDetails]) -> OperationResult[Account]:
        tenant_id = actor.tenant_id
        try:
            account = self.repository.find_by_id(account_id)
            tenant_id = account.tenant_id
            self.access_policy.authorize_account(actor, account)
            account = self.repository.update_nominee(account_id, nominee)
        except BankingError as e:
            self._audit(actor, tenant_id, AuditAction.ACCOUNT_UPDATE, account_id, {"field": "nominee"}, e)
            return OperationResult.failed(e.to_failure())

        self._audit(actor, account.tenant_id, AuditAction.ACCOUNT_UPDATE, account.id, {
            "field": "nominee",
            "nominee": nominee.to_dict() if nominee else None
        })
        return OperationResult.success(account)

    def deactivate_account(self, actor: Actor, account_id: str) -> OperationResult[Account]:
        tenant_id = actor.tenant_id
        try:
            account = self.repository.find_by_id(account_id)
            tenant_id = account.tenant_id
            self.access_policy.authorize_account(actor, account)
            account = self.repository.deactivate(account_id)
        except BankingError as e:
            self._audit(actor, tenant_id, AuditAction.ACCOUNT_DEACTIVATE, account_id, {}, e)
            return OperationResult.failed(e.to_failure())

        log_action(logger, "info", f"Deactivated account {account.account_number}",
                   user_id=actor.actor_id, tenant_id=account.tenant_id, action="account_deactivate",
                   resource=f"account:{account.id}")
        self._audit(actor, account.tenant_id, AuditAction.ACCOUNT_DEACTIVATE, account.id,
                    {"account_number": account.account_number})
        return OperationResult.success(account)

    def list_accounts(self, actor: Actor, page: int = 1, limit: Optional[int] = None) -> OperationResult[Page[Account]]:
        """Active accounts of the actor's bank (every bank for a super-admin), newest first"""
        try:
            self.access_policy.require_permission(actor, Permission.VIEW_TENANT_REPORTS)
            accounts = self.repository.list_tenant_accounts(self.access_policy.tenant_scope(actor))
            result = paginate(accounts, page, limit or self.config.default_page_size, self.config.max_page_size)
        except BankingError as e:
            return OperationResult.failed(e.to_failure())
        return OperationResult.success(result)

    def statistics(self, actor: Actor) -> OperationResult[Dict[str, Any]]:
        try:
            self.access_policy.require_permission(actor, Permission.VIEW_TENANT_REPORTS)
            stats = self.repository.account_statistics(self.access_policy.tenant_scope(actor))
        except BankingError as e:
            return OperationResult.failed(e.to_failure())
        return OperationResult.success(stats)

    def _audit(self, actor: Actor, tenant_id: Optional[str], action: AuditAction,
               resource_id: Optional[str], details: Dict[str, Any],
               error: Optional[BankingError] = None) -> None:
        record_safely(
            self.audit_sink,
            actor_id=actor.actor_id,
            tenant_id=tenant_id,
            action=action,
            resource_type=AuditResourceType.ACCOUNT,
            resource_id=resource_id,
            details=details,
            outcome=AuditOutcome.FAILED if error else AuditOutcome.SUCCESS,
            error_message=error.message if error else None
        )
