"""
Tests for the transaction engine
"""

import logging
import re
import tempfile
from decimal import Decimal
from itertools import repeat
from pathlib import Path

from coop_banking.access import Actor, Role
from coop_banking.accounts import AccountRepository
from coop_banking.audit import AuditAction, AuditOutcome, AuditResourceType, AuditSink
from coop_banking.config import CoopBankConfig
from coop_banking.errors import ErrorKind, StorageFailure
from coop_banking.storage import InMemoryStorage, SQLiteStorage
from coop_banking.system import BankingSystem
from coop_banking.transactions import (
    DepositRequest, OperationState, PostingRequest, TransactionEngine, TransactionType,
    TransferRequest, WithdrawalRequest
)

SUCCESS_STATES = [
    OperationState.INITIATED,
    OperationState.VALIDATED,
    OperationState.APPLIED,
    OperationState.PERSISTED,
    OperationState.COMPLETED,
]
REJECTED_STATES = [OperationState.INITIATED, OperationState.FAILED]


class FailingRepository(AccountRepository):
    """Fails every credit, after the debit of a transfer has been applied"""

    def mutate_balance(self, account_id, delta, expected_active=True, txn=None):
        if delta > 0:
            raise StorageFailure("Disk full")
        return super().mutate_balance(account_id, delta, expected_active, txn)


class ExplodingSink(AuditSink):

    def record(self, **event):
        raise RuntimeError("audit store offline")


class TestTransactionEngine:

    def make_storage(self):
        return InMemoryStorage()

    def make_config(self, **overrides):
        return CoopBankConfig(database_url="memory://", storage_transaction_timeout_seconds=2.0, **overrides)

    def setup_method(self):
        self.config = self.make_config()
        self.system = BankingSystem(self.config, self.make_storage())
        self.engine = self.system.engine
        self.bank = self.system.banks.register_bank("ABCDEF", "First Cooperative Bank")
        self.other_bank = self.system.banks.register_bank("GHIJKL", "Second Cooperative Bank")

        self.member = Actor("member-1", Role.MEMBER, self.bank.id)
        self.other_member = Actor("member-2", Role.MEMBER, self.bank.id)
        self.manager = Actor("manager-1", Role.MANAGER, self.bank.id)
        self.foreign_admin = Actor("admin-2", Role.ADMIN, self.other_bank.id)
        self.super_admin = Actor("root", Role.SUPER_ADMIN, None)

        self.savings = self.open_account("savings")
        self.current = self.open_account("current")

    def teardown_method(self):
        self.system.close()

    def open_account(self, account_type, owner_id="member-1", tenant_id=None):
        return self.system.accounts.open_account(
            self.super_admin, account_type, owner_id=owner_id, tenant_id=tenant_id or self.bank.id
        ).unwrap()

    def balance_of(self, account):
        return self.system.account_repository.find_by_id(account.id).balance

    def transaction_count(self):
        return self.system.storage.count(TransactionEngine.TRANSACTIONS_TABLE)

    # Deposits

    def test_deposit(self):
        result = self.engine.deposit(DepositRequest(self.current.id, "500", "Cash deposit"), self.member)

        assert result.ok
        assert list(result.states) == SUCCESS_STATES
        receipt = result.value
        assert receipt.balance == Decimal("500.00")
        assert receipt.destination_balance is None

        transaction = receipt.transaction
        assert re.fullmatch(r"TXN\d{19}", transaction.id)
        assert transaction.transaction_type == TransactionType.DEPOSIT
        assert transaction.amount == Decimal("500.00")
        assert transaction.balance_after == Decimal("500.00")
        assert transaction.source_account_id == self.current.id
        assert transaction.tenant_id == self.bank.id
        assert transaction.processed_by == "member-1"
        assert self.balance_of(self.current) == Decimal("500.00")
        assert receipt.to_dict() == {"transaction": transaction.to_dict(), "new_balance": "500.00"}

    def test_completed_posting_is_logged_with_formatted_amount(self, caplog):
        with caplog.at_level(logging.INFO, logger="coop_banking.transactions"):
            self.engine.deposit(DepositRequest(self.current.id, "1500", "Cash deposit"), self.member).unwrap()

        messages = [record.getMessage() for record in caplog.records if record.name == "coop_banking.transactions"]
        assert messages == ["Deposit of INR 1,500.00 completed"]

    def test_amounts_finer_than_the_minimum_unit_are_rejected(self):
        for amount in ("0.005", "10.005"):
            result = self.engine.deposit(DepositRequest(self.current.id, amount, "Cash"), self.member)
            assert not result.ok
            assert result.failure.kind == ErrorKind.VALIDATION_ERROR
            assert list(result.states) == REJECTED_STATES
        assert self.balance_of(self.current) == Decimal("0.00")
        assert self.transaction_count() == 0

    def test_staff_may_deposit_into_member_accounts(self):
        assert self.engine.deposit(DepositRequest(self.current.id, 100, "Branch deposit"), self.manager).ok

    # Withdrawals

    def test_withdraw(self):
        self.system.account_repository.mutate_balance(self.savings.id, Decimal("5000.00"))

        result = self.engine.withdraw(WithdrawalRequest(self.savings.id, "1000", "ATM"), self.member)

        assert list(result.states) == SUCCESS_STATES
        assert result.value.balance == Decimal("4000.00")
        assert result.value.transaction.transaction_type == TransactionType.WITHDRAWAL
        assert self.balance_of(self.savings) == Decimal("4000.00")

    def test_withdraw_respects_minimum_balance(self):
        self.system.account_repository.mutate_balance(self.savings.id, Decimal("1000.00"))

        result = self.engine.withdraw(WithdrawalRequest(self.savings.id, "1", "ATM"), self.member)

        assert not result.ok
        assert result.failure.kind == ErrorKind.INSUFFICIENT_BALANCE
        assert result.failure.message == "Insufficient balance. Available: 0.00"
        assert result.failure.details["available_balance"] == "0.00"
        assert list(result.states) == REJECTED_STATES
        assert self.balance_of(self.savings) == Decimal("1000.00")
        assert self.transaction_count() == 0

    def test_withdraw_down_to_minimum_balance(self):
        self.system.account_repository.mutate_balance(self.savings.id, Decimal("1500.00"))

        result = self.engine.withdraw(WithdrawalRequest(self.savings.id, "500", "ATM"), self.member)

        assert result.ok
        assert self.balance_of(self.savings) == Decimal("1000.00")

    def test_repeated_withdrawals_are_separate_postings(self):
        self.system.account_repository.mutate_balance(self.current.id, Decimal("300.00"))
        request = WithdrawalRequest(self.current.id, "100", "ATM")

        first = self.engine.withdraw(request, self.member)
        second = self.engine.withdraw(request, self.member)

        assert first.ok and second.ok
        assert first.value.transaction.id != second.value.transaction.id
        assert self.balance_of(self.current) == Decimal("100.00")
        assert self.transaction_count() == 2

    # Transfers

    def test_transfer(self):
        self.system.account_repository.mutate_balance(self.savings.id, Decimal("5000.00"))

        result = self.engine.transfer(TransferRequest(self.savings.id, self.current.id, "500", "Rent"),
                                      self.member)

        assert list(result.states) == SUCCESS_STATES
        receipt = result.value
        assert receipt.balance == Decimal("4500.00")
        assert receipt.destination_balance == Decimal("500.00")
        assert receipt.transaction.source_account_id == self.savings.id
        assert receipt.transaction.destination_account_id == self.current.id
        assert receipt.transaction.balance_after == Decimal("4500.00")
        assert receipt.to_dict()["to_account_balance"] == "500.00"
        assert self.balance_of(self.savings) == Decimal("4500.00")
        assert self.balance_of(self.current) == Decimal("500.00")

    def test_transfer_to_another_members_account(self):
        self.system.account_repository.mutate_balance(self.current.id, Decimal("100.00"))
        target = self.open_account("savings", owner_id="member-2")

        result = self.engine.transfer(TransferRequest(self.current.id, target.id, "40", "Gift"), self.member)

        assert result.ok
        assert self.balance_of(target) == Decimal("40.00")

    def test_transfer_to_same_account(self):
        result = self.engine.transfer(TransferRequest(self.current.id, self.current.id, "10", "Loop"),
                                      self.member)

        assert result.failure.kind == ErrorKind.VALIDATION_ERROR
        assert result.failure.message == "Cannot transfer to the same account"
        assert list(result.states) == REJECTED_STATES

    def test_transfer_insufficient_balance_leaves_both_accounts(self):
        self.system.account_repository.mutate_balance(self.savings.id, Decimal("1200.00"))

        result = self.engine.transfer(TransferRequest(self.savings.id, self.current.id, "300", "Rent"),
                                      self.member)

        assert result.failure.kind == ErrorKind.INSUFFICIENT_BALANCE
        assert result.failure.message == "Insufficient balance. Available: 200.00"
        assert self.balance_of(self.savings) == Decimal("1200.00")
        assert self.balance_of(self.current) == Decimal("0.00")

    def test_cross_tenant_transfer_is_denied(self):
        self.system.account_repository.mutate_balance(self.current.id, Decimal("100.00"))
        foreign = self.open_account("savings", owner_id="member-1", tenant_id=self.other_bank.id)

        for actor in (self.member, self.super_admin):
            result = self.engine.transfer(TransferRequest(self.current.id, foreign.id, "10", "Abroad"), actor)
            assert result.failure.kind == ErrorKind.CROSS_TENANT_ACCESS_DENIED
            assert list(result.states) == REJECTED_STATES

        assert self.balance_of(self.current) == Decimal("100.00")
        assert self.balance_of(foreign) == Decimal("0.00")

    # Inactive accounts and access

    def test_inactive_accounts_are_rejected(self):
        target = self.open_account("fixed_deposit")
        self.system.account_repository.deactivate(target.id)
        self.system.account_repository.mutate_balance(self.current.id, Decimal("100.00"))

        result = self.engine.transfer(TransferRequest(self.current.id, target.id, "10", "Move"), self.member)
        assert result.failure.kind == ErrorKind.ACCOUNT_INACTIVE
        assert result.failure.message == "One or both accounts are deactivated"

        result = self.engine.deposit(DepositRequest(target.id, "10", "Cash"), self.member)
        assert result.failure.kind == ErrorKind.ACCOUNT_INACTIVE
        assert result.failure.message == "Account is deactivated"
        assert self.balance_of(self.current) == Decimal("100.00")

    def test_members_cannot_touch_other_accounts(self):
        self.system.account_repository.mutate_balance(self.current.id, Decimal("100.00"))

        result = self.engine.withdraw(WithdrawalRequest(self.current.id, "10", "Theft"), self.other_member)
        assert result.failure.kind == ErrorKind.ACCESS_DENIED

        result = self.engine.withdraw(WithdrawalRequest(self.current.id, "10", "Theft"), self.foreign_admin)
        assert result.failure.kind == ErrorKind.CROSS_TENANT_ACCESS_DENIED

        assert self.balance_of(self.current) == Decimal("100.00")

    def test_missing_account(self):
        result = self.engine.deposit(DepositRequest("missing", "10", "Cash"), self.member)

        assert result.failure.kind == ErrorKind.NOT_FOUND
        assert result.failure.message == "Account not found"
        assert list(result.states) == REJECTED_STATES

    def test_unauthorized_transfer_does_not_reveal_missing_destination(self):
        result = self.engine.transfer(TransferRequest(self.current.id, "missing", "10", "Sweep"), self.other_member)
        assert result.failure.kind == ErrorKind.ACCESS_DENIED

        result = self.engine.transfer(TransferRequest(self.current.id, "missing", "10", "Move"), self.member)
        assert result.failure.kind == ErrorKind.NOT_FOUND
        assert result.failure.details == {"account_id": "missing"}
        assert list(result.states) == REJECTED_STATES

    # Request validation

    def test_request_validation(self):
        cases = [
            (DepositRequest(self.current.id, "0", "Cash"), "amount must be greater than 0"),
            (DepositRequest(self.current.id, "-5", "Cash"), "amount must be greater than 0"),
            (DepositRequest(self.current.id, "abc", "Cash"), "amount must be a number"),
            (DepositRequest(self.current.id, "10", "   "), "Description is required"),
            (DepositRequest(self.current.id, "10", "x" * 201), "Description cannot exceed 200 characters"),
            (DepositRequest(self.current.id, "10", "Cash", "R" * 51),
             "Reference number cannot exceed 50 characters"),
            (DepositRequest("", "10", "Cash"), "account_id is required"),
        ]
        for request, message in cases:
            result = self.engine.deposit(request, self.member)
            assert result.failure.kind == ErrorKind.VALIDATION_ERROR, message
            assert result.failure.message == message
            assert list(result.states) == REJECTED_STATES

        assert self.engine.deposit(DepositRequest(self.current.id, "10", "x" * 200), self.member).ok
        assert self.balance_of(self.current) == Decimal("10.00")

    def test_duplicate_reference_rolls_back(self):
        first = self.engine.deposit(DepositRequest(self.current.id, "100", "Cash", "REF-1"), self.member)
        assert first.ok

        result = self.engine.deposit(DepositRequest(self.current.id, "50", "Cash", "REF-1"), self.member)

        assert result.failure.kind == ErrorKind.DUPLICATE_REFERENCE
        assert list(result.states) == [
            OperationState.INITIATED,
            OperationState.VALIDATED,
            OperationState.APPLIED,
            OperationState.ROLLED_BACK,
            OperationState.FAILED,
        ]
        assert self.balance_of(self.current) == Decimal("100.00")
        assert self.transaction_count() == 1

    # Atomicity

    def test_failed_credit_rolls_back_debit(self):
        repository = FailingRepository(self.system.storage, self.config)
        engine = TransactionEngine(self.system.storage, repository, self.system.access_policy,
                                   self.system.audit_sink, self.config)
        self.system.account_repository.mutate_balance(self.savings.id, Decimal("5000.00"))

        result = engine.transfer(TransferRequest(self.savings.id, self.current.id, "500", "Rent"), self.member)

        assert result.failure.kind == ErrorKind.STORAGE_FAILURE
        assert list(result.states) == [
            OperationState.INITIATED,
            OperationState.VALIDATED,
            OperationState.ROLLED_BACK,
            OperationState.FAILED,
        ]
        assert self.balance_of(self.savings) == Decimal("5000.00")
        assert self.balance_of(self.current) == Decimal("0.00")
        assert self.transaction_count() == 0

    def test_colliding_transaction_id_is_redrawn(self):
        ids = iter(["TXN-A", "TXN-A", "TXN-B"])
        engine = TransactionEngine(self.system.storage, self.system.account_repository,
                                   self.system.access_policy, self.system.audit_sink, self.config,
                                   id_generator=lambda: next(ids))

        first = engine.deposit(DepositRequest(self.current.id, "10", "Cash"), self.member).unwrap()
        second = engine.deposit(DepositRequest(self.current.id, "10", "Cash"), self.member).unwrap()

        assert first.transaction.id == "TXN-A"
        assert second.transaction.id == "TXN-B"
        assert self.balance_of(self.current) == Decimal("20.00")

    def test_exhausted_id_draws_fail_without_side_effects(self):
        ids = repeat("TXN-A")
        engine = TransactionEngine(self.system.storage, self.system.account_repository,
                                   self.system.access_policy, self.system.audit_sink, self.config,
                                   id_generator=lambda: next(ids))
        engine.deposit(DepositRequest(self.current.id, "10", "Cash"), self.member).unwrap()

        result = engine.deposit(DepositRequest(self.current.id, "10", "Cash"), self.member)

        assert result.failure.kind == ErrorKind.STORAGE_FAILURE
        assert OperationState.ROLLED_BACK in result.states
        assert self.balance_of(self.current) == Decimal("10.00")

    # Auditing

    def test_postings_are_audited(self):
        receipt = self.engine.deposit(DepositRequest(self.current.id, "10", "Cash"), self.member).unwrap()
        self.engine.withdraw(WithdrawalRequest(self.current.id, "99", "ATM"), self.member)

        audit_trail = self.system.audit_sink
        succeeded = audit_trail.get_events({"action": AuditAction.TRANSACTION_DEPOSIT})["events"]
        assert len(succeeded) == 1
        assert succeeded[0].resource_type == AuditResourceType.TRANSACTION
        assert succeeded[0].resource_id == receipt.transaction.id
        assert succeeded[0].details["amount"] == "10.00"

        failed = audit_trail.get_events({"action": AuditAction.TRANSACTION_WITHDRAWAL})["events"]
        assert len(failed) == 1
        assert failed[0].outcome == AuditOutcome.FAILED
        assert failed[0].resource_type == AuditResourceType.ACCOUNT
        assert failed[0].error_message.startswith("Insufficient balance")
        assert audit_trail.verify_integrity()["valid"]

    def test_failing_audit_sink_does_not_change_outcome(self):
        engine = TransactionEngine(self.system.storage, self.system.account_repository,
                                   self.system.access_policy, ExplodingSink(), self.config)

        assert engine.deposit(DepositRequest(self.current.id, "10", "Cash"), self.member).ok
        rejected = engine.withdraw(WithdrawalRequest(self.current.id, "50", "ATM"), self.member)
        assert rejected.failure.kind == ErrorKind.INSUFFICIENT_BALANCE
        assert self.balance_of(self.current) == Decimal("10.00")

    # Interest and penalties

    def test_post_interest(self):
        self.system.account_repository.mutate_balance(self.savings.id, Decimal("2000.00"))

        result = self.engine.post_interest(PostingRequest(self.savings.id, "6.67", "Quarterly interest"),
                                           self.manager)

        assert result.ok
        assert result.value.transaction.transaction_type == TransactionType.INTEREST
        assert self.balance_of(self.savings) == Decimal("2006.67")

    def test_members_cannot_post_adjustments(self):
        result = self.engine.post_interest(PostingRequest(self.savings.id, "100", "Free money"), self.member)
        assert result.failure.kind == ErrorKind.ACCESS_DENIED

        result = self.engine.post_penalty(PostingRequest(self.savings.id, "1", "Fee"), self.foreign_admin)
        assert result.failure.kind == ErrorKind.CROSS_TENANT_ACCESS_DENIED

    def test_penalty_may_breach_minimum_balance_but_not_zero(self):
        self.system.account_repository.mutate_balance(self.savings.id, Decimal("1000.00"))

        result = self.engine.post_penalty(PostingRequest(self.savings.id, "50", "Minimum balance charge"),
                                          self.manager)
        assert result.ok
        assert self.balance_of(self.savings) == Decimal("950.00")

        result = self.engine.post_penalty(PostingRequest(self.savings.id, "950.01", "Charge"), self.manager)
        assert result.failure.kind == ErrorKind.INSUFFICIENT_FUNDS
        assert self.balance_of(self.savings) == Decimal("950.00")

    # Queries

    def test_history(self):
        self.system.account_repository.mutate_balance(self.savings.id, Decimal("5000.00"))
        self.engine.deposit(DepositRequest(self.current.id, "10", "Cash"), self.member)
        self.engine.transfer(TransferRequest(self.savings.id, self.current.id, "20", "Move"), self.member)
        self.engine.withdraw(WithdrawalRequest(self.current.id, "5", "ATM"), self.member)

        history = self.engine.get_history(self.current.id, self.member).unwrap()
        assert history.total == 3
        assert {t.transaction_type for t in history.items} == {
            TransactionType.DEPOSIT, TransactionType.TRANSFER, TransactionType.WITHDRAWAL
        }
        times = [t.processed_at for t in history.items]
        assert times == sorted(times, reverse=True)

        page = self.engine.get_history(self.current.id, self.member, page=2, limit=2).unwrap()
        assert len(page.items) == 1
        assert page.pages == 2
        assert page.pagination() == {"current": 2, "pages": 2, "total": 3, "limit": 2}

        assert self.engine.get_history(self.savings.id, self.member).unwrap().total == 1
        assert self.engine.get_history(self.current.id, self.other_member).failure.kind == ErrorKind.ACCESS_DENIED
        assert self.engine.get_history(self.current.id, self.member, page=0).failure.kind == ErrorKind.VALIDATION_ERROR

    def test_get_transaction(self):
        self.system.account_repository.mutate_balance(self.current.id, Decimal("100.00"))
        target = self.open_account("savings", owner_id="member-2")
        transaction = self.engine.transfer(
            TransferRequest(self.current.id, target.id, "40", "Gift"), self.member
        ).unwrap().transaction

        assert self.engine.get_transaction(transaction.id, self.member).value == transaction
        assert self.engine.get_transaction(transaction.id, self.other_member).ok
        assert self.engine.get_transaction(transaction.id, self.manager).ok

        stranger = Actor("member-3", Role.MEMBER, self.bank.id)
        assert self.engine.get_transaction(transaction.id, stranger).failure.kind == ErrorKind.ACCESS_DENIED
        assert (self.engine.get_transaction(transaction.id, self.foreign_admin).failure.kind
                == ErrorKind.CROSS_TENANT_ACCESS_DENIED)

        missing = self.engine.get_transaction("TXN0", self.member)
        assert missing.failure.kind == ErrorKind.NOT_FOUND
        assert missing.failure.message == "Transaction not found"

    def test_staff_listing_and_statistics(self):
        foreign = self.open_account("current", owner_id="member-9", tenant_id=self.other_bank.id)
        self.engine.deposit(DepositRequest(self.current.id, "100", "Cash"), self.member)
        self.engine.withdraw(WithdrawalRequest(self.current.id, "30", "ATM"), self.member)
        self.engine.deposit(DepositRequest(foreign.id, "70", "Cash"), self.super_admin)

        page = self.engine.list_transactions(self.manager).unwrap()
        assert page.total == 2
        assert all(t.tenant_id == self.bank.id for t in page.items)
        assert self.engine.list_transactions(self.super_admin).unwrap().total == 3
        assert self.engine.list_transactions(self.member).failure.kind == ErrorKind.ACCESS_DENIED

        stats = self.engine.transaction_statistics(self.manager).unwrap()
        assert stats["total_transactions"] == 2
        assert stats["today_transactions"] == 2
        assert stats["total_volume"] == "130.00"
        assert stats["transactions_by_type"] == {
            "deposit": {"count": 1, "total_amount": "100.00"},
            "withdrawal": {"count": 1, "total_amount": "30.00"},
        }
        assert self.engine.transaction_statistics(self.member).failure.kind == ErrorKind.ACCESS_DENIED


class TestTransactionEngineSQLite(TestTransactionEngine):

    def make_storage(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        return SQLiteStorage(Path(self.temp_dir.name) / "bank.db", default_timeout=2.0)

    def teardown_method(self):
        super().teardown_method()
        self.temp_dir.cleanup()


class TestSuperAdminCrossTenantTransfers:

    def setup_method(self):
        config = CoopBankConfig(database_url="memory://", storage_transaction_timeout_seconds=2.0,
                                allow_super_admin_cross_tenant_transfers=True)
        self.system = BankingSystem(config, InMemoryStorage())
        first = self.system.banks.register_bank("ABCDEF", "First Cooperative Bank")
        second = self.system.banks.register_bank("GHIJKL", "Second Cooperative Bank")
        self.super_admin = Actor("root", Role.SUPER_ADMIN, None)
        self.member = Actor("member-1", Role.MEMBER, first.id)

        self.source = self.system.accounts.open_account(
            self.super_admin, "current", owner_id="member-1", tenant_id=first.id).unwrap()
        self.target = self.system.accounts.open_account(
            self.super_admin, "current", owner_id="member-9", tenant_id=second.id).unwrap()
        self.system.account_repository.mutate_balance(self.source.id, Decimal("100.00"))

    def test_super_admin_may_transfer_across_banks(self):
        result = self.system.engine.transfer(
            TransferRequest(self.source.id, self.target.id, "25", "Settlement"), self.super_admin)

        assert result.ok
        assert result.value.destination_balance == Decimal("25.00")

    def test_members_still_may_not(self):
        result = self.system.engine.transfer(
            TransferRequest(self.source.id, self.target.id, "25", "Settlement"), self.member)

        assert result.failure.kind == ErrorKind.CROSS_TENANT_ACCESS_DENIED
