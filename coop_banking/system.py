"""
Banking system composition root.

Builds storage, tenancy, access policy, audit sink, account repository,
account manager and transaction engine, and hands each component its
collaborators explicitly.
"""

from typing import Optional

from .access import AccessPolicy
from .accounts import AccountManager, AccountRepository
from .audit import AuditSink, AuditTrail, NullAuditSink
from .config import CoopBankConfig, get_config
from .logging_config import get_logger
from .storage import StorageInterface, create_storage
from .tenancy import BankRegistry
from .transactions import TransactionEngine

logger = get_logger("coop_banking.system")


class BankingSystem:
    """Wires the banking components around one storage backend"""

    def __init__(self, config: Optional[CoopBankConfig] = None,
                 storage: Optional[StorageInterface] = None,
                 audit_sink: Optional[AuditSink] = None,
                 enforce_bank_status: bool = True):
        self.config = config or get_config()
        self.storage = storage or create_storage(
            self.config.database_url, self.config.storage_transaction_timeout_seconds
        )

        if audit_sink is not None:
            self.audit_sink = audit_sink
        elif self.config.enable_audit_logging:
            self.audit_sink = AuditTrail(self.storage)
        else:
            self.audit_sink = NullAuditSink()

        self.banks = BankRegistry(self.storage, self.audit_sink)
        self.access_policy = AccessPolicy(self.banks if enforce_bank_status else None)
        self.account_repository = AccountRepository(self.storage, self.config)
        self.accounts = AccountManager(self.account_repository, self.access_policy,
                                       self.audit_sink, self.config)
        self.engine = TransactionEngine(self.storage, self.account_repository, self.access_policy,
                                        self.audit_sink, self.config)

        logger.info("Banking system initialised with %s", type(self.storage).__name__)

    @property
    def audit_trail(self) -> Optional[AuditTrail]:
        """The queryable audit trail, when the configured sink is one"""
        if isinstance(self.audit_sink, AuditTrail):
            return self.audit_sink
        return None

    def close(self) -> None:
        self.storage.close()
