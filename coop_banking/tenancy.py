"""
Multi-Tenancy Support Module

Registry of cooperative banks. Each cooperative bank is a tenant: accounts,
transactions and users carry its id and are isolated by it.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .audit import AuditAction, AuditOutcome, AuditResourceType, AuditSink, record_safely
from .errors import NotFound, UniqueConstraintViolation, ValidationError
from .identifiers import generate_record_id
from .logging_config import get_logger, log_action
from .storage import StorageInterface

logger = get_logger("coop_banking.tenancy")

BANK_CODE_PATTERN = re.compile(r"^[A-Z]{6}$")


@dataclass
class CooperativeBank:
    """Tenant record representing one cooperative bank"""
    id: str
    bank_code: str  # Six uppercase letters, e.g. "COOPBK"
    bank_name: str
    short_name: str = ""
    registration_number: Optional[str] = None
    license_number: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return {
            'id': self.id,
            'bank_code': self.bank_code,
            'bank_name': self.bank_name,
            'short_name': self.short_name,
            'registration_number': self.registration_number,
            'license_number': self.license_number,
            'is_active': self.is_active,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CooperativeBank':
        """Create CooperativeBank from dictionary"""
        data = dict(data)
        if isinstance(data.get('created_at'), str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if isinstance(data.get('updated_at'), str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        return cls(**data)


class BankRegistry:
    """Manages cooperative bank (tenant) lifecycle"""

    BANK_TABLE = "cooperative_banks"

    def __init__(self, storage: StorageInterface, audit_sink: Optional[AuditSink] = None):
        self.storage = storage
        self.audit_sink = audit_sink
        self.storage.create_index(self.BANK_TABLE, ("bank_code",), unique=True)

    def register_bank(self, bank_code: str, bank_name: str, short_name: str = "",
                      registration_number: Optional[str] = None,
                      license_number: Optional[str] = None,
                      actor_id: Optional[str] = None,
                      bank_id: Optional[str] = None) -> CooperativeBank:
        """
        Register a new cooperative bank

        Raises:
            ValidationError: If the bank code is malformed, already taken or the name is empty
        """
        bank_code = (bank_code or "").strip().upper()
        if not BANK_CODE_PATTERN.match(bank_code):
            raise ValidationError("Bank code must be exactly 6 uppercase letters", {"field": "bank_code"})
        if not bank_name or not bank_name.strip():
            raise ValidationError("Bank name is required", {"field": "bank_name"})

        bank = CooperativeBank(
            id=bank_id or generate_record_id(),
            bank_code=bank_code,
            bank_name=bank_name.strip(),
            short_name=short_name.strip(),
            registration_number=registration_number,
            license_number=license_number
        )

        try:
            with self.storage.atomic() as txn:
                if txn.find(self.BANK_TABLE, {'bank_code': bank_code}):
                    raise ValidationError(f"Bank code '{bank_code}' already exists", {"field": "bank_code"})
                txn.insert(self.BANK_TABLE, bank.id, bank.to_dict())
        except UniqueConstraintViolation:
            raise ValidationError(f"Bank code '{bank_code}' already exists", {"field": "bank_code"})

        log_action(logger, "info", f"Registered cooperative bank {bank_code}",
                   user_id=actor_id, tenant_id=bank.id, action="bank_create",
                   resource=f"bank:{bank.id}")
        self._audit(actor_id, bank, AuditAction.BANK_CREATE, {"bank_code": bank_code, "bank_name": bank.bank_name})
        return bank

    def get_bank(self, bank_id: str) -> Optional[CooperativeBank]:
        """Get bank by ID"""
        data = self.storage.load(self.BANK_TABLE, bank_id)
        if data:
            return CooperativeBank.from_dict(data)
        return None

    def get_bank_by_code(self, bank_code: str) -> Optional[CooperativeBank]:
        """Get bank by its six letter code"""
        banks = self.storage.find(self.BANK_TABLE, {'bank_code': bank_code.upper()})
        if banks:
            return CooperativeBank.from_dict(banks[0])
        return None

    def list_banks(self, is_active: Optional[bool] = None) -> List[CooperativeBank]:
        """List all banks, optionally filtered by active status"""
        filters = {}
        if is_active is not None:
            filters['is_active'] = is_active
        banks = [CooperativeBank.from_dict(data) for data in self.storage.find(self.BANK_TABLE, filters)]
        banks.sort(key=lambda bank: bank.bank_code)
        return banks

    def is_active(self, bank_id: str) -> bool:
        bank = self.get_bank(bank_id)
        return bank is not None and bank.is_active

    def activate_bank(self, bank_id: str, actor_id: Optional[str] = None) -> CooperativeBank:
        return self._set_active(bank_id, True, actor_id)

    def deactivate_bank(self, bank_id: str, actor_id: Optional[str] = None) -> CooperativeBank:
        return self._set_active(bank_id, False, actor_id)

    def _set_active(self, bank_id: str, active: bool, actor_id: Optional[str]) -> CooperativeBank:
        with self.storage.atomic() as txn:
            txn.lock(self.BANK_TABLE, [bank_id])
            data = txn.load(self.BANK_TABLE, bank_id)
            if not data:
                raise NotFound(f"Cooperative bank {bank_id} not found", {"bank_id": bank_id})
            bank = CooperativeBank.from_dict(data)
            bank.is_active = active
            bank.updated_at = datetime.now(timezone.utc)
            txn.save(self.BANK_TABLE, bank.id, bank.to_dict())

        state = "activated" if active else "deactivated"
        log_action(logger, "info", f"Cooperative bank {bank.bank_code} {state}",
                   user_id=actor_id, tenant_id=bank.id, action="bank_update",
                   resource=f"bank:{bank.id}")
        self._audit(actor_id, bank, AuditAction.BANK_UPDATE, {"is_active": active})
        return bank

    def _audit(self, actor_id: Optional[str], bank: CooperativeBank, action: AuditAction,
               details: Dict[str, Any]) -> None:
        if self.audit_sink is None:
            return
        record_safely(
            self.audit_sink,
            actor_id=actor_id,
            tenant_id=bank.id,
            action=action,
            resource_type=AuditResourceType.BANK,
            resource_id=bank.id,
            details=details,
            outcome=AuditOutcome.SUCCESS
        )
