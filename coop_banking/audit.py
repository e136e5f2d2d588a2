"""
Audit Trail Module

Hash-chained append-only audit log with SHA-256 for tamper detection.
Every state-changing operation is recorded here, whatever its outcome.
Recording is best-effort: a failing sink never changes an operation's result.
"""

import hashlib
import json
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
from decimal import Decimal
import math

from .identifiers import generate_record_id
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord

logger = get_logger("coop_banking.audit")


class AuditAction(Enum):
    """Audited actions"""
    # Account events
    ACCOUNT_CREATE = "ACCOUNT_CREATE"
    ACCOUNT_UPDATE = "ACCOUNT_UPDATE"
    ACCOUNT_DEACTIVATE = "ACCOUNT_DEACTIVATE"

    # Transaction events
    TRANSACTION_DEPOSIT = "TRANSACTION_DEPOSIT"
    TRANSACTION_WITHDRAWAL = "TRANSACTION_WITHDRAWAL"
    TRANSACTION_TRANSFER = "TRANSACTION_TRANSFER"
    TRANSACTION_INTEREST = "TRANSACTION_INTEREST"
    TRANSACTION_PENALTY = "TRANSACTION_PENALTY"

    # Bank events
    BANK_CREATE = "BANK_CREATE"
    BANK_UPDATE = "BANK_UPDATE"


class AuditResourceType(Enum):
    ACCOUNT = "Account"
    TRANSACTION = "Transaction"
    BANK = "CooperativeBank"


class AuditOutcome(Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


def _serialize(value):
    """Convert values to a JSON-serializable form"""
    if isinstance(value, Decimal):
        return str(value)
    elif isinstance(value, datetime):
        return value.isoformat()
    elif isinstance(value, Enum):
        return value.value
    elif isinstance(value, dict):
        return {str(k): _serialize(v) for k, v in value.items()}
    elif isinstance(value, (list, tuple)):
        return [_serialize(v) for v in value]
    return value


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    actor_id: Optional[str]
    tenant_id: Optional[str]
    action: AuditAction
    resource_type: AuditResourceType
    resource_id: Optional[str]
    outcome: AuditOutcome
    sequence_number: int
    previous_hash: str  # Hash of the preceding event, "" for the first
    current_hash: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None

    def __post_init__(self):
        self.details = _serialize(self.details or {})

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'actor_id': self.actor_id,
            'tenant_id': self.tenant_id,
            'action': self.action.value,
            'resource_type': self.resource_type.value,
            'resource_id': self.resource_id,
            'outcome': self.outcome.value,
            'error_message': self.error_message,
            'sequence_number': self.sequence_number,
            'previous_hash': self.previous_hash,
            'details': self.details
        }

        # Create deterministic JSON string
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage with proper enum serialization"""
        result = super().to_dict()
        result['action'] = self.action.value
        result['resource_type'] = self.resource_type.value
        result['outcome'] = self.outcome.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        """Create AuditEvent from dictionary with proper enum deserialization"""
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['action'] = AuditAction(data['action'])
        data['resource_type'] = AuditResourceType(data['resource_type'])
        data['outcome'] = AuditOutcome(data['outcome'])
        return cls(**data)


class AuditSink(ABC):
    """Destination for audit records"""

    @abstractmethod
    def record(self, actor_id: Optional[str], tenant_id: Optional[str], action: AuditAction,
               resource_type: AuditResourceType, resource_id: Optional[str],
               details: Optional[Dict[str, Any]], outcome: AuditOutcome,
               error_message: Optional[str] = None) -> None:
        pass


class NullAuditSink(AuditSink):
    """Discards every record (audit logging disabled)"""

    def record(self, actor_id, tenant_id, action, resource_type, resource_id,
               details, outcome, error_message=None) -> None:
        pass


def record_safely(sink: Optional[AuditSink], **event: Any) -> None:
    """Record an audit event; failures are logged and discarded"""
    if sink is None:
        return
    try:
        sink.record(**event)
    except Exception:
        action = event.get('action')
        log_action(
            logger, "error", "Failed to record audit event",
            user_id=event.get('actor_id'),
            tenant_id=event.get('tenant_id'),
            action=action.value if isinstance(action, Enum) else action,
            resource=f"{_serialize(event.get('resource_type'))}:{event.get('resource_id')}",
            exc_info=True
        )


class AuditTrail(AuditSink):
    """
    Hash-chained audit trail for tamper detection.

    Sequence numbers come from a storage sequence, so chaining stays ordered
    even when several processes share one database.
    """

    SEQUENCE_NAME = "audit_events"
    SEQUENCE_KEY = "chain"

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        self.storage.create_index(self.table_name, ("sequence_number",), unique=True)
        self.storage.create_index(self.table_name, ("tenant_id",))

    def record(self, actor_id: Optional[str], tenant_id: Optional[str], action: AuditAction,
               resource_type: AuditResourceType, resource_id: Optional[str],
               details: Optional[Dict[str, Any]], outcome: AuditOutcome,
               error_message: Optional[str] = None) -> AuditEvent:
        """
        Append an audit event to the chain

        Args:
            actor_id: ID of the actor who initiated the action
            tenant_id: Cooperative bank the action was scoped to
            action: Audited action
            resource_type: Type of resource acted upon
            resource_id: ID of the resource
            details: Additional event-specific data
            outcome: SUCCESS or FAILED
            error_message: Failure message for FAILED outcomes

        Returns:
            Created AuditEvent
        """
        with self.storage.atomic() as txn:
            sequence_number = txn.next_sequence(self.SEQUENCE_NAME, self.SEQUENCE_KEY)
            previous_hash = ""
            if sequence_number > 1:
                previous = txn.find(self.table_name, {'sequence_number': sequence_number - 1})
                if previous:
                    previous_hash = previous[0]['current_hash']

            now = datetime.now(timezone.utc)
            event = AuditEvent(
                id=generate_record_id(),
                created_at=now,
                updated_at=now,
                actor_id=actor_id,
                tenant_id=tenant_id,
                action=action,
                resource_type=resource_type,
                resource_id=resource_id,
                outcome=outcome,
                sequence_number=sequence_number,
                previous_hash=previous_hash,
                details=details or {},
                error_message=error_message
            )
            event.current_hash = event.calculate_hash()
            txn.insert(self.table_name, event.id, event.to_dict())

        return event

    def _load_events(self) -> List[AuditEvent]:
        events = [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]
        events.sort(key=lambda e: e.sequence_number)
        return events

    def get_events(self, filters: Optional[Dict[str, Any]] = None,
                   page: int = 1, limit: int = 50) -> Dict[str, Any]:
        """
        Filtered, paginated audit events, newest first

        Args:
            filters: Equality filters on actor_id, tenant_id, action,
                resource_type, resource_id or outcome
            page: 1-based page number
            limit: Page size
        """
        query = {key: _serialize(value) for key, value in (filters or {}).items() if value is not None}
        events = [AuditEvent.from_dict(data) for data in self.storage.find(self.table_name, query)]
        events.sort(key=lambda e: e.sequence_number, reverse=True)

        page = max(page, 1)
        limit = max(limit, 1)
        total = len(events)
        start = (page - 1) * limit
        return {
            'events': events[start:start + limit],
            'page': page,
            'pages': math.ceil(total / limit),
            'total': total
        }

    def statistics(self, tenant_id: Optional[str] = None) -> Dict[str, Any]:
        """Success and failure counts per action"""
        filters = {'tenant_id': tenant_id} if tenant_id else {}
        by_action: Dict[str, Dict[str, int]] = {}
        total = 0
        for data in self.storage.find(self.table_name, filters):
            counts = by_action.setdefault(data['action'], {'success': 0, 'failed': 0})
            if data['outcome'] == AuditOutcome.SUCCESS.value:
                counts['success'] += 1
            else:
                counts['failed'] += 1
            total += 1
        return {'total': total, 'by_action': by_action}

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the entire audit chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': []
        }

        events = self._load_events()
        result['total_events'] = len(events)

        previous_hash = ""
        for position, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            previous_hash = event.current_hash

        return result

    def count_events(self) -> int:
        """Get total number of audit events"""
        return self.storage.count(self.table_name)
