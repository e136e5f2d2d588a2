"""
Identifier generation.

Plain functions, called explicitly by the repository and the engine before
anything is persisted.
"""

import secrets
import uuid
from datetime import datetime, timezone
from typing import Optional

ACCOUNT_NUMBER_LENGTH = 12
TRANSACTION_ID_PREFIX = "TXN"
TRANSACTION_RANDOM_DIGITS = 6


def generate_record_id() -> str:
    """Opaque primary key for stored records"""
    return str(uuid.uuid4())


def generate_account_number(sequence_value: int) -> str:
    """Zero-padded account number for the n-th account of a tenant"""
    if sequence_value < 1:
        raise ValueError("Account sequence starts at 1")
    number = str(sequence_value)
    if len(number) > ACCOUNT_NUMBER_LENGTH:
        raise ValueError(f"Account sequence {sequence_value} exceeds {ACCOUNT_NUMBER_LENGTH} digits")
    return number.zfill(ACCOUNT_NUMBER_LENGTH)


def generate_transaction_id(now: Optional[datetime] = None) -> str:
    """
    Time-based transaction id with a random suffix, e.g. TXN1718000000000042137.
    Collisions are still possible within one millisecond, so the ledger
    inserts with insert-only semantics and the engine redraws on conflict.
    """
    now = now or datetime.now(timezone.utc)
    millis = int(now.timestamp() * 1000)
    suffix = str(secrets.randbelow(10 ** TRANSACTION_RANDOM_DIGITS)).zfill(TRANSACTION_RANDOM_DIGITS)
    return f"{TRANSACTION_ID_PREFIX}{millis}{suffix}"
