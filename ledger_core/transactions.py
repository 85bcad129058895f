"""
Transaction Log Module

Append-only store of money movements keyed by transaction id. Core fields
(accounts, amount, type) never change after append; the only mutation is a
status transition from PENDING to a terminal status.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Union
from enum import Enum

from .amounts import ZERO, format_amount, quantize
from .errors import DuplicateIdentifier, InvalidDateRange, InvalidTransactionStatus
from .storage import StorageInterface, StorageRecord, RecordInsert


class TransactionType(Enum):
    """Types of money movement"""
    DEPOSIT = "DEPOSIT"    # External money into an account
    WITHDRAW = "WITHDRAW"  # Money out of an account to an external party
    TRANSFER = "TRANSFER"  # Between two accounts


class TransactionStatus(Enum):
    """States of a transaction"""
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self is not TransactionStatus.PENDING


def parse_status(value: Union[TransactionStatus, str]) -> TransactionStatus:
    """
    Resolve a status from an enum member or a case-insensitive name.

    Raises:
        InvalidTransactionStatus: If the value is empty or unknown
    """
    if isinstance(value, TransactionStatus):
        return value
    if value is None or not str(value).strip():
        raise InvalidTransactionStatus("Status cannot be empty")
    name = str(value).strip().upper()
    if name not in TransactionStatus.__members__:
        valid = ", ".join(status.value for status in TransactionStatus)
        raise InvalidTransactionStatus(f"Invalid status: {value}. Valid statuses: {valid}")
    return TransactionStatus[name]


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


@dataclass
class Transaction(StorageRecord):
    """
    Immutable record of one money movement
    """
    transaction_id: str
    from_account_number: Optional[str]  # None for deposits
    to_account_number: Optional[str]    # None for withdrawals
    amount: Decimal
    transaction_type: TransactionType
    description: str
    transaction_date: datetime
    status: TransactionStatus

    def __post_init__(self):
        self.amount = quantize(Decimal(str(self.amount)))

        # Naive datetimes are taken as UTC so stored dates always compare
        self.transaction_date = _as_utc(self.transaction_date)
        self.created_at = _as_utc(self.created_at)
        self.updated_at = _as_utc(self.updated_at)

        # Validate amount is positive
        if self.amount <= ZERO:
            raise ValueError("Transaction amount must be positive")

        # Account shape must match the movement type
        if self.transaction_type == TransactionType.DEPOSIT:
            if self.from_account_number or not self.to_account_number:
                raise ValueError("Deposit must have a destination account and no source account")
        elif self.transaction_type == TransactionType.WITHDRAW:
            if self.to_account_number or not self.from_account_number:
                raise ValueError("Withdrawal must have a source account and no destination account")
        elif not (self.from_account_number and self.to_account_number):
            raise ValueError("Transfer must have both source and destination accounts")

    @property
    def is_completed(self) -> bool:
        return self.status == TransactionStatus.COMPLETED

    @property
    def is_failed(self) -> bool:
        return self.status == TransactionStatus.FAILED

    @property
    def is_pending(self) -> bool:
        return self.status == TransactionStatus.PENDING

    def involves(self, account_number: str) -> bool:
        return account_number in (self.from_account_number, self.to_account_number)


class TransactionLog:
    """
    Append-only transaction storage with status transitions and queries
    """

    def __init__(self, storage: StorageInterface, table_name: str = "transactions"):
        self.storage = storage
        self.table_name = table_name

    def append(self, transaction: Transaction) -> Transaction:
        """
        Append a new record.

        Raises:
            DuplicateIdentifier: If the transaction id was already used
        """
        if not self.storage.insert(self.table_name, transaction.transaction_id,
                                   self._transaction_to_dict(transaction)):
            raise DuplicateIdentifier(
                f"Transaction id already exists: {transaction.transaction_id}",
                {"transaction_id": transaction.transaction_id}
            )
        return transaction

    def record_insert(self, transaction: Transaction) -> RecordInsert:
        """Insert for a new record, to be committed together with balance updates"""
        return RecordInsert(self.table_name, transaction.transaction_id,
                            self._transaction_to_dict(transaction))

    def get(self, transaction_id: str) -> Optional[Transaction]:
        """Get transaction by id"""
        transaction_dict = self.storage.load(self.table_name, transaction_id)
        if transaction_dict:
            return self._transaction_from_dict(transaction_dict)
        return None

    def update_status(self, transaction_id: str, new_status: Union[TransactionStatus, str]) -> bool:
        """
        Move a PENDING transaction to a terminal status.

        Returns False if the transaction does not exist, is no longer
        PENDING, or ``new_status`` is PENDING itself. Terminal statuses are
        never overwritten.
        """
        new_status = parse_status(new_status)
        if not new_status.is_terminal:
            return False
        return self.storage.compare_and_swap(
            self.table_name,
            transaction_id,
            expected={"status": TransactionStatus.PENDING.value},
            changes={
                "status": new_status.value,
                "updated_at": datetime.now(timezone.utc).isoformat()
            }
        )

    def list_by_account(self, account_number: str, limit: Optional[int] = None) -> List[Transaction]:
        """Transactions touching an account, newest first"""
        transactions = [txn for txn in self._load_newest_first() if txn.involves(account_number)]
        if limit is not None:
            transactions = transactions[:limit]
        return transactions

    def list_by_date_range(self, start: datetime, end: datetime) -> List[Transaction]:
        """
        Transactions dated within [start, end], newest first. Naive datetimes
        are taken as UTC.

        Raises:
            InvalidDateRange: If start is after end
        """
        start, end = _as_utc(start), _as_utc(end)
        if start > end:
            raise InvalidDateRange("Start date cannot be after end date",
                                   {"start": start.isoformat(), "end": end.isoformat()})
        return [txn for txn in self._load_newest_first()
                if start <= txn.transaction_date <= end]

    def list_by_status(self, status: Union[TransactionStatus, str]) -> List[Transaction]:
        """Transactions in a given status, newest first"""
        status = parse_status(status)
        return [txn for txn in self._load_newest_first() if txn.status == status]

    def _load_newest_first(self) -> List[Transaction]:
        all_transactions = self.storage.load_all(self.table_name)
        # Reverse insertion order first so equal timestamps stay newest first
        transactions = [self._transaction_from_dict(data) for data in reversed(all_transactions)]
        transactions.sort(key=lambda txn: txn.transaction_date, reverse=True)
        return transactions

    def _transaction_to_dict(self, transaction: Transaction) -> Dict:
        """Convert Transaction to dictionary for storage"""
        result = transaction.to_dict()
        result['amount'] = format_amount(transaction.amount)
        result['transaction_type'] = transaction.transaction_type.value
        result['transaction_date'] = transaction.transaction_date.isoformat()
        result['status'] = transaction.status.value
        return result

    def _transaction_from_dict(self, data: Dict) -> Transaction:
        """Convert dictionary to Transaction"""
        return Transaction(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            transaction_id=data['transaction_id'],
            from_account_number=data.get('from_account_number'),
            to_account_number=data.get('to_account_number'),
            amount=Decimal(data['amount']),
            transaction_type=TransactionType(data['transaction_type']),
            description=data['description'],
            transaction_date=datetime.fromisoformat(data['transaction_date']),
            status=TransactionStatus(data['status'])
        )
