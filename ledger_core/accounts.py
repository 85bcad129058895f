"""
Account Store Module

Holds account records (balance, type, active flag) keyed by account number.
Balances change only through conditional updates that compare against the
balance the caller read; there is no unconditional balance write.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Union
from enum import Enum

from .amounts import ZERO, format_amount, quantize
from .errors import DuplicateIdentifier, InvalidAccountType
from .storage import StorageInterface, StorageRecord, ConditionalUpdate, RecordInsert


class AccountType(Enum):
    """Banking product types"""
    CHECKING = "CHECKING"
    SAVINGS = "SAVINGS"
    BUSINESS = "BUSINESS"

    @classmethod
    def parse(cls, value: Union['AccountType', str]) -> 'AccountType':
        """Resolve an account type from an enum member or a case-insensitive name"""
        if isinstance(value, cls):
            return value
        if isinstance(value, str) and value.strip().upper() in cls.__members__:
            return cls[value.strip().upper()]
        valid = ", ".join(member.value for member in cls)
        raise InvalidAccountType(f"Invalid account type: {value}. Valid types: {valid}")


@dataclass
class Account(StorageRecord):
    """
    Customer account; ``account_number`` is the identifier every ledger
    operation uses and the key it is stored under
    """
    account_number: str
    customer_id: str
    balance: Decimal
    account_type: AccountType
    is_active: bool = True

    def __post_init__(self):
        self.balance = quantize(Decimal(str(self.balance)))
        if self.balance < ZERO:
            raise ValueError("Account balance cannot be negative")

    def can_transact(self) -> bool:
        """Check if account can be credited or debited"""
        return self.is_active


class AccountStore:
    """
    Account persistence with compare-and-set balance updates
    """

    def __init__(self, storage: StorageInterface, table_name: str = "accounts"):
        self.storage = storage
        self.table_name = table_name

    def get(self, account_number: str) -> Optional[Account]:
        """Get account by number, active or not"""
        account_dict = self.storage.load(self.table_name, account_number)
        if account_dict:
            return self._account_from_dict(account_dict)
        return None

    def create(self, account: Account) -> Account:
        """
        Store a new account.

        Raises:
            DuplicateIdentifier: If the account number is already taken
        """
        if not self.storage.insert(self.table_name, account.account_number, self._account_to_dict(account)):
            raise DuplicateIdentifier(
                f"Account number already exists: {account.account_number}",
                {"account_number": account.account_number}
            )
        return account

    def record_insert(self, account: Account) -> RecordInsert:
        """Insert for a new account, to be committed in a batch"""
        return RecordInsert(self.table_name, account.account_number, self._account_to_dict(account))

    def balance_update(
        self,
        account: Account,
        new_balance: Decimal,
        updated_at: Optional[datetime] = None
    ) -> ConditionalUpdate:
        """
        Conditional update moving ``account`` from the balance it was read
        with to ``new_balance``. Only applies while the account is active.
        """
        if new_balance < ZERO:
            raise ValueError("Account balance cannot be negative")
        updated_at = updated_at or datetime.now(timezone.utc)
        return ConditionalUpdate(
            table=self.table_name,
            record_id=account.account_number,
            expected={"balance": format_amount(account.balance), "is_active": True},
            changes={"balance": format_amount(new_balance), "updated_at": updated_at.isoformat()}
        )

    def compare_and_set_balance(
        self,
        account_number: str,
        expected_balance: Decimal,
        new_balance: Decimal
    ) -> bool:
        """Set the balance only if it still equals ``expected_balance`` and the account is active"""
        if new_balance < ZERO:
            raise ValueError("Account balance cannot be negative")
        return self.storage.compare_and_swap(
            self.table_name,
            account_number,
            expected={"balance": format_amount(expected_balance), "is_active": True},
            changes={
                "balance": format_amount(new_balance),
                "updated_at": datetime.now(timezone.utc).isoformat()
            }
        )

    def deactivate(self, account_number: str) -> bool:
        """Soft-deactivate; False if the account is missing or already inactive"""
        return self.storage.compare_and_swap(
            self.table_name,
            account_number,
            expected={"is_active": True},
            changes={"is_active": False, "updated_at": datetime.now(timezone.utc).isoformat()}
        )

    def list_by_customer(self, customer_id: str) -> List[Account]:
        """Active accounts of a customer, newest first"""
        accounts_data = self.storage.find(self.table_name, {"customer_id": customer_id, "is_active": True})
        return self._newest_first(accounts_data)

    def list_active(self) -> List[Account]:
        """All active accounts, newest first"""
        accounts_data = self.storage.find(self.table_name, {"is_active": True})
        return self._newest_first(accounts_data)

    def _newest_first(self, accounts_data: List[Dict]) -> List[Account]:
        # Storage returns insertion order; reversing first keeps ties newest first
        accounts = [self._account_from_dict(data) for data in reversed(accounts_data)]
        accounts.sort(key=lambda account: account.created_at, reverse=True)
        return accounts

    def _account_to_dict(self, account: Account) -> Dict:
        """Convert Account to dictionary for storage"""
        result = account.to_dict()
        result['balance'] = format_amount(account.balance)
        result['account_type'] = account.account_type.value
        return result

    def _account_from_dict(self, data: Dict) -> Account:
        """Convert dictionary to Account"""
        return Account(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            account_number=data['account_number'],
            customer_id=data['customer_id'],
            balance=Decimal(data['balance']),
            account_type=AccountType(data['account_type']),
            is_active=data['is_active']
        )
