"""
Ledger Core Module

Orchestrates deposits, withdrawals and transfers against the Account Store
and Transaction Log.

Every mutation follows the same optimistic discipline: read the account(s),
compute the new balance(s), then commit the conditional balance update(s)
together with the COMPLETED transaction record in one atomic storage batch.
If another operation changed a balance in between, the batch does not apply
and the operation re-reads and retries a bounded number of times. When the
store cannot apply the change at all, a FAILED record is written under the
operation's transaction id and AccountUpdateFailed is raised.
"""

import functools
import random
import time
from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Union

from .accounts import Account, AccountStore, AccountType
from .amounts import ZERO, AmountLike, format_amount, to_amount, to_positive_amount
from .config import LedgerConfig, get_config
from .errors import (
    ErrorKind, LedgerError, AccountNotFound, AccountInactive, AccountUpdateFailed,
    AmountOutOfBounds, DuplicateIdentifier, InsufficientBalance, InvalidAmount,
    InvalidIdentifier, InvalidLimit, SameAccount, TransactionNotFound
)
from .identifiers import (
    build_customer_id_generator, generate_account_number, generate_record_id, generate_transaction_id
)
from .logging_config import get_logger, log_action
from .storage import StorageInterface, RecordExistsError, create_storage
from .transactions import (
    Transaction, TransactionLog, TransactionStatus, TransactionType, parse_status
)


@dataclass
class AccountView:
    """Account state as returned to callers"""
    account_number: str
    customer_id: str
    balance: Decimal
    account_type: AccountType
    is_active: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_account(cls, account: Account) -> 'AccountView':
        return cls(
            account_number=account.account_number,
            customer_id=account.customer_id,
            balance=account.balance,
            account_type=account.account_type,
            is_active=account.is_active,
            created_at=account.created_at,
            updated_at=account.updated_at
        )


@dataclass
class BalanceView:
    account_number: str
    balance: Decimal
    account_type: AccountType
    last_updated: datetime


@dataclass
class TransferResult:
    """Outcome of a completed transfer"""
    transaction_id: str
    from_account_number: str
    to_account_number: str
    amount: Decimal
    description: str
    from_balance: Decimal
    to_balance: Decimal
    status: TransactionStatus
    timestamp: datetime


def _require_identifier(value: Optional[str], label: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidIdentifier(f"{label} is required")
    return value.strip()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _logged(action: str):
    """Log ledger errors raised by an operation before they propagate"""
    def decorator(method):
        @functools.wraps(method)
        def wrapper(self, *args, **kwargs):
            try:
                return method(self, *args, **kwargs)
            except LedgerError as error:
                # Storage failures are logged with their cause where they happen
                if error.kind != ErrorKind.STORAGE_FAILURE:
                    log_action(
                        self.logger, "warning", f"{action} rejected: {error.message}",
                        action=action, extra={"code": error.code, "kind": error.kind.value}
                    )
                raise
        return wrapper
    return decorator


class LedgerCore:
    """
    Stateless orchestration of balance mutations and transaction recording
    """

    def __init__(
        self,
        storage: StorageInterface,
        config: Optional[LedgerConfig] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.storage = storage
        self.config = config or get_config()
        self.accounts = AccountStore(storage)
        self.transactions = TransactionLog(storage)
        self.customer_ids = build_customer_id_generator(storage, self.config)
        self.logger = get_logger("ledger_core.ledger")
        self._sleep = sleep

        self.transfer_min_amount = to_amount(self.config.transfer_min_amount)
        self.transfer_max_amount = to_amount(self.config.transfer_max_amount)
        if self.transfer_min_amount >= self.transfer_max_amount:
            raise ValueError("transfer_min_amount must be below transfer_max_amount")

    # ------------------------------------------------------------------
    # Account lifecycle
    # ------------------------------------------------------------------

    @_logged("open_account")
    def open_account(
        self,
        customer_id: str,
        account_type: Union[AccountType, str],
        initial_balance: Optional[AmountLike] = None
    ) -> AccountView:
        """
        Open an account, optionally funded with an initial deposit.

        A positive initial balance is written together with its "Initial
        deposit" DEPOSIT record in one batch.
        """
        customer_id = _require_identifier(customer_id, "Customer ID")
        account_type = AccountType.parse(account_type)
        initial_balance = ZERO if initial_balance is None else to_amount(initial_balance)
        if initial_balance < ZERO:
            raise InvalidAmount("Initial balance cannot be negative", {"amount": initial_balance})

        for _ in range(self.config.cas_max_retries):
            now = _utcnow()
            account = Account(
                id=generate_record_id(),
                created_at=now,
                updated_at=now,
                account_number=generate_account_number(),
                customer_id=customer_id,
                balance=initial_balance,
                account_type=account_type
            )
            try:
                if initial_balance > ZERO:
                    deposit = self._new_transaction(
                        generate_transaction_id(), TransactionType.DEPOSIT, None,
                        account.account_number, initial_balance, "Initial deposit",
                        TransactionStatus.COMPLETED, now
                    )
                    self.storage.commit_batch(inserts=[
                        self.accounts.record_insert(account),
                        self.transactions.record_insert(deposit)
                    ])
                else:
                    self.accounts.create(account)
            except (RecordExistsError, DuplicateIdentifier):
                # Generated number or id already taken; draw a new one
                continue

            log_action(
                self.logger, "info", "New account created",
                action="open_account", resource=f"account:{account.account_number}",
                account=account.account_number,
                extra={
                    "customer_id": customer_id,
                    "account_type": account_type.value,
                    "initial_balance": format_amount(initial_balance)
                }
            )
            return AccountView.from_account(account)

        raise DuplicateIdentifier("Could not allocate a unique account number")

    def get_account(self, account_number: str) -> AccountView:
        account_number = _require_identifier(account_number, "Account number")
        return AccountView.from_account(self._get_account(account_number))

    def get_balance(self, account_number: str) -> BalanceView:
        account_number = _require_identifier(account_number, "Account number")
        account = self._get_account(account_number)
        return BalanceView(
            account_number=account.account_number,
            balance=account.balance,
            account_type=account.account_type,
            last_updated=account.updated_at
        )

    def list_customer_accounts(self, customer_id: str) -> List[AccountView]:
        customer_id = _require_identifier(customer_id, "Customer ID")
        return [AccountView.from_account(a) for a in self.accounts.list_by_customer(customer_id)]

    def list_active_accounts(self) -> List[AccountView]:
        return [AccountView.from_account(a) for a in self.accounts.list_active()]

    @_logged("deactivate_account")
    def deactivate_account(self, account_number: str) -> AccountView:
        """Soft-deactivate an account; the record and its history are kept"""
        account_number = _require_identifier(account_number, "Account number")
        self._get_account(account_number)

        if self.accounts.deactivate(account_number):
            log_action(
                self.logger, "info", f"Account deactivated: {account_number}",
                action="deactivate_account", resource=f"account:{account_number}",
                account=account_number
            )
        return AccountView.from_account(self._get_account(account_number))

    # ------------------------------------------------------------------
    # Balance mutations
    # ------------------------------------------------------------------

    @_logged("deposit")
    def deposit(self, account_number: str, amount: AmountLike,
                description: Optional[str] = None) -> AccountView:
        """
        Credit an account.

        Raises:
            InvalidIdentifier, InvalidAmount: Bad input, storage untouched
            AccountNotFound, AccountInactive: Account unusable, storage untouched
            AccountUpdateFailed: Balance update could not be applied (FAILED record written)
        """
        account_number = _require_identifier(account_number, "Account number")
        amount = to_positive_amount(amount, "Deposit amount")
        account = self._get_active_account(account_number)

        return self._mutate_single(
            action="deposit",
            account=account,
            amount=amount,
            transaction_type=TransactionType.DEPOSIT,
            description=description or "Deposit",
            compute_balance=lambda current: current.balance + amount
        )

    @_logged("withdraw")
    def withdraw(self, account_number: str, amount: AmountLike,
                 description: Optional[str] = None) -> AccountView:
        """
        Debit an account.

        The sufficiency check runs against the same read the conditional
        update compares with, so a stale read can never be applied.

        Raises:
            InvalidIdentifier, InvalidAmount: Bad input, storage untouched
            AccountNotFound, AccountInactive: Account unusable, storage untouched
            InsufficientBalance: Balance below amount; carries the current balance
            AccountUpdateFailed: Balance update could not be applied (FAILED record written)
        """
        account_number = _require_identifier(account_number, "Account number")
        amount = to_positive_amount(amount, "Withdrawal amount")
        account = self._get_active_account(account_number)

        def compute_balance(current: Account) -> Decimal:
            if current.balance < amount:
                raise InsufficientBalance(current.account_number, current.balance, amount)
            return current.balance - amount

        return self._mutate_single(
            action="withdraw",
            account=account,
            amount=amount,
            transaction_type=TransactionType.WITHDRAW,
            description=description or "Withdrawal",
            compute_balance=compute_balance
        )

    @_logged("transfer")
    def transfer(self, from_account_number: str, to_account_number: str,
                 amount: AmountLike, description: Optional[str] = None) -> TransferResult:
        """
        Move money between two accounts.

        Both legs and the COMPLETED record commit in one batch, applied in
        ascending account-number order; either everything applies or nothing
        does. The transaction id is generated once and reused across retries
        and on the FAILED record.

        Raises:
            InvalidIdentifier, InvalidAmount, AmountOutOfBounds: Bad input, storage untouched
            SameAccount: Source equals destination, storage untouched
            AccountNotFound, AccountInactive: Account unusable, storage untouched
            InsufficientBalance: Source balance below amount
            AccountUpdateFailed: Legs could not be applied (FAILED record written)
        """
        from_account_number = _require_identifier(from_account_number, "Source account number")
        to_account_number = _require_identifier(to_account_number, "Destination account number")
        amount = to_positive_amount(amount, "Transfer amount")
        if not self.transfer_min_amount < amount <= self.transfer_max_amount:
            raise AmountOutOfBounds(amount, self.transfer_min_amount, self.transfer_max_amount)
        if from_account_number == to_account_number:
            raise SameAccount(from_account_number)
        description = description or "Money Transfer"

        accounts = self._read_in_canonical_order([from_account_number, to_account_number])
        for number, role in ((from_account_number, "Source account"),
                             (to_account_number, "Destination account")):
            if accounts[number] is None:
                raise AccountNotFound(number)
            if not accounts[number].can_transact():
                raise AccountInactive(number, role)

        transaction_id = generate_transaction_id()
        try:
            result = self._apply_transfer(
                transaction_id, accounts[from_account_number], accounts[to_account_number],
                amount, description
            )
        except AccountUpdateFailed as error:
            self._record_failure(transaction_id, TransactionType.TRANSFER, from_account_number,
                                 to_account_number, amount, error.message, error)
            raise
        except LedgerError:
            raise
        except Exception as error:
            self._record_failure(transaction_id, TransactionType.TRANSFER, from_account_number,
                                 to_account_number, amount, str(error), error)
            raise AccountUpdateFailed(f"Transfer failed: {error}", transaction_id) from error

        log_action(
            self.logger, "info", "Transfer completed",
            action="transfer", resource=f"transaction:{transaction_id}",
            transaction_id=transaction_id,
            extra={
                "from_account": from_account_number,
                "to_account": to_account_number,
                "amount": format_amount(amount)
            }
        )
        return result

    # ------------------------------------------------------------------
    # Transaction queries
    # ------------------------------------------------------------------

    def get_transaction(self, transaction_id: str) -> Transaction:
        transaction_id = _require_identifier(transaction_id, "Transaction ID")
        transaction = self.transactions.get(transaction_id)
        if transaction is None:
            raise TransactionNotFound(transaction_id)
        return transaction

    def get_account_history(self, account_number: str, limit: Optional[int] = None) -> List[Transaction]:
        """Newest-first history of an existing account (active or not)"""
        account_number = _require_identifier(account_number, "Account number")
        if limit is None:
            limit = self.config.history_default_limit
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise InvalidLimit(f"Limit must be a positive integer: {limit}", {"limit": limit})
        self._get_account(account_number)
        return self.transactions.list_by_account(account_number, limit)

    def list_transactions_by_date_range(self, start: datetime, end: datetime) -> List[Transaction]:
        return self.transactions.list_by_date_range(start, end)

    def list_transactions_by_status(self, status: Union[TransactionStatus, str]) -> List[Transaction]:
        return self.transactions.list_by_status(status)

    @_logged("update_transaction_status")
    def update_transaction_status(self, transaction_id: str,
                                  status: Union[TransactionStatus, str]) -> bool:
        """
        Settle a PENDING transaction. Returns whether a PENDING record was
        found and moved; terminal records are left untouched.
        """
        transaction_id = _require_identifier(transaction_id, "Transaction ID")
        status = parse_status(status)
        updated = self.transactions.update_status(transaction_id, status)
        if updated:
            log_action(
                self.logger, "info", f"Transaction status updated to {status.value}",
                action="update_transaction_status", resource=f"transaction:{transaction_id}",
                transaction_id=transaction_id
            )
        else:
            log_action(
                self.logger, "warning", "Transaction status update did not apply",
                action="update_transaction_status", resource=f"transaction:{transaction_id}",
                transaction_id=transaction_id, extra={"requested_status": status.value}
            )
        return updated

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _get_account(self, account_number: str) -> Account:
        account = self.accounts.get(account_number)
        if account is None:
            raise AccountNotFound(account_number)
        return account

    def _get_active_account(self, account_number: str) -> Account:
        account = self._get_account(account_number)
        if not account.can_transact():
            raise AccountInactive(account_number)
        return account

    def _read_in_canonical_order(self, account_numbers: List[str]) -> Dict[str, Optional[Account]]:
        return {number: self.accounts.get(number) for number in sorted(account_numbers)}

    def _reread_for_update(self, account_number: str, transaction_id: str) -> Account:
        """Fresh read after a conflict; the account must still be usable"""
        account = self.accounts.get(account_number)
        if account is None or not account.can_transact():
            raise AccountUpdateFailed(
                f"Balance update failed: account {account_number} is no longer active",
                transaction_id, {"account_number": account_number}
            )
        return account

    def _backoff(self, attempt: int) -> None:
        delay = min(self.config.cas_retry_max_delay,
                    self.config.cas_retry_base_delay * (2 ** (attempt - 1)))
        self._sleep(random.uniform(delay / 2, delay))

    def _new_transaction(
        self,
        transaction_id: str,
        transaction_type: TransactionType,
        from_account_number: Optional[str],
        to_account_number: Optional[str],
        amount: Decimal,
        description: str,
        status: TransactionStatus,
        timestamp: datetime
    ) -> Transaction:
        return Transaction(
            id=generate_record_id(),
            created_at=timestamp,
            updated_at=timestamp,
            transaction_id=transaction_id,
            from_account_number=from_account_number,
            to_account_number=to_account_number,
            amount=amount,
            transaction_type=transaction_type,
            description=description,
            transaction_date=timestamp,
            status=status
        )

    def _mutate_single(
        self,
        action: str,
        account: Account,
        amount: Decimal,
        transaction_type: TransactionType,
        description: str,
        compute_balance: Callable[[Account], Decimal]
    ) -> AccountView:
        """Compare-and-set loop shared by deposit and withdraw"""
        account_number = account.account_number
        if transaction_type == TransactionType.DEPOSIT:
            from_number, to_number = None, account_number
        else:
            from_number, to_number = account_number, None

        transaction_id = generate_transaction_id()
        try:
            for attempt in range(1, self.config.cas_max_retries + 1):
                new_balance = compute_balance(account)
                now = _utcnow()
                record = self._new_transaction(
                    transaction_id, transaction_type, from_number, to_number,
                    amount, description, TransactionStatus.COMPLETED, now
                )
                applied = self.storage.commit_batch(
                    updates=[self.accounts.balance_update(account, new_balance, now)],
                    inserts=[self.transactions.record_insert(record)]
                )
                if applied:
                    log_action(
                        self.logger, "info", f"{transaction_type.value.capitalize()} completed",
                        action=action, resource=f"account:{account_number}",
                        transaction_id=transaction_id, account=account_number,
                        extra={"amount": format_amount(amount), "balance": format_amount(new_balance),
                               "attempts": attempt}
                    )
                    account.balance = new_balance
                    account.updated_at = now
                    return AccountView.from_account(account)

                if attempt == self.config.cas_max_retries:
                    break
                self._backoff(attempt)
                account = self._reread_for_update(account_number, transaction_id)

            raise AccountUpdateFailed(
                f"Balance update failed after {self.config.cas_max_retries} attempts",
                transaction_id, {"account_number": account_number}
            )
        except AccountUpdateFailed as error:
            self._record_failure(transaction_id, transaction_type, from_number, to_number,
                                 amount, error.message, error)
            raise
        except LedgerError:
            raise
        except Exception as error:
            self._record_failure(transaction_id, transaction_type, from_number, to_number,
                                 amount, str(error), error)
            raise AccountUpdateFailed(f"Balance update failed: {error}", transaction_id) from error

    def _apply_transfer(
        self,
        transaction_id: str,
        source: Account,
        destination: Account,
        amount: Decimal,
        description: str
    ) -> TransferResult:
        """Compare-and-set loop committing both legs and the record together"""
        for attempt in range(1, self.config.cas_max_retries + 1):
            if source.balance < amount:
                raise InsufficientBalance(source.account_number, source.balance, amount)

            new_from_balance = source.balance - amount
            new_to_balance = destination.balance + amount
            now = _utcnow()
            record = self._new_transaction(
                transaction_id, TransactionType.TRANSFER, source.account_number,
                destination.account_number, amount, description, TransactionStatus.COMPLETED, now
            )
            applied = self.storage.commit_batch(
                updates=[
                    self.accounts.balance_update(source, new_from_balance, now),
                    self.accounts.balance_update(destination, new_to_balance, now)
                ],
                inserts=[self.transactions.record_insert(record)]
            )
            if applied:
                return TransferResult(
                    transaction_id=transaction_id,
                    from_account_number=source.account_number,
                    to_account_number=destination.account_number,
                    amount=amount,
                    description=description,
                    from_balance=new_from_balance,
                    to_balance=new_to_balance,
                    status=TransactionStatus.COMPLETED,
                    timestamp=now
                )

            if attempt == self.config.cas_max_retries:
                break
            self._backoff(attempt)
            for number in sorted([source.account_number, destination.account_number]):
                fresh = self._reread_for_update(number, transaction_id)
                if number == source.account_number:
                    source = fresh
                else:
                    destination = fresh

        raise AccountUpdateFailed(
            f"Transfer balance update failed after {self.config.cas_max_retries} attempts",
            transaction_id,
            {"from_account_number": source.account_number,
             "to_account_number": destination.account_number}
        )

    def _record_failure(
        self,
        transaction_id: str,
        transaction_type: TransactionType,
        from_account_number: Optional[str],
        to_account_number: Optional[str],
        amount: Decimal,
        reason: str,
        cause: Exception
    ) -> None:
        """Leave a FAILED record for an attempt whose balance change did not apply"""
        log_action(
            self.logger, "error", f"{transaction_type.value.capitalize()} failed: {reason}",
            action=transaction_type.value.lower(), resource=f"transaction:{transaction_id}",
            transaction_id=transaction_id,
            extra={"from_account": from_account_number, "to_account": to_account_number,
                   "amount": format_amount(amount)},
            exc_info=(type(cause), cause, cause.__traceback__)
        )
        record = self._new_transaction(
            transaction_id, transaction_type, from_account_number, to_account_number,
            amount, f"FAILED: {reason}", TransactionStatus.FAILED, _utcnow()
        )
        try:
            self.transactions.append(record)
        except Exception:
            self.logger.exception("Could not record failed transaction %s", transaction_id)


def build_ledger(config: Optional[LedgerConfig] = None) -> LedgerCore:
    """Wire a LedgerCore to the storage backend named in the configuration"""
    config = config or get_config()
    return LedgerCore(create_storage(config.database_url), config)
