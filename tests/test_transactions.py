"""
Test suite for the Transaction Log

Validates record shape rules, append-only storage, the PENDING to terminal
status lifecycle and the newest-first query surface.
"""

import pytest
from decimal import Decimal
from datetime import datetime, timezone, timedelta

from ledger_core.errors import DuplicateIdentifier, InvalidDateRange, InvalidTransactionStatus
from ledger_core.identifiers import generate_record_id, generate_transaction_id
from ledger_core.storage import InMemoryStorage, SQLiteStorage
from ledger_core.transactions import (
    Transaction, TransactionLog, TransactionStatus, TransactionType, parse_status
)


BASE_DATE = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_transaction(transaction_type=TransactionType.TRANSFER, from_account="A", to_account="B",
                     amount="10.00", status=TransactionStatus.COMPLETED, date=None,
                     transaction_id=None, description="Money Transfer"):
    date = date or datetime.now(timezone.utc)
    return Transaction(
        id=generate_record_id(),
        created_at=date,
        updated_at=date,
        transaction_id=transaction_id or generate_transaction_id(),
        from_account_number=from_account,
        to_account_number=to_account,
        amount=Decimal(amount),
        transaction_type=transaction_type,
        description=description,
        transaction_date=date,
        status=status
    )


class TestParseStatus:

    def test_case_insensitive(self):
        """Test statuses parse regardless of case"""
        assert parse_status("completed") == TransactionStatus.COMPLETED
        assert parse_status(" Pending ") == TransactionStatus.PENDING
        assert parse_status(TransactionStatus.FAILED) == TransactionStatus.FAILED

    @pytest.mark.parametrize("value", ["", "   ", None, "DONE"])
    def test_rejects_empty_and_unknown(self, value):
        """Test empty and unknown statuses are rejected"""
        with pytest.raises(InvalidTransactionStatus):
            parse_status(value)

    def test_terminal_statuses(self):
        """Test only PENDING is non-terminal"""
        assert not TransactionStatus.PENDING.is_terminal
        assert TransactionStatus.COMPLETED.is_terminal
        assert TransactionStatus.FAILED.is_terminal
        assert TransactionStatus.CANCELLED.is_terminal


class TestTransactionRecord:

    def test_deposit_shape(self):
        """Test a deposit has only a destination account"""
        txn = make_transaction(TransactionType.DEPOSIT, from_account=None, to_account="A")
        assert txn.involves("A")
        assert not txn.involves("B")

    def test_deposit_with_source_rejected(self):
        """Test a deposit with a source account is rejected"""
        with pytest.raises(ValueError):
            make_transaction(TransactionType.DEPOSIT, from_account="A", to_account="B")

    def test_withdraw_needs_source_only(self):
        """Test a withdrawal has only a source account"""
        make_transaction(TransactionType.WITHDRAW, from_account="A", to_account=None)
        with pytest.raises(ValueError):
            make_transaction(TransactionType.WITHDRAW, from_account=None, to_account="A")

    def test_transfer_needs_both_accounts(self):
        """Test a transfer needs both accounts"""
        with pytest.raises(ValueError):
            make_transaction(TransactionType.TRANSFER, from_account="A", to_account=None)

    @pytest.mark.parametrize("amount", ["0", "-5.00"])
    def test_amount_must_be_positive(self, amount):
        """Test zero and negative amounts are rejected"""
        with pytest.raises(ValueError):
            make_transaction(amount=amount)

    def test_naive_datetimes_become_utc(self):
        """Test naive record datetimes are normalized to UTC"""
        txn = make_transaction(date=datetime(2024, 3, 1, 9, 30))
        assert txn.transaction_date.tzinfo == timezone.utc
        assert txn.created_at.tzinfo == timezone.utc
        assert txn.updated_at.tzinfo == timezone.utc

    def test_status_properties(self):
        """Test status convenience properties"""
        assert make_transaction(status=TransactionStatus.COMPLETED).is_completed
        assert make_transaction(status=TransactionStatus.FAILED).is_failed
        assert make_transaction(status=TransactionStatus.PENDING).is_pending


class TestTransactionLog:
    """Test append-only storage and status transitions"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.log = TransactionLog(self.storage)

    def test_append_and_get(self):
        """Test appending and reading back a transaction"""
        txn = make_transaction(amount="30.00", description="Rent")
        self.log.append(txn)

        loaded = self.log.get(txn.transaction_id)
        assert loaded.transaction_id == txn.transaction_id
        assert loaded.amount == Decimal("30.00")
        assert loaded.transaction_type == TransactionType.TRANSFER
        assert loaded.description == "Rent"
        assert loaded.transaction_date == txn.transaction_date
        assert loaded.status == TransactionStatus.COMPLETED

    def test_get_missing_returns_none(self):
        """Test reading an unknown transaction id"""
        assert self.log.get("TXN-missing") is None

    def test_append_rejects_duplicate_id(self):
        """Test a used transaction id is never overwritten"""
        txn = make_transaction(transaction_id="TXN1", amount="10.00")
        self.log.append(txn)
        with pytest.raises(DuplicateIdentifier):
            self.log.append(make_transaction(transaction_id="TXN1", amount="99.00"))
        assert self.log.get("TXN1").amount == Decimal("10.00")

    def test_pending_moves_to_terminal(self):
        """Test PENDING moves to a terminal status"""
        txn = self.log.append(make_transaction(status=TransactionStatus.PENDING))

        assert self.log.update_status(txn.transaction_id, "completed")
        assert self.log.get(txn.transaction_id).status == TransactionStatus.COMPLETED

    @pytest.mark.parametrize("terminal", [
        TransactionStatus.COMPLETED, TransactionStatus.FAILED, TransactionStatus.CANCELLED
    ])
    def test_terminal_status_never_overwritten(self, terminal):
        """Test terminal statuses never change"""
        txn = self.log.append(make_transaction(status=terminal))
        for target in TransactionStatus:
            assert not self.log.update_status(txn.transaction_id, target)
        assert self.log.get(txn.transaction_id).status == terminal

    def test_pending_to_pending_refused(self):
        """Test PENDING cannot be set again"""
        txn = self.log.append(make_transaction(status=TransactionStatus.PENDING))
        assert not self.log.update_status(txn.transaction_id, TransactionStatus.PENDING)

    def test_update_status_missing_transaction(self):
        """Test status update of an unknown transaction"""
        assert not self.log.update_status("TXN-missing", TransactionStatus.CANCELLED)

    def test_update_status_invalid_value(self):
        """Test an invalid target status is rejected"""
        txn = self.log.append(make_transaction(status=TransactionStatus.PENDING))
        with pytest.raises(InvalidTransactionStatus):
            self.log.update_status(txn.transaction_id, "SETTLED")

    def test_core_fields_unchanged_by_status_update(self):
        """Test a status update leaves core fields untouched"""
        txn = self.log.append(make_transaction(status=TransactionStatus.PENDING, amount="42.00"))
        self.log.update_status(txn.transaction_id, TransactionStatus.CANCELLED)
        loaded = self.log.get(txn.transaction_id)
        assert loaded.amount == Decimal("42.00")
        assert (loaded.from_account_number, loaded.to_account_number) == ("A", "B")


class TestTransactionQueries:
    """Newest-first queries"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.log = TransactionLog(self.storage)

        # Appended out of date order on purpose
        self.old = self.log.append(make_transaction(date=BASE_DATE, transaction_id="T-OLD"))
        self.new = self.log.append(make_transaction(
            TransactionType.DEPOSIT, from_account=None, to_account="A",
            date=BASE_DATE + timedelta(days=2), transaction_id="T-NEW"))
        self.mid = self.log.append(make_transaction(
            TransactionType.WITHDRAW, from_account="C", to_account=None,
            date=BASE_DATE + timedelta(days=1), transaction_id="T-MID",
            status=TransactionStatus.FAILED))

    def test_list_by_account(self):
        """Test account queries return newest first"""
        assert [t.transaction_id for t in self.log.list_by_account("A")] == ["T-NEW", "T-OLD"]
        assert [t.transaction_id for t in self.log.list_by_account("B")] == ["T-OLD"]
        assert self.log.list_by_account("Z") == []

    def test_list_by_account_limit(self):
        """Test account queries honor the limit"""
        assert [t.transaction_id for t in self.log.list_by_account("A", limit=1)] == ["T-NEW"]

    def test_date_range_inclusive(self):
        """Test date range bounds are inclusive"""
        result = self.log.list_by_date_range(BASE_DATE, BASE_DATE + timedelta(days=1))
        assert [t.transaction_id for t in result] == ["T-MID", "T-OLD"]

    def test_date_range_naive_datetimes_are_utc(self):
        """Test naive range bounds are read as UTC"""
        start = datetime(2024, 3, 2, 0, 0)
        end = datetime(2024, 3, 4, 0, 0)
        assert [t.transaction_id for t in self.log.list_by_date_range(start, end)] == ["T-NEW", "T-MID"]

    def test_date_range_start_after_end(self):
        """Test a reversed date range is rejected"""
        with pytest.raises(InvalidDateRange):
            self.log.list_by_date_range(BASE_DATE + timedelta(days=1), BASE_DATE)

    def test_list_by_status(self):
        """Test status queries return newest first"""
        assert [t.transaction_id for t in self.log.list_by_status("completed")] == ["T-NEW", "T-OLD"]
        assert [t.transaction_id for t in self.log.list_by_status(TransactionStatus.FAILED)] == ["T-MID"]
        assert self.log.list_by_status(TransactionStatus.PENDING) == []

    def test_naive_dates_stored_as_utc_and_queryable(self):
        """Test an externally appended record with naive datetimes sorts with the rest"""
        naive = datetime(2024, 3, 1, 18, 0)
        self.log.append(make_transaction(date=naive, transaction_id="T-NAIVE",
                                         status=TransactionStatus.PENDING))

        loaded = self.log.get("T-NAIVE")
        assert loaded.transaction_date == datetime(2024, 3, 1, 18, 0, tzinfo=timezone.utc)
        assert loaded.created_at.tzinfo is not None

        assert [t.transaction_id for t in self.log.list_by_account("B")] == ["T-NAIVE", "T-OLD"]
        assert [t.transaction_id for t in self.log.list_by_status("PENDING")] == ["T-NAIVE"]
        in_range = self.log.list_by_date_range(BASE_DATE, BASE_DATE + timedelta(hours=12))
        assert [t.transaction_id for t in in_range] == ["T-NAIVE", "T-OLD"]

    def test_equal_dates_latest_append_first(self):
        """Test ties on date keep the latest append first"""
        self.log.append(make_transaction(date=BASE_DATE, transaction_id="T-OLD-2"))
        ordered = [t.transaction_id for t in self.log.list_by_account("B")]
        assert ordered == ["T-OLD-2", "T-OLD"]


class TestTransactionLogSQLite:

    def test_round_trip_and_status_update(self):
        """Test append and status update on SQLite"""
        storage = SQLiteStorage()
        log = TransactionLog(storage)
        txn = log.append(make_transaction(status=TransactionStatus.PENDING, amount="0.01"))

        assert log.update_status(txn.transaction_id, TransactionStatus.FAILED)
        loaded = log.get(txn.transaction_id)
        assert loaded.status == TransactionStatus.FAILED
        assert loaded.amount == Decimal("0.01")
        storage.close()
