"""
Tests for identifier generation
"""

import re
import pytest
import threading

from ledger_core.config import LedgerConfig
from ledger_core.errors import InvalidIdentifier
from ledger_core.identifiers import (
    CustomerIdGenerator, build_customer_id_generator, generate_account_number,
    generate_record_id, generate_transaction_id
)
from ledger_core.storage import InMemoryStorage, SQLiteStorage


class TestTransactionIds:
    """Transaction id format and uniqueness"""

    def test_format(self):
        """Test transaction id format"""
        transaction_id = generate_transaction_id()
        assert re.fullmatch(r"TXN\d{13}[0-9A-F]{12}", transaction_id)

    def test_concurrent_generation_never_collides(self):
        """Test 10,000 ids drawn from many threads are all distinct"""
        generated = []
        errors = []
        lock = threading.Lock()
        barrier = threading.Barrier(20)

        def generate():
            try:
                barrier.wait()
                batch = [generate_transaction_id() for _ in range(500)]
                with lock:
                    generated.extend(batch)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=generate) for _ in range(20)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(errors) == 0, f"Errors occurred: {errors}"
        assert len(generated) == 10_000
        assert len(set(generated)) == 10_000


class TestAccountNumbers:

    def test_format(self):
        """Test account number format"""
        assert re.fullmatch(r"\d{19}", generate_account_number())

    def test_distinct_within_same_millisecond(self):
        """Test account numbers drawn in a burst are distinct"""
        numbers = {generate_account_number() for _ in range(200)}
        # 6 random digits per millisecond; a handful of collisions would still be rejected on insert
        assert len(numbers) >= 195


class TestRecordIds:

    def test_uuid_strings(self):
        """Test record ids are unique uuid strings"""
        assert generate_record_id() != generate_record_id()
        assert len(generate_record_id()) == 36


class TestCustomerIdGenerator:
    """Strictly increasing customer ids"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.generator = CustomerIdGenerator(self.storage)

    def test_sequence_starts_at_one(self):
        """Test customer ids start at one and increase"""
        assert self.generator.next_id() == "CUST0001"
        assert self.generator.next_id() == "CUST0002"

    def test_custom_prefix_and_width(self):
        """Test custom prefix and width use their own counter"""
        generator = CustomerIdGenerator(self.storage, prefix="CU", width=6)
        assert generator.next_id() == "CU000001"
        # Separate counter from the default prefix
        assert self.generator.next_id() == "CUST0001"

    def test_number_grows_past_width(self):
        """Test numbers wider than the padding are kept whole"""
        assert self.generator.format(12345) == "CUST12345"

    def test_parse(self):
        """Test extracting the number from a customer id"""
        assert self.generator.parse("CUST0042") == 42

    @pytest.mark.parametrize("customer_id", ["", "ACCT0001", "CUSTabc", "CUST"])
    def test_parse_rejects_malformed(self, customer_id):
        """Test malformed customer ids are rejected"""
        with pytest.raises(InvalidIdentifier):
            self.generator.parse(customer_id)

    def test_seed_moves_counter_forward(self):
        """Test seeding continues after an existing customer id"""
        self.generator.seed("CUST0041")
        assert self.generator.next_id() == "CUST0042"

    def test_seed_never_moves_backwards(self):
        """Test seeding below the current counter has no effect"""
        for _ in range(5):
            self.generator.next_id()
        self.generator.seed("CUST0002")
        assert self.generator.next_id() == "CUST0006"

    def test_concurrent_callers_get_distinct_ids(self):
        """Test parallel next_id() calls never hand out the same id"""
        issued = []
        errors = []
        lock = threading.Lock()

        def issue():
            try:
                for _ in range(50):
                    customer_id = self.generator.next_id()
                    with lock:
                        issued.append(customer_id)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=issue) for _ in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(errors) == 0, f"Errors occurred: {errors}"
        assert len(set(issued)) == 500
        assert sorted(self.generator.parse(c) for c in issued) == list(range(1, 501))

    def test_sqlite_backed_counter(self):
        """Test the counter on the SQLite backend"""
        storage = SQLiteStorage()
        generator = CustomerIdGenerator(storage)
        generator.seed("CUST0009")
        assert generator.next_id() == "CUST0010"
        storage.close()

    def test_generator_from_configuration(self):
        """Test the configured prefix and width drive issued ids"""
        settings = LedgerConfig(_env_file=None, customer_id_prefix="CLT", customer_id_width=6)
        generator = build_customer_id_generator(self.storage, settings)
        assert generator.next_id() == "CLT000001"
        assert generator.parse("CLT000042") == 42
