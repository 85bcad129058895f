"""
Identifier Generation Module

Transaction ids and account numbers are time + random composites, so
concurrent callers never need to coordinate. Customer ids keep the strictly
increasing CUST0001 scheme but draw the number from the store's atomic
counter instead of reading the last issued id and adding one.
"""

import secrets
import time
import uuid
from typing import Optional

from .config import LedgerConfig, get_config
from .errors import InvalidIdentifier
from .storage import StorageInterface


TRANSACTION_ID_PREFIX = "TXN"


def _epoch_millis() -> int:
    return time.time_ns() // 1_000_000


def generate_transaction_id() -> str:
    """TXN + 13-digit epoch millis + 12 random hex chars (48 random bits)"""
    return f"{TRANSACTION_ID_PREFIX}{_epoch_millis():013d}{secrets.token_hex(6).upper()}"


def generate_account_number() -> str:
    """13-digit epoch millis + 6 random digits"""
    return f"{_epoch_millis():013d}{secrets.randbelow(1_000_000):06d}"


def generate_record_id() -> str:
    """Surrogate id for stored records"""
    return str(uuid.uuid4())


class CustomerIdGenerator:
    """
    Issues customer ids of the form PREFIX + zero-padded number.

    Every call to next_id() advances a counter held in storage, so two
    concurrent callers (threads or processes sharing the store) always get
    different numbers.
    """

    def __init__(self, storage: StorageInterface, prefix: str = "CUST", width: int = 4):
        self.storage = storage
        self.prefix = prefix
        self.width = width
        self.sequences_table = "sequences"
        self.counter_name = f"customer_id:{prefix}"

    def next_id(self) -> str:
        return self.format(self.storage.increment(self.sequences_table, self.counter_name))

    def format(self, number: int) -> str:
        return f"{self.prefix}{number:0{self.width}d}"

    def parse(self, customer_id: str) -> int:
        """
        Extract the numeric part of a customer id.

        Raises:
            InvalidIdentifier: If the prefix is wrong or the suffix is not a number
        """
        if not customer_id or not customer_id.startswith(self.prefix):
            raise InvalidIdentifier(f"Invalid customer id: {customer_id}")
        numeric_part = customer_id[len(self.prefix):]
        if not numeric_part.isdigit():
            raise InvalidIdentifier(f"Customer id cannot be read: {numeric_part}")
        return int(numeric_part)

    def seed(self, last_issued_id: str) -> None:
        """
        Make sure ids issued from now on come after ``last_issued_id``.

        Used when adopting an existing customer base. Never moves the
        counter backwards.
        """
        last_number = self.parse(last_issued_id)
        while True:
            record = self.storage.load(self.sequences_table, self.counter_name)
            if record is None:
                if self.storage.insert(self.sequences_table, self.counter_name,
                                       {"id": self.counter_name, "value": last_number}):
                    return
                continue
            if record["value"] >= last_number:
                return
            if self.storage.compare_and_swap(self.sequences_table, self.counter_name,
                                             {"value": record["value"]}, {"value": last_number}):
                return


def build_customer_id_generator(storage: StorageInterface, config: Optional[LedgerConfig] = None) -> CustomerIdGenerator:
    """Customer id generator using the configured prefix and width"""
    config = config or get_config()
    return CustomerIdGenerator(storage, prefix=config.customer_id_prefix, width=config.customer_id_width)
