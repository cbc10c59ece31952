"""
Synthetic customer generator used to put insert load on the source collection.
"""

import random
import threading
from datetime import datetime
from typing import Any, Optional, Protocol

from faker import Faker

from anonsync.core.models import Address, Customer
from anonsync.observability.logger import get_logger

logger = get_logger(__name__)


class InsertTarget(Protocol):
    def insert_many(self, documents: list[dict[str, Any]]) -> int:
        ...


class CustomersGenerator:
    """
    Inserts a random number of fake customers on a fixed interval.
    """

    def __init__(
        self,
        target: InsertTarget,
        interval_ms: int = 200,
        min_per_tick: int = 1,
        max_per_tick: int = 10,
        seed: Optional[int] = None,
    ):
        """
        Args:
            target: Store receiving the inserts
            interval_ms: Delay between inserts
            min_per_tick: Smallest number of customers per insert
            max_per_tick: Largest number of customers per insert
            seed: Seed for reproducible data
        """
        if min_per_tick > max_per_tick:
            raise ValueError("max_per_tick must be at least min_per_tick")

        self.target = target
        self.interval_ms = interval_ms
        self.min_per_tick = min_per_tick
        self.max_per_tick = max_per_tick
        self.fake = Faker()
        self._random = random.Random(seed)
        if seed is not None:
            self.fake.seed_instance(seed)
        self._stop_event = threading.Event()

    def generate_customer(self) -> Customer:
        if self._random.random() < 0.5:
            first_name = self.fake.first_name_male()
        else:
            first_name = self.fake.first_name_female()
        last_name = self.fake.last_name()

        return Customer(
            first_name=first_name,
            last_name=last_name,
            email=f"{first_name}.{last_name}@{self.fake.free_email_domain()}".lower(),
            address=Address(
                line1=self.fake.street_address(),
                line2=self.fake.secondary_address(),
                postcode=self.fake.postcode(),
                city=self.fake.city(),
                state=self.fake.state_abbr(),
                country=self.fake.country_code(),
            ),
            created_at=datetime.utcnow(),
        )

    def generate_customers(self, count: int) -> list[Customer]:
        return [self.generate_customer() for _ in range(count)]

    def insert_once(self) -> int:
        """Insert one random-sized batch of customers."""
        count = self._random.randint(self.min_per_tick, self.max_per_tick)
        documents = [c.to_document() for c in self.generate_customers(count)]
        inserted = self.target.insert_many(documents)
        logger.info(f"saveCount: {inserted}")
        return inserted

    def run(self, max_batches: Optional[int] = None) -> int:
        """
        Insert batches until stopped or ``max_batches`` is reached.

        Returns:
            Total customers inserted
        """
        self._stop_event.clear()
        total = 0
        batches = 0
        while not self._stop_event.is_set():
            total += self.insert_once()
            batches += 1
            if max_batches is not None and batches >= max_batches:
                break
            self._stop_event.wait(self.interval_ms / 1000.0)
        return total

    def stop(self) -> None:
        self._stop_event.set()
