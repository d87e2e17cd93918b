from datetime import datetime

import mongomock
import pytest

import notifications
import products
from database import ensure_indexes
from schemas import ProductIn

NOW = datetime(2026, 3, 10, 9, 30, 0)


@pytest.fixture
def db():
    database = mongomock.MongoClient().catering_test
    ensure_indexes(database)
    return database


@pytest.fixture
def sink():
    memory = notifications.MemorySink()
    notifications.set_sink(memory)
    yield memory
    notifications.set_sink(notifications.LogSink())


@pytest.fixture
def make_product(db):
    counter = {"n": 0}

    def make(stock=10, price=100.0, threshold=3, discount=None, name=None):
        counter["n"] += 1
        n = counter["n"]
        payload = ProductIn(
            slug=f"product-{n}",
            name=name or f"Product {n}",
            unit={"unitType": "piece", "originalPrice": price},
            stockQuantity=stock,
            lowStockThreshold=threshold,
            discount=discount,
        )
        result = products.create_product(db, payload, now=NOW)
        assert result.ok, result.error
        return result.data

    return make


@pytest.fixture
def make_customer(db, sink):
    import customers
    from schemas import CustomerIn

    counter = {"n": 0}

    def make(**overrides):
        counter["n"] += 1
        data = {
            "name": f"Customer {counter['n']}",
            "phone": f"0171{counter['n']:07d}",
            "address": "House 1, Road 2, Dhaka",
        }
        data.update(overrides)
        result = customers.register_customer(db, CustomerIn(**data), now=NOW)
        assert result.ok, result.error
        return result.data["customer"]

    return make


@pytest.fixture
def stale_read(monkeypatch):
    """Make ``module.<finder>`` return ``snapshot`` once, as if read before a concurrent write."""

    def install(module, finder, snapshot):
        real = getattr(module, finder)
        pending = [snapshot]

        def find(db, doc_id):
            return pending.pop() if pending else real(db, doc_id)

        monkeypatch.setattr(module, finder, find)

    return install
