"""Pytest configuration and fixtures"""
import asyncio
import os
from unittest.mock import AsyncMock, Mock

import pytest

# Set test environment variables
os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "test_key")
os.environ.setdefault("UPSTASH_REDIS_REST_URL", "https://test.upstash.io")
os.environ.setdefault("UPSTASH_REDIS_REST_TOKEN", "test_token")

from cartsync.cart.engine import CartEngine
from cartsync.cart.facade import CartFacade
from cartsync.errors import StoreUnavailableError
from cartsync.models import CartLine, Identity, Product


class FakeLocalStore:
    """In-memory guest slot. Every method is an AsyncMock so calls can be counted."""

    def __init__(self, lines=None):
        self.lines = dict(lines or {})
        self.journal = {}
        self.fail = set()
        for name in ("load", "save", "clear", "merged_ids", "mark_merged", "clear_journal", "clear_merged"):
            setattr(self, name, AsyncMock(side_effect=getattr(self, f"_{name}")))

    async def _io(self, name):
        # Yield to the loop like a real network call
        await asyncio.sleep(0)
        if name in self.fail:
            raise StoreUnavailableError(f"local {name} down", store="local")

    async def _load(self):
        await self._io("load")
        return [CartLine(product_id=pid, quantity=qty) for pid, qty in self.lines.items()]

    async def _save(self, lines):
        await self._io("save")
        self.lines = {line.product_id: line.quantity for line in lines}

    async def _clear(self):
        await self._io("clear")
        self.lines = {}

    async def _merged_ids(self, user_id):
        await self._io("merged_ids")
        return set(self.journal.get(user_id, set()))

    async def _mark_merged(self, user_id, product_id):
        await self._io("mark_merged")
        self.journal.setdefault(user_id, set()).add(product_id)

    async def _clear_journal(self, user_id):
        await self._io("clear_journal")
        self.journal.pop(user_id, None)

    async def _clear_merged(self, user_id):
        await self._io("clear_merged")
        self.lines = {}
        self.journal.pop(user_id, None)

    def total_calls(self):
        return sum(getattr(self, name).call_count for name in (
            "load", "save", "clear", "merged_ids", "mark_merged", "clear_journal", "clear_merged"
        ))


class FakeRemoteStore:
    """In-memory cart table keyed by (user_id, product_id)."""

    def __init__(self, rows=None):
        self.rows = dict(rows or {})
        self.fail = set()
        self.fail_products = set()
        # method name -> coroutine function run once when that method is next called
        self.hooks = {}
        for name in ("list_for_user", "get_line", "insert_line", "update_line", "delete_line", "delete_all"):
            setattr(self, name, AsyncMock(side_effect=getattr(self, f"_{name}")))

    async def _io(self, name, product_id=None):
        hook = self.hooks.pop(name, None)
        if hook:
            await hook()
        await asyncio.sleep(0)
        if name in self.fail or (product_id and product_id in self.fail_products):
            raise StoreUnavailableError(f"remote {name} down")

    def _line(self, user_id, product_id):
        return CartLine(
            id=f"row-{product_id}",
            product_id=product_id,
            quantity=self.rows[(user_id, product_id)],
            owner=user_id,
        )

    async def _list_for_user(self, user_id):
        await self._io("list_for_user")
        return [self._line(u, p) for (u, p) in self.rows if u == user_id]

    async def _get_line(self, user_id, product_id):
        await self._io("get_line", product_id)
        if (user_id, product_id) not in self.rows:
            return None
        return self._line(user_id, product_id)

    async def _insert_line(self, user_id, product_id, quantity):
        await self._io("insert_line", product_id)
        self.rows[(user_id, product_id)] = quantity

    async def _update_line(self, user_id, line, quantity):
        await self._io("update_line", line.product_id)
        self.rows[(user_id, line.product_id)] = quantity

    async def _delete_line(self, user_id, product_id):
        await self._io("delete_line", product_id)
        self.rows.pop((user_id, product_id), None)

    async def _delete_all(self, user_id):
        await self._io("delete_all")
        self.rows = {k: v for k, v in self.rows.items() if k[0] != user_id}

    def cart_of(self, user_id):
        return {p: q for (u, p), q in self.rows.items() if u == user_id}

    def total_calls(self):
        return sum(getattr(self, name).call_count for name in (
            "list_for_user", "get_line", "insert_line", "update_line", "delete_line", "delete_all"
        ))


@pytest.fixture
def sample_products():
    """Catalog rows keyed by id, in products table shape"""
    return {
        "prod-a": {
            "id": "prod-a",
            "product_name": "Latitude 7440",
            "sku": "LAT-7440",
            "slug": "latitude-7440",
            "thumbnail": "https://cdn.test/lat.png",
            "stock_quantity": "5",
            "withCustomer": "1",
            "post_status": "Publish",
            "price": "120.50",
        },
        "prod-b": {
            "id": "prod-b",
            "product_name": "ThinkPad X1",
            "sku": "TP-X1",
            "slug": "thinkpad-x1",
            "stock_quantity": 2,
            "withCustomer": 0,
            "post_status": "Publish",
            "price": 80,
        },
    }


@pytest.fixture
def fake_enrichment(sample_products):
    """Enrichment service that knows sample_products"""
    service = Mock()

    async def enrich(product_ids):
        await asyncio.sleep(0)
        return {pid: Product(**sample_products[pid]) for pid in product_ids if pid in sample_products}

    service.enrich = AsyncMock(side_effect=enrich)
    return service


@pytest.fixture
def local_store():
    return FakeLocalStore()


@pytest.fixture
def remote_store():
    return FakeRemoteStore()


@pytest.fixture
def engine(local_store, remote_store, fake_enrichment):
    return CartEngine(local_store, remote_store, fake_enrichment)


@pytest.fixture
def make_engine(fake_enrichment):
    """Build engines with their own fresh stores"""
    def factory(local_lines=None, remote_rows=None):
        return CartEngine(FakeLocalStore(local_lines), FakeRemoteStore(remote_rows), fake_enrichment)
    return factory


@pytest.fixture
def facade(engine):
    return CartFacade(engine)


@pytest.fixture
def anonymous():
    return Identity.anonymous()


@pytest.fixture
def verified_user():
    return Identity.verified("user-123")


@pytest.fixture
def unverified_user():
    return Identity.unverified("user-123")


@pytest.fixture
def mock_supabase_client():
    """Mock async Supabase client: query builders chain, execute() is awaited"""
    client = Mock()

    table_mock = Mock()
    for method in ("select", "insert", "update", "delete", "eq", "in_", "order", "limit"):
        getattr(table_mock, method).return_value = table_mock
    table_mock.execute = AsyncMock(return_value=Mock(data=[]))

    client.table.return_value = table_mock
    return client


@pytest.fixture
def mock_redis():
    """Mock Upstash async Redis client"""
    redis = Mock()
    redis.get = AsyncMock(return_value=None)
    redis.set = AsyncMock(return_value=True)
    redis.delete = AsyncMock(return_value=1)
    redis.sadd = AsyncMock(return_value=1)
    redis.smembers = AsyncMock(return_value=[])
    redis.expire = AsyncMock(return_value=True)
    return redis
