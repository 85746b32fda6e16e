"""
Shared fixtures: a seeded memory store and the services built on it.
"""

from decimal import Decimal

import pytest

from checkout import CheckoutService
from db import MemoryStore
from menu import CatalogService
from order import Customer, OrderService
from payments import (
    CardDetails,
    CardPaymentProvider,
    PaymentGateway,
    WalletDetails,
    WalletPaymentProvider,
)
from seed import seed_records


TOKENS = {
    "PRDX": {"address": "0x61dd008f1582631aa68645ff92a1a5ecaedbed19", "decimals": 18},
    "USDC": {"address": "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913", "decimals": 6},
}

WALLET_ADDRESS = "0x" + "a1" * 20
TX_HASH = "0x" + "b2" * 32


class CountingStore(MemoryStore):
    """MemoryStore that records every call made to it."""

    def __init__(self, seed=None):
        super().__init__(seed=seed)
        self.calls = []

    async def list(self, table, filters=None):
        self.calls.append(("list", table))
        return await super().list(table, filters)

    async def get(self, table, record_id):
        self.calls.append(("get", table))
        return await super().get(table, record_id)

    async def create(self, table, data):
        self.calls.append(("create", table))
        return await super().create(table, data)

    async def update(self, table, record_id, data):
        self.calls.append(("update", table))
        return await super().update(table, record_id, data)

    def count(self, operation, table):
        return self.calls.count((operation, table))


@pytest.fixture
def store():
    return CountingStore(seed=seed_records())


@pytest.fixture
def catalog(store):
    return CatalogService(store, ttl=60)


@pytest.fixture
def orders(store):
    return OrderService(store)


@pytest.fixture
def gateway():
    return PaymentGateway(
        CardPaymentProvider(),
        WalletPaymentProvider(TOKENS, chain_id=8453)
    )


@pytest.fixture
def checkout_service(orders, gateway, catalog):
    return CheckoutService(orders, gateway, catalog, discount_percent=Decimal("10"))


@pytest.fixture
def customer():
    return Customer(
        name="Giulia Rossi",
        email="giulia@example.com",
        phone="+39 333 123 4567",
        address="Via Roma 1, Milano"
    )


@pytest.fixture
def card():
    return CardDetails(name="Giulia Rossi", number="4242 4242 4242 4242", expiry="12/35", cvc="123")


@pytest.fixture
def wallet():
    return WalletDetails(address=WALLET_ADDRESS, token="USDC", tx_hash=TX_HASH, chain_id=8453)
