"""
Shared fixtures for the escrow settlement test suite.

Key Components:
1. A fresh SQLite database file per test, bound to the global session factory
2. A recording audit sink swapped in for every test
3. Seeded products for two sellers and a scarce single-unit product
4. A settlement API facade priced without free shipping
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

import logging
from datetime import datetime
from decimal import Decimal

import pytest

import database
from models import Product, ProductStatus
from services.audit_logger import RecordingAuditSink, audit_logger
from services.settlement_api import SettlementAPI
from utils.fee_calculator import SettlementPolicy

logging.basicConfig(level=logging.INFO)

SELLER_A = 101
SELLER_B = 202
BUYER_ID = 7
ADMIN_ID = 1

ORDER_TIME = datetime(2026, 3, 2, 9, 0, 0)

SHIPPING_ADDRESS = {
    "recipient": "Mwila Banda",
    "phone": "+260971234567",
    "street": "12 Cairo Road",
    "city": "Lusaka",
    "state": "Lusaka Province",
    "country": "ZM",
    "instructions": "Leave at reception",
}


@pytest.fixture(autouse=True)
def settlement_db(tmp_path):
    """Bind the session factory to an empty database file for each test"""
    engine = database.configure_database(f"sqlite:///{tmp_path / 'settlement.db'}")
    database.create_tables(engine)
    yield engine
    database.drop_tables(engine)
    engine.dispose()


@pytest.fixture(autouse=True)
def audit_sink():
    """Capture audit events in memory instead of the audit log"""
    previous = audit_logger.sink
    sink = RecordingAuditSink()
    audit_logger.set_sink(sink)
    yield sink
    audit_logger.set_sink(previous)


@pytest.fixture
def db_session():
    session = database.SessionLocal()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def policy():
    """Default money policy with free shipping disabled"""
    return SettlementPolicy(free_shipping_threshold=None)


@pytest.fixture
def api(policy):
    return SettlementAPI(policy)


def create_product(seller_id, price, stock=10, name=None, status=ProductStatus.ACTIVE.value):
    product = Product(
        seller_id=seller_id,
        name=name or f"Product of seller {seller_id}",
        price=Decimal(str(price)),
        stock=stock,
        status=status,
    )
    with database.managed_session() as session:
        session.add(product)
    return product


def reload(session, model, object_id):
    """Fresh copy of a row, bypassing anything cached in the session"""
    session.expire_all()
    return session.get(model, object_id)


@pytest.fixture
def products():
    return {
        "a": create_product(SELLER_A, "100.00", stock=5, name="Copper kettle"),
        "b": create_product(SELLER_B, "50.00", stock=5, name="Chitenge fabric"),
        "scarce": create_product(SELLER_A, "25.00", stock=1, name="Last carving"),
    }


@pytest.fixture
def two_seller_order(api, products):
    """Order with one $100 item from seller A and one $50 item from seller B"""
    result = api.create_order(
        BUYER_ID,
        [
            {"product_id": products["a"].id, "quantity": 1},
            {"product_id": products["b"].id, "quantity": 1},
        ],
        SHIPPING_ADDRESS,
        "mobile_money",
        now=ORDER_TIME,
    )
    assert result.success, result.error_message
    return result.data


@pytest.fixture
def escrow_id(two_seller_order):
    return two_seller_order.escrow.id


@pytest.fixture
def order_id(two_seller_order):
    return two_seller_order.id
