"""
Root conftest.py for all backend tests.

This file makes fixtures available to all test files across all apps.
"""
import pytest
from decimal import Decimal
from django.core.cache import caches


# ============================================================================
# AUTO-USE FIXTURES (Run automatically for every test)
# ============================================================================

@pytest.fixture(autouse=True)
def clear_cache_after_test():
    """
    Clear every cache after each test to prevent cache pollution.

    The menu catalog lives in its own alias, so clearing only the default
    cache would leak product snapshots between tests.
    """
    yield  # Run the test
    for cache in caches.all():
        cache.clear()


@pytest.fixture(autouse=True)
def in_memory_channel_layer(settings):
    """Route realtime publishes through the in-memory layer for every test."""
    settings.CHANNEL_LAYERS = {"default": {"BACKEND": "channels.layers.InMemoryChannelLayer"}}


# ============================================================================
# USER FIXTURES
# ============================================================================

@pytest.fixture
def cashier(db):
    from users.models import User
    return User.objects.create_user(
        email="cashier@test.com",
        password="test123",
        username="cashier",
        role=User.Role.CASHIER,
    )


@pytest.fixture
def second_cashier(db):
    from users.models import User
    return User.objects.create_user(
        email="cashier2@test.com",
        password="test123",
        username="cashier2",
        role=User.Role.CASHIER,
    )


@pytest.fixture
def manager(db):
    """Manager with PIN 1234, used to authorize challenges."""
    from users.models import User
    user = User.objects.create_user(
        email="manager@test.com",
        password="test123",
        username="manager",
        role=User.Role.MANAGER,
    )
    user.set_pin("1234")
    return user


@pytest.fixture
def kitchen_user(db):
    from users.models import User
    return User.objects.create_user(
        email="kitchen@test.com",
        password="test123",
        username="kitchen",
        role=User.Role.KITCHEN,
    )


# ============================================================================
# CATALOG AND TABLE FIXTURES
# ============================================================================

@pytest.fixture
def pho(db):
    """Phở bò at 50,000 VND."""
    from products.models import Product
    return Product.objects.create(
        name="Phở bò",
        names={"vi": "Phở bò", "en": "Beef noodle soup"},
        price=Decimal("50000"),
    )


@pytest.fixture
def iced_tea(db):
    """Trà đá at 5,000 VND, not shown on the kitchen display."""
    from products.models import Product
    return Product.objects.create(
        name="Trà đá",
        price=Decimal("5000"),
        display_in_kitchen=False,
    )


@pytest.fixture
def table(db):
    from tables.models import Table
    return Table.objects.create(number=1, name="Table 1")


@pytest.fixture
def table_session(table):
    from tables.services import TableService
    return TableService.open_session(table)


@pytest.fixture
def order(table_session, cashier):
    """An OPEN staff order on a seated table, with no items yet."""
    from orders.services import OrderService
    return OrderService.create_order(table_session=table_session, user=cashier)


@pytest.fixture
def order_with_pho(order, pho, cashier):
    """Two Phở bò on the staff order: subtotal 100,000 VND."""
    from orders.services import OrderItemService
    OrderItemService.add_item(order, product_id=pho.id, quantity=2, user=cashier)
    order.refresh_from_db()
    return order


@pytest.fixture
def approval_policy(db):
    from approvals.models import ApprovalPolicy
    return ApprovalPolicy.get_solo()
