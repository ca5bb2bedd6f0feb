"""
Read-side tests: listing, single reads, queue position and the kitchen view.
"""
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from conftest import BUSINESS_ID, OTHER_BUSINESS_ID, FakeCatalog, FakePaymentGateway
from order_service.engine import OrderLifecycleEngine
from order_service.errors import NotFound, UpstreamUnavailable

T0 = datetime(2026, 3, 1, 12, 0)


class TestFindAll:
    async def test_paginates_and_filters_by_status(self, lifecycle, add_table, add_order):
        table = add_table(1)
        for _ in range(3):
            add_order(table, status="PENDING")
        add_order(table, status="PAID", paid_at=T0)

        page = await lifecycle.find_all_orders(BUSINESS_ID, "PENDING", page=2, limit=2)

        assert page.meta.total == 3
        assert page.meta.page == 2
        assert page.meta.last_page == 2
        assert len(page.data) == 1
        assert all(order.status == "PENDING" for order in page.data)

    async def test_without_status_lists_tenant_orders(self, lifecycle, add_table, add_order):
        add_order(add_table(1), status="PENDING")
        add_order(add_table(2), status="PAID", paid_at=T0)
        add_order(add_table(1, business_id=OTHER_BUSINESS_ID))

        page = await lifecycle.find_all_orders(BUSINESS_ID)

        assert page.meta.total == 2
        assert page.meta.last_page == 1
        assert {order.business_id for order in page.data} == {BUSINESS_ID}

    async def test_empty(self, lifecycle):
        page = await lifecycle.find_all_orders(BUSINESS_ID, "PAID", page=1, limit=10)

        assert page.data == []
        assert page.meta.total == 0
        assert page.meta.last_page == 0


class TestFindOne:
    async def test_items_are_named(self, lifecycle, add_table, add_order):
        order = add_order(add_table(1), items=((1, 2, "10.00"), (77, 1, "3.00")))

        found = await lifecycle.find_one_order(order.id, BUSINESS_ID)

        assert [item.name for item in found.items] == ["Product 1", "Product not found"]

    async def test_other_tenant(self, lifecycle, add_table, add_order):
        order = add_order(add_table(1, business_id=OTHER_BUSINESS_ID))

        with pytest.raises(NotFound):
            await lifecycle.find_one_order(order.id, BUSINESS_ID)


class TestFindPaidOrderByTable:
    async def test_returns_paid_order(self, lifecycle, add_table, add_order):
        table = add_table(1)
        add_order(table, status="PENDING")
        paid = add_order(table, status="PAID", paid_at=T0)

        found = await lifecycle.find_paid_order_by_table_id(table.id, BUSINESS_ID)

        assert found.id == paid.id

    async def test_none_when_table_has_no_paid_order(self, lifecycle, add_table, add_order):
        table = add_table(1)
        add_order(table, status="PENDING")

        assert await lifecycle.find_paid_order_by_table_id(table.id, BUSINESS_ID) is None

    async def test_unknown_table(self, lifecycle):
        with pytest.raises(NotFound):
            await lifecycle.find_paid_order_by_table_id("missing", BUSINESS_ID)


class TestQueuePosition:
    async def test_only_paid_order_is_first(self, lifecycle, add_table, add_order):
        table = add_table(1)
        add_order(table, status="PAID", paid_at=T0)

        assert await lifecycle.get_order_position_by_table_id(table.id, BUSINESS_ID) == 1

    async def test_position_counts_earlier_tables(self, lifecycle, add_table, add_order):
        first, second, third = add_table(1), add_table(2), add_table(3)
        add_order(third, status="PAID", paid_at=T0 + timedelta(minutes=10))
        add_order(first, status="PAID", paid_at=T0)
        add_order(second, status="PAID", paid_at=T0 + timedelta(minutes=5))
        add_order(first, status="DELIVERED", paid_at=T0 - timedelta(minutes=30))

        assert await lifecycle.get_order_position_by_table_id(first.id, BUSINESS_ID) == 1
        assert await lifecycle.get_order_position_by_table_id(second.id, BUSINESS_ID) == 2
        assert await lifecycle.get_order_position_by_table_id(third.id, BUSINESS_ID) == 3

    async def test_other_tenants_do_not_count(self, lifecycle, add_table, add_order):
        table = add_table(1)
        foreign = add_table(1, business_id=OTHER_BUSINESS_ID)
        add_order(foreign, status="PAID", paid_at=T0 - timedelta(hours=1))
        add_order(table, status="PAID", paid_at=T0)

        assert await lifecycle.get_order_position_by_table_id(table.id, BUSINESS_ID) == 1

    async def test_no_paid_orders(self, lifecycle, add_table, add_order):
        table = add_table(1)
        add_order(table, status="PENDING")

        with pytest.raises(NotFound):
            await lifecycle.get_order_position_by_table_id(table.id, BUSINESS_ID)

    async def test_table_without_paid_order(self, lifecycle, add_table, add_order):
        table, other = add_table(1), add_table(2)
        add_order(other, status="PAID", paid_at=T0)

        with pytest.raises(NotFound) as exc_info:
            await lifecycle.get_order_position_by_table_id(table.id, BUSINESS_ID)

        assert str(table.id) in exc_info.value.message

    async def test_unknown_table(self, lifecycle):
        with pytest.raises(NotFound):
            await lifecycle.get_order_position_by_table_id("missing", BUSINESS_ID)


class TestKitchenView:
    async def test_no_paid_orders(self, lifecycle, catalog, add_table, add_order):
        add_order(add_table(1), status="PENDING")

        page = await lifecycle.find_kitchen_orders(BUSINESS_ID, page=3, limit=10)

        assert page.data == []
        assert page.meta.total == 0
        assert page.meta.page == 3
        assert page.meta.last_page == 0
        assert catalog.calls == []

    async def test_orders_by_paid_at_with_products(self, lifecycle, catalog, add_table, add_order):
        first, second = add_table(4), add_table(9)
        late = add_order(second, status="PAID", paid_at=T0 + timedelta(minutes=5), items=((2, 1, "20.00"),))
        early = add_order(first, status="PAID", paid_at=T0, items=((1, 2, "10.00"), (2, 1, "20.00")),
                          service_charge="4.00")

        page = await lifecycle.find_kitchen_orders(BUSINESS_ID)

        assert [order.id for order in page.data] == [early.id, late.id]
        assert [order.table for order in page.data] == [4, 9]
        ticket = page.data[0]
        assert [(item.product_name, item.quantity) for item in ticket.items] == [
            ("Product 1", 2), ("Product 2", 1), ("Service charge", 1),
        ]
        assert ticket.items[0].product_image == ["https://img.example/1.png"]
        assert ticket.items[2].product_image == []
        # One batched call with the union of product ids on the page
        assert catalog.calls == [("get_products_by_ids", [1, 2], BUSINESS_ID)]

    async def test_pagination(self, lifecycle, add_table, add_order):
        table = add_table(1)
        orders = [add_order(table, status="PAID", paid_at=T0 + timedelta(minutes=i)) for i in range(5)]

        page = await lifecycle.find_kitchen_orders(BUSINESS_ID, page=2, limit=2)

        assert [order.id for order in page.data] == [orders[2].id, orders[3].id]
        assert page.meta.total == 5
        assert page.meta.last_page == 3

    async def test_catalog_failure_degrades(self, repository, tables, add_table, add_order):
        catalog = FakeCatalog(error=UpstreamUnavailable("Timed out waiting for get_products_by_ids"))
        lifecycle = OrderLifecycleEngine(repository, tables, catalog, FakePaymentGateway())
        add_order(add_table(1), status="PAID", paid_at=T0, items=((1, 3, "10.00"),))

        page = await lifecycle.find_kitchen_orders(BUSINESS_ID)

        item = page.data[0].items[0]
        assert item.product_name == "Product not found"
        assert item.product_image == []
        assert item.quantity == 3
        assert item.price == Decimal("10.00")
        assert page.meta.total == 1
