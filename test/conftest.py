"""
Shared fixtures: an in-memory SQLite database and deterministic fakes for
the catalog and payment services.
"""
from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from order_service.clients import PaymentGatewayClient, ProductCatalogClient
from order_service.engine import OrderLifecycleEngine
from order_service.models import LineItemKind, Order, OrderItem, Product, Table
from order_service.repository import SQLModelOrderRepository
from order_service.tables import TableDirectory

BUSINESS_ID = "business-123"
OTHER_BUSINESS_ID = "business-456"


class FakeCatalog(ProductCatalogClient):
    def __init__(self, products=(), unavailable=(), error: Exception | None = None):
        self.products = {product.id: product for product in products}
        self.unavailable = set(unavailable)
        self.error = error
        self.calls: list[tuple[str, list[int], str]] = []

    def _lookup(self, method: str, ids: list[int], business_id: str) -> list[Product]:
        self.calls.append((method, list(ids), business_id))
        if self.error:
            raise self.error
        return [self.products[product_id] for product_id in ids if product_id in self.products]

    async def validate_products(self, ids, business_id):
        return self._lookup("validate_products", ids, business_id)

    async def get_products_by_ids(self, ids, business_id):
        return self._lookup("get_products_by_ids", ids, business_id)

    async def get_available_products_by_ids(self, ids, business_id):
        products = self._lookup("get_available_products_by_ids", ids, business_id)
        return [product for product in products if product.id not in self.unavailable]


class FakePaymentGateway(PaymentGatewayClient):
    def __init__(self, error: Exception | None = None):
        self.error = error
        self.summaries: list[dict] = []

    async def create_payment_preference(self, summary):
        self.summaries.append(summary)
        if self.error:
            raise self.error
        return {"id": f"pref-{summary['order_id']}", "url": f"https://pay.example/{summary['order_id']}"}


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def repository(db_engine):
    return SQLModelOrderRepository(db_engine)


@pytest.fixture
def tables(db_engine):
    return TableDirectory(db_engine)


@pytest.fixture
def add_table(db_engine):
    def _add_table(number: int, business_id: str = BUSINESS_ID) -> Table:
        table = Table(number=number, business_id=business_id)
        with Session(db_engine) as session:
            session.add(table)
            session.commit()
            session.refresh(table)
        return table
    return _add_table


@pytest.fixture
def add_order(repository):
    """Insert an order directly, bypassing the engine. Items are (product_id, quantity, price)."""
    def _add_order(
        table: Table,
        status: str = "PENDING",
        paid_at: datetime | None = None,
        items=((1, 1, "10.00"),),
        business_id: str | None = None,
        service_charge: str | None = None,
    ) -> Order:
        order_items = [
            OrderItem(product_id=product_id, price=Decimal(price), quantity=quantity)
            for product_id, quantity, price in items
        ]
        if service_charge:
            order_items.append(OrderItem(
                kind=LineItemKind.service_charge, price=Decimal(service_charge), quantity=1
            ))
        order = Order(
            business_id=business_id or table.business_id,
            table_id=table.id,
            status=status,
            total_amount=sum((item.price * item.quantity for item in order_items), Decimal("0")),
            total_items=sum(quantity for _, quantity, _ in items),
            paid=paid_at is not None,
            paid_at=paid_at,
        )
        order, _ = repository.create_order(order, order_items)
        return order
    return _add_order


@pytest.fixture
def products():
    return [
        Product(id=1, name="Product 1", price=Decimal("10.00"), image=["https://img.example/1.png"]),
        Product(id=2, name="Product 2", price=Decimal("20.00"), image=["https://img.example/2.png"]),
        Product(id=3, name="Product 3", price=Decimal("5.50")),
    ]


@pytest.fixture
def catalog(products):
    return FakeCatalog(products)


@pytest.fixture
def payments():
    return FakePaymentGateway()


@pytest.fixture
def lifecycle(repository, tables, catalog, payments):
    return OrderLifecycleEngine(
        repository=repository,
        tables=tables,
        catalog=catalog,
        payments=payments,
    )
