from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import field_validator
from sqlalchemy import Numeric, UniqueConstraint
from sqlmodel import Field, SQLModel


class OrderStatus(str, Enum):
    pending = "PENDING"
    paid = "PAID"
    delivered = "DELIVERED"
    cancelled = "CANCELLED"


class LineItemKind(str, Enum):
    regular = "regular"
    service_charge = "service_charge"


class TenantMixin(SQLModel):
    business_id: str = Field(index=True)


class Table(TenantMixin, table=True):
    __table_args__ = (UniqueConstraint("number", "business_id"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    number: int


class Order(TenantMixin, table=True):
    id: int | None = Field(default=None, primary_key=True)
    table_id: str = Field(foreign_key="table.id", index=True)
    # Free-form: known values live in OrderStatus, tenants may send their own
    status: str = Field(default=OrderStatus.pending.value, index=True)
    total_amount: Decimal = Field(default=Decimal("0"), sa_type=Numeric(12, 2))
    total_items: int = Field(default=0)
    paid: bool = Field(default=False)
    paid_at: datetime | None = Field(default=None, index=True)
    paid_method_type: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class OrderItem(SQLModel, table=True):
    __tablename__ = "order_item"

    id: int | None = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="order.id", index=True)
    kind: LineItemKind = Field(default=LineItemKind.regular)
    product_id: int | None = Field(default=None, index=True)  # None for the service charge line
    price: Decimal = Field(sa_type=Numeric(12, 2))  # Snapshot of price at order time
    quantity: int


# ============ CATALOG RECORDS (owned by the products service) ============

class Product(SQLModel):
    id: int
    name: str
    price: Decimal = Decimal("0")
    image: list[str] = []

    @field_validator("image", mode="before")
    @classmethod
    def _image_as_list(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return value


# ============ REQUEST MODELS ============

class OrderItemCreate(SQLModel):
    product_id: int = Field(gt=0)
    quantity: int = Field(gt=0)


class OrderCreate(SQLModel):
    business_id: str = Field(min_length=1)
    table: int = Field(gt=0)
    items: list[OrderItemCreate] = Field(min_length=1)
    service_charge: bool = False
    status: str | None = None  # Only honored by createOrderWithStatus
    paid_method_type: str | None = None


class OrderLookup(SQLModel):
    business_id: str = Field(min_length=1)
    id: int = Field(gt=0)


class TableLookup(SQLModel):
    business_id: str = Field(min_length=1)
    table_id: str = Field(min_length=1)


class TableByIdLookup(SQLModel):
    business_id: str = Field(min_length=1)
    id: str = Field(min_length=1)


class Pagination(SQLModel):
    business_id: str = Field(min_length=1)
    page: int = Field(default=1, gt=0)
    limit: int = Field(default=10, gt=0)


class OrderPagination(Pagination):
    status: str | None = None


class TopSellingQuery(SQLModel):
    business_id: str = Field(min_length=1)
    limit: int = Field(default=5, gt=0)


class ChangeOrderStatus(SQLModel):
    business_id: str = Field(min_length=1)
    id: int = Field(gt=0)
    status: str = Field(min_length=1)


class PaidOrderEvent(SQLModel):
    business_id: str = Field(min_length=1)
    order_id: int = Field(gt=0)
    status: str = Field(min_length=1)


# ============ RESPONSE MODELS ============

class OrderRead(SQLModel):
    id: int
    business_id: str
    table_id: str
    status: str
    total_amount: Decimal
    total_items: int
    paid: bool
    paid_at: datetime | None = None
    paid_method_type: str | None = None
    created_at: datetime


class OrderItemRead(SQLModel):
    id: int | None = None
    kind: LineItemKind = LineItemKind.regular
    product_id: int | None = None
    name: str | None = None
    price: Decimal
    quantity: int


class OrderWithItems(OrderRead):
    items: list[OrderItemRead] = []
    table_number: int | None = None


class KitchenItem(SQLModel):
    id: int
    order_id: int
    kind: LineItemKind = LineItemKind.regular
    product_id: int | None = None
    product_name: str
    product_image: list[str] = []
    quantity: int
    price: Decimal


class KitchenOrder(SQLModel):
    id: int
    table: int | None = None
    total_amount: Decimal
    total_items: int
    status: str
    paid: bool
    paid_at: datetime | None = None
    created_at: datetime
    items: list[KitchenItem] = []


class PageMeta(SQLModel):
    total: int
    page: int
    last_page: int


class OrderPage(SQLModel):
    data: list[OrderRead]
    meta: PageMeta


class KitchenPage(SQLModel):
    data: list[KitchenOrder]
    meta: PageMeta


class TopSellingProduct(Product):
    total_sold: int


class TotalMeta(SQLModel):
    total: int


class TopSellingPage(SQLModel):
    data: list[TopSellingProduct]
    meta: TotalMeta
