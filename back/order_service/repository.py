"""
Order persistence.

The engine only talks to `OrderRepository`. `SQLModelOrderRepository` is the
production implementation; each call runs in its own session so no state
leaks between requests.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable
from typing import Any

from sqlalchemy import Engine, func
from sqlmodel import Session, select

from .models import LineItemKind, Order, OrderItem

logger = logging.getLogger(__name__)


class OrderRepository(ABC):
    """Contract for order persistence, always scoped by tenant."""

    @abstractmethod
    def create_order(self, order: Order, items: list[OrderItem]) -> tuple[Order, list[OrderItem]]:
        """Persist an order and its items in a single transaction."""
        raise NotImplementedError

    @abstractmethod
    def get_order(self, order_id: int, business_id: str | None = None) -> Order | None:
        """Fetch an order by id, optionally restricted to one tenant."""
        raise NotImplementedError

    @abstractmethod
    def get_items(self, order_ids: Iterable[int]) -> list[OrderItem]:
        raise NotImplementedError

    @abstractmethod
    def update_order(self, order_id: int, **changes: Any) -> Order:
        raise NotImplementedError

    @abstractmethod
    def count_orders(self, business_id: str, statuses: Iterable[str] | None = None) -> int:
        raise NotImplementedError

    @abstractmethod
    def list_orders(
        self,
        business_id: str,
        statuses: Iterable[str] | None = None,
        offset: int = 0,
        limit: int | None = None,
        by_paid_at: bool = False,
    ) -> list[Order]:
        """List tenant orders, by id or by ascending paid_at."""
        raise NotImplementedError

    @abstractmethod
    def find_order_for_table(self, table_id: str, business_id: str, status: str) -> Order | None:
        raise NotImplementedError

    @abstractmethod
    def top_selling(self, business_id: str, statuses: Iterable[str], limit: int) -> list[tuple[int, int]]:
        """Return (product_id, total_sold) pairs, highest total first."""
        raise NotImplementedError


class SQLModelOrderRepository(OrderRepository):
    def __init__(self, engine: Engine):
        self.engine = engine

    def create_order(self, order: Order, items: list[OrderItem]) -> tuple[Order, list[OrderItem]]:
        with Session(self.engine) as session:
            try:
                session.add(order)
                # Flush to get the order id without committing
                session.flush()
                for item in items:
                    item.order_id = order.id
                    session.add(item)
                session.commit()
            except Exception:
                session.rollback()
                raise

            session.refresh(order)
            for item in items:
                session.refresh(item)
            return order, items

    def get_order(self, order_id: int, business_id: str | None = None) -> Order | None:
        with Session(self.engine) as session:
            statement = select(Order).where(Order.id == order_id)
            if business_id is not None:
                statement = statement.where(Order.business_id == business_id)
            return session.exec(statement).first()

    def get_items(self, order_ids: Iterable[int]) -> list[OrderItem]:
        order_ids = list(order_ids)
        if not order_ids:
            return []
        with Session(self.engine) as session:
            return list(session.exec(
                select(OrderItem)
                .where(OrderItem.order_id.in_(order_ids))
                .order_by(OrderItem.order_id, OrderItem.id)
            ).all())

    def update_order(self, order_id: int, **changes: Any) -> Order:
        with Session(self.engine) as session:
            order = session.get(Order, order_id)
            if order is None:
                raise LookupError(f"Order {order_id} disappeared before update")
            for field, value in changes.items():
                setattr(order, field, value)
            session.add(order)
            session.commit()
            session.refresh(order)
            return order

    def count_orders(self, business_id: str, statuses: Iterable[str] | None = None) -> int:
        with Session(self.engine) as session:
            statement = select(func.count()).select_from(Order).where(Order.business_id == business_id)
            if statuses is not None:
                statement = statement.where(Order.status.in_(list(statuses)))
            return session.exec(statement).one()

    def list_orders(
        self,
        business_id: str,
        statuses: Iterable[str] | None = None,
        offset: int = 0,
        limit: int | None = None,
        by_paid_at: bool = False,
    ) -> list[Order]:
        with Session(self.engine) as session:
            statement = select(Order).where(Order.business_id == business_id)
            if statuses is not None:
                statement = statement.where(Order.status.in_(list(statuses)))
            if by_paid_at:
                # Orders switched to PAID through a plain status change have no paid_at
                statement = statement.order_by(Order.paid_at.asc().nulls_last(), Order.id.asc())
            else:
                statement = statement.order_by(Order.id.asc())
            statement = statement.offset(offset)
            if limit is not None:
                statement = statement.limit(limit)
            return list(session.exec(statement).all())

    def find_order_for_table(self, table_id: str, business_id: str, status: str) -> Order | None:
        with Session(self.engine) as session:
            return session.exec(
                select(Order)
                .where(
                    Order.table_id == table_id,
                    Order.business_id == business_id,
                    Order.status == status,
                )
                .order_by(Order.id.asc())
            ).first()

    def top_selling(self, business_id: str, statuses: Iterable[str], limit: int) -> list[tuple[int, int]]:
        total_sold = func.sum(OrderItem.quantity).label("total_sold")
        statement = (
            select(OrderItem.product_id, total_sold)
            .join(Order, Order.id == OrderItem.order_id)
            .where(
                Order.business_id == business_id,
                Order.status.in_(list(statuses)),
                OrderItem.kind == LineItemKind.regular,
            )
            .group_by(OrderItem.product_id)
            .order_by(total_sold.desc(), OrderItem.product_id.asc())
            .limit(limit)
        )
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
        logger.debug(f"Top selling aggregation for business {business_id} returned {len(rows)} rows")
        return [(int(product_id), int(sold)) for product_id, sold in rows]
