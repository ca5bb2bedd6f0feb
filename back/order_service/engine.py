"""
Order lifecycle engine.

Business rules for creating orders, moving them through their statuses and
building the derived views (queue position, kitchen tickets, top sellers).
Persistence, tables, the product catalog and the payment gateway are
injected collaborators. Storage calls are blocking and run in worker threads.
"""
import asyncio
import functools
import inspect
import logging
import math
from collections import defaultdict
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP

from .clients import PaymentGatewayClient, ProductCatalogClient
from .errors import (
    Forbidden,
    InternalError,
    NotFound,
    OrderCreationError,
    OrderServiceError,
    ValidationError,
)
from .models import (
    KitchenItem,
    KitchenOrder,
    KitchenPage,
    LineItemKind,
    Order,
    OrderCreate,
    OrderItem,
    OrderItemRead,
    OrderPage,
    OrderRead,
    OrderStatus,
    OrderWithItems,
    PageMeta,
    Product,
    TopSellingPage,
    TopSellingProduct,
    TotalMeta,
)
from .repository import OrderRepository
from .tables import TableDirectory

logger = logging.getLogger(__name__)

SERVICE_CHARGE_RATE = Decimal("0.10")
SERVICE_CHARGE_LABEL = "Service charge"
SERVICE_CHARGE_ID = "service_charge"
MISSING_PRODUCT_NAME = "Product not found"
CENTS = Decimal("0.01")

# Orders that count towards sales figures
SALES_STATUSES = (OrderStatus.paid.value, OrderStatus.delivered.value)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _last_page(total: int, limit: int) -> int:
    return math.ceil(total / limit) if total else 0


def _logged_operation(operation: str):
    """Log failures with the call arguments; unexpected errors become InternalError."""
    def decorator(func):
        signature = inspect.signature(func)

        @functools.wraps(func)
        async def wrapper(self, *args, **kwargs):
            try:
                return await func(self, *args, **kwargs)
            except Exception as e:
                arguments = signature.bind_partial(self, *args, **kwargs).arguments
                context = ", ".join(f"{name}={value!r}" for name, value in arguments.items() if name != "self")
                if isinstance(e, OrderServiceError):
                    logger.warning(f"{operation} failed ({context}): {e.message}")
                    raise
                logger.error(f"{operation} failed unexpectedly ({context}): {e}", exc_info=True)
                raise InternalError(f"Error in {operation}: {e}") from e
        return wrapper
    return decorator


class OrderLifecycleEngine:
    def __init__(
        self,
        repository: OrderRepository,
        tables: TableDirectory,
        catalog: ProductCatalogClient,
        payments: PaymentGatewayClient,
        paid_statuses: frozenset[str] = frozenset([OrderStatus.paid.value]),
    ):
        self.repository = repository
        self.tables = tables
        self.catalog = catalog
        self.payments = payments
        self.paid_statuses = paid_statuses

    def is_paid_status(self, status: str) -> bool:
        return status in self.paid_statuses

    # ============ CREATION ============

    async def create(self, request: OrderCreate, force_status: bool = False) -> OrderWithItems:
        """
        Create an order from catalog prices and the tenant's table.

        The requested status is only honored when `force_status` is set.
        Every failure is re-raised as OrderCreationError, keeping the cause's
        status code when there is one.
        """
        try:
            return await self._create(request, force_status)
        except Exception as e:
            message = getattr(e, "message", None) or str(e)
            logger.error(
                f"Error creating order for business {request.business_id} "
                f"table {request.table}: {message}",
                exc_info=not isinstance(e, OrderServiceError),
            )
            raise OrderCreationError.from_exception(e) from e

    async def _create(self, request: OrderCreate, force_status: bool) -> OrderWithItems:
        if not request.items:
            raise ValidationError("Order must have at least one item")

        product_ids = list(dict.fromkeys(item.product_id for item in request.items))
        products = await self.catalog.validate_products(product_ids, request.business_id)
        products_by_id = {product.id: product for product in products}

        # Checked after pricing so a catalog failure is reported first
        table = await asyncio.to_thread(self.tables.find_by_number, request.table, request.business_id)
        if not table:
            raise NotFound(
                f"Table with number {request.table} not found for business {request.business_id}"
            )

        missing = [product_id for product_id in product_ids if product_id not in products_by_id]
        if missing:
            raise ValidationError(f"Products not found: {', '.join(str(pid) for pid in missing)}")

        items = [
            OrderItem(
                kind=LineItemKind.regular,
                product_id=item.product_id,
                price=products_by_id[item.product_id].price,
                quantity=item.quantity,
            )
            for item in request.items
        ]
        subtotal = sum((item.price * item.quantity for item in items), Decimal("0"))
        total_amount = subtotal
        total_items = sum(item.quantity for item in request.items)

        if request.service_charge:
            charge = (subtotal * SERVICE_CHARGE_RATE).quantize(CENTS, rounding=ROUND_HALF_UP)
            items.append(OrderItem(kind=LineItemKind.service_charge, price=charge, quantity=1))
            total_amount += charge

        if force_status:
            status = request.status or OrderStatus.pending.value
        else:
            status = OrderStatus.pending.value
        paid = self.is_paid_status(status)

        order = Order(
            business_id=request.business_id,
            table_id=table.id,
            status=status,
            total_amount=total_amount,
            total_items=total_items,
            paid=paid,
            paid_at=_now() if paid else None,
            paid_method_type=request.paid_method_type,
        )
        order, items = await asyncio.to_thread(self.repository.create_order, order, items)
        logger.info(
            f"Created order #{order.id} for business {order.business_id} "
            f"at table {table.number}: {total_items} items, total {total_amount}, status {status}"
        )
        return self._with_items(order, items, products_by_id, table_number=table.number)

    async def create_payment_preference(self, order: OrderWithItems):
        """Forward a line-item summary of the order to the payment gateway."""
        summary = {
            "order_id": order.id,
            "business_id": order.business_id,
            "items": [
                {
                    "id": SERVICE_CHARGE_ID if item.kind == LineItemKind.service_charge else item.product_id,
                    "name": item.name,
                    "price": item.price,
                    "quantity": item.quantity,
                }
                for item in order.items
            ],
        }
        try:
            return await self.payments.create_payment_preference(summary)
        except OrderServiceError as e:
            logger.error(
                f"Payment preference failed for order #{order.id} "
                f"business {order.business_id}: {e.message}"
            )
            raise

    # ============ READS ============

    @_logged_operation("find_all_orders")
    async def find_all_orders(
        self,
        business_id: str,
        status: str | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> OrderPage:
        statuses = [status] if status else None
        total = await asyncio.to_thread(self.repository.count_orders, business_id, statuses)
        orders = await asyncio.to_thread(
            self.repository.list_orders,
            business_id, statuses, offset=(page - 1) * limit, limit=limit
        )
        return OrderPage(
            data=[OrderRead(**order.model_dump()) for order in orders],
            meta=PageMeta(total=total, page=page, last_page=_last_page(total, limit)),
        )

    @_logged_operation("find_one_order")
    async def find_one_order(self, order_id: int, business_id: str) -> OrderWithItems:
        order = await asyncio.to_thread(self.repository.get_order, order_id, business_id)
        if not order:
            raise NotFound(f"Order with id {order_id} not found")

        items = await asyncio.to_thread(self.repository.get_items, [order.id])
        product_ids = list(dict.fromkeys(item.product_id for item in items if item.product_id is not None))
        products = await self.catalog.validate_products(product_ids, business_id) if product_ids else []
        return self._with_items(order, items, {product.id: product for product in products})

    @_logged_operation("find_paid_order_by_table_id")
    async def find_paid_order_by_table_id(self, table_id: str, business_id: str) -> OrderRead | None:
        table = await asyncio.to_thread(self.tables.get_table, table_id, business_id)
        order = await asyncio.to_thread(
            self.repository.find_order_for_table, table.id, business_id, OrderStatus.paid.value
        )
        return OrderRead(**order.model_dump()) if order else None

    @_logged_operation("get_order_position_by_table_id")
    async def get_order_position_by_table_id(self, table_id: str, business_id: str) -> int:
        """1-based rank of the table's earliest paid order in the tenant's paid queue."""
        table = await asyncio.to_thread(self.tables.get_table, table_id, business_id)

        queue = await asyncio.to_thread(
            self.repository.list_orders, business_id, [OrderStatus.paid.value], by_paid_at=True
        )
        if not queue:
            raise NotFound(f"No paid orders found for business {business_id}")

        for position, order in enumerate(queue, start=1):
            if order.table_id == table.id:
                return position

        raise NotFound(f"No paid order found for table with id {table_id}")

    @_logged_operation("find_kitchen_orders")
    async def find_kitchen_orders(self, business_id: str, page: int = 1, limit: int = 10) -> KitchenPage:
        statuses = [OrderStatus.paid.value]
        total = await asyncio.to_thread(self.repository.count_orders, business_id, statuses)
        if total == 0:
            return KitchenPage(data=[], meta=PageMeta(total=0, page=page, last_page=0))

        orders = await asyncio.to_thread(
            self.repository.list_orders,
            business_id, statuses, offset=(page - 1) * limit, limit=limit, by_paid_at=True
        )
        items = await asyncio.to_thread(self.repository.get_items, [order.id for order in orders])
        table_numbers = await asyncio.to_thread(
            self.tables.numbers_for, [order.table_id for order in orders], business_id
        )

        products_by_id: dict[int, Product] = {}
        product_ids = sorted({item.product_id for item in items if item.product_id is not None})
        if product_ids:
            try:
                products = await self.catalog.get_products_by_ids(product_ids, business_id)
                products_by_id = {product.id: product for product in products}
            except Exception as e:
                # Kitchen still needs the tickets; show them without product details
                logger.error(f"Error fetching products for kitchen view of business {business_id}: {e}")

        items_by_order: dict[int, list[OrderItem]] = defaultdict(list)
        for item in items:
            items_by_order[item.order_id].append(item)

        data = []
        for order in orders:
            kitchen_items = []
            for item in items_by_order[order.id]:
                product = products_by_id.get(item.product_id)
                if item.kind == LineItemKind.service_charge:
                    name = SERVICE_CHARGE_LABEL
                else:
                    name = product.name if product else MISSING_PRODUCT_NAME
                kitchen_items.append(KitchenItem(
                    id=item.id,
                    order_id=order.id,
                    kind=item.kind,
                    product_id=item.product_id,
                    product_name=name,
                    product_image=product.image if product else [],
                    quantity=item.quantity,
                    price=item.price,
                ))
            data.append(KitchenOrder(
                id=order.id,
                table=table_numbers.get(order.table_id),
                total_amount=order.total_amount,
                total_items=order.total_items,
                status=order.status,
                paid=order.paid,
                paid_at=order.paid_at,
                created_at=order.created_at,
                items=kitchen_items,
            ))

        return KitchenPage(
            data=data,
            meta=PageMeta(total=total, page=page, last_page=_last_page(total, limit)),
        )

    @_logged_operation("find_top_selling_products")
    async def find_top_selling_products(self, business_id: str, limit: int = 5) -> TopSellingPage:
        logger.info(f"Finding top {limit} selling products for business {business_id}")
        empty = TopSellingPage(data=[], meta=TotalMeta(total=0))

        orders_count = await asyncio.to_thread(self.repository.count_orders, business_id, SALES_STATUSES)
        if orders_count == 0:
            logger.info(f"No paid or delivered orders found for business {business_id}")
            return empty

        rows = await asyncio.to_thread(self.repository.top_selling, business_id, SALES_STATUSES, limit)
        sales = [(product_id, sold) for product_id, sold in rows if sold > 0]
        if not sales:
            return empty

        product_ids = [product_id for product_id, _ in sales]
        logger.info(f"Requesting product details for IDs: {product_ids}")
        products = await self.catalog.get_available_products_by_ids(product_ids, business_id)
        if not products:
            logger.warning(f"No available products returned for business {business_id}")
            return empty

        products_by_id = {product.id: product for product in products}
        result = [
            TopSellingProduct(**products_by_id[product_id].model_dump(), total_sold=sold)
            for product_id, sold in sales
            if product_id in products_by_id
        ]
        # Stable sort keeps the aggregation order on ties
        result.sort(key=lambda product: product.total_sold, reverse=True)
        return TopSellingPage(data=result, meta=TotalMeta(total=len(result)))

    # ============ TRANSITIONS ============

    @_logged_operation("change_status")
    async def change_status(self, order_id: int, business_id: str, status: str) -> OrderRead:
        order = await asyncio.to_thread(self.repository.get_order, order_id)
        if not order:
            raise NotFound(f"Order with id {order_id} not found")

        if order.business_id != business_id:
            raise Forbidden(f"Order with id {order_id} does not belong to business {business_id}")

        if order.status == status:
            return OrderRead(**order.model_dump())

        updated = await asyncio.to_thread(self.repository.update_order, order.id, status=status)
        logger.info(f"Order #{order.id} status changed: {order.status} -> {status}")
        return OrderRead(**updated.model_dump())

    @_logged_operation("paid_order")
    async def paid_order(self, order_id: int, business_id: str) -> OrderRead:
        # One lookup by id and tenant: a missing order and a foreign one look the same
        order = await asyncio.to_thread(self.repository.get_order, order_id, business_id)
        if not order:
            raise NotFound(f"Order with id {order_id} not found")

        updated = await asyncio.to_thread(
            self.repository.update_order,
            order.id,
            status=OrderStatus.paid.value,
            paid=True,
            paid_at=_now(),
        )
        logger.info(f"Order #{order.id} marked as paid for business {business_id}")
        return OrderRead(**updated.model_dump())

    @_logged_operation("mark_order_as_delivered")
    async def mark_order_as_delivered(self, order_id: int, business_id: str) -> OrderWithItems:
        order = await asyncio.to_thread(self.repository.get_order, order_id, business_id)
        if not order:
            raise NotFound(f"Order with id {order_id} not found")

        if order.status != OrderStatus.delivered.value:
            order = await asyncio.to_thread(
                self.repository.update_order, order.id, status=OrderStatus.delivered.value
            )
            logger.info(f"Order #{order.id} delivered for business {business_id}")

        items = await asyncio.to_thread(self.repository.get_items, [order.id])
        table_numbers = await asyncio.to_thread(self.tables.numbers_for, [order.table_id], business_id)
        table_number = table_numbers.get(order.table_id)
        return self._with_items(order, items, None, table_number=table_number)

    # ============ HELPERS ============

    def _with_items(
        self,
        order: Order,
        items: list[OrderItem],
        products_by_id: dict[int, Product] | None,
        table_number: int | None = None,
    ) -> OrderWithItems:
        """Attach items to the order; names come from `products_by_id` when given."""
        item_reads = []
        for item in items:
            if item.kind == LineItemKind.service_charge:
                name = SERVICE_CHARGE_LABEL
            elif products_by_id is None:
                name = None
            else:
                product = products_by_id.get(item.product_id)
                name = product.name if product else MISSING_PRODUCT_NAME
            item_reads.append(OrderItemRead(
                id=item.id,
                kind=item.kind,
                product_id=item.product_id,
                name=name,
                price=item.price,
                quantity=item.quantity,
            ))
        return OrderWithItems(**order.model_dump(), items=item_reads, table_number=table_number)
