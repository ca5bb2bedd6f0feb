import logging

from .bus import MessageRouter
from .engine import OrderLifecycleEngine
from .models import (
    ChangeOrderStatus,
    OrderCreate,
    OrderLookup,
    OrderPagination,
    Pagination,
    PaidOrderEvent,
    TableByIdLookup,
    TableLookup,
    TopSellingQuery,
)
from .tables import TableDirectory

logger = logging.getLogger(__name__)


def build_router(engine: OrderLifecycleEngine, tables: TableDirectory) -> MessageRouter:
    """Wire every served message pattern to the engine."""
    router = MessageRouter()

    # ============ ORDERS ============

    @router.message("createOrder", OrderCreate)
    async def create_order(payload: OrderCreate) -> dict:
        order = await engine.create(payload, force_status=False)
        payment_preference = await engine.create_payment_preference(order)
        return {"order": order, "payment_preference": payment_preference}

    @router.message("createOrderWithStatus", OrderCreate)
    async def create_order_with_status(payload: OrderCreate):
        return await engine.create(payload, force_status=True)

    @router.message("findAllOrders", OrderPagination)
    async def find_all_orders(payload: OrderPagination):
        return await engine.find_all_orders(
            payload.business_id, payload.status, payload.page, payload.limit
        )

    @router.message("findOneOrder", OrderLookup)
    async def find_one_order(payload: OrderLookup):
        return await engine.find_one_order(payload.id, payload.business_id)

    @router.message("findPaidOrderByTableId", TableLookup)
    async def find_paid_order_by_table_id(payload: TableLookup):
        return await engine.find_paid_order_by_table_id(payload.table_id, payload.business_id)

    @router.message("getOrderPositionByTableId", TableLookup)
    async def get_order_position_by_table_id(payload: TableLookup) -> int:
        return await engine.get_order_position_by_table_id(payload.table_id, payload.business_id)

    @router.message("changeOrderStatus", ChangeOrderStatus)
    async def change_order_status(payload: ChangeOrderStatus):
        return await engine.change_status(payload.id, payload.business_id, payload.status)

    @router.message("find_top_selling_products", TopSellingQuery)
    async def find_top_selling_products(payload: TopSellingQuery):
        return await engine.find_top_selling_products(payload.business_id, payload.limit)

    @router.message("findKitchenOrders", Pagination)
    async def find_kitchen_orders(payload: Pagination):
        return await engine.find_kitchen_orders(payload.business_id, payload.page, payload.limit)

    @router.message("markOrderAsDelivered", OrderLookup)
    async def mark_order_as_delivered(payload: OrderLookup):
        return await engine.mark_order_as_delivered(payload.id, payload.business_id)

    @router.event("payment.succeeded", PaidOrderEvent)
    async def payment_succeeded(payload: PaidOrderEvent) -> None:
        logger.info(f"Payment succeeded for order #{payload.order_id} (business {payload.business_id})")
        await engine.paid_order(payload.order_id, payload.business_id)

    # ============ TABLES ============

    @router.message("findTableById", TableByIdLookup)
    async def find_table_by_id(payload: TableByIdLookup):
        return tables.get_table(payload.id, payload.business_id)

    return router
