import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException
from sqlmodel import Session

from .bus import RedisBus
from .clients import BusProductCatalog, build_payment_gateway
from .db import check_db_connection, create_db_and_tables, engine, get_session
from .engine import OrderLifecycleEngine
from .handlers import build_router
from .repository import SQLModelOrderRepository
from .settings import settings
from .tables import TableDirectory

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def build_engine(bus: RedisBus, tables: TableDirectory) -> OrderLifecycleEngine:
    return OrderLifecycleEngine(
        repository=SQLModelOrderRepository(engine),
        tables=tables,
        catalog=BusProductCatalog(bus),
        payments=build_payment_gateway(settings, bus),
        paid_statuses=settings.paid_statuses,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting order service...")
    create_db_and_tables()

    bus = RedisBus(
        settings.redis_url,
        prefix=settings.bus_prefix,
        timeout=settings.rpc_timeout_seconds,
    )
    tables = TableDirectory(engine)
    router = build_router(build_engine(bus, tables), tables)

    # Start the bus listener on startup
    task = asyncio.create_task(bus.serve(router))
    yield
    task.cancel()
    await bus.close()
    logger.info("Order service stopped")


app = FastAPI(title="Orders Service", lifespan=lifespan)


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/health/db")
def health_db(session: Session = Depends(get_session)) -> dict:
    """Check database connection."""
    try:
        check_db_connection(session.get_bind())
    except Exception as e:
        raise HTTPException(status_code=503, detail=f"Database error: {e}")
    return {"status": "ok", "database": "connected"}
