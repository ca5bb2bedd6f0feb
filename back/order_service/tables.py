import logging
from collections.abc import Iterable

from sqlalchemy import Engine
from sqlmodel import Session, select

from .errors import NotFound
from .models import Table

logger = logging.getLogger(__name__)


class TableDirectory:
    """Read-only lookups over the tenant's tables."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def find_by_number(self, number: int, business_id: str) -> Table | None:
        with Session(self.engine) as session:
            return session.exec(
                select(Table).where(
                    Table.number == number,
                    Table.business_id == business_id,
                )
            ).first()

    def find_by_id(self, table_id: str, business_id: str) -> Table | None:
        with Session(self.engine) as session:
            return session.exec(
                select(Table).where(
                    Table.id == table_id,
                    Table.business_id == business_id,
                )
            ).first()

    def numbers_for(self, table_ids: Iterable[str], business_id: str) -> dict[str, int]:
        """Map table id -> table number for the given ids."""
        table_ids = list(set(table_ids))
        if not table_ids:
            return {}
        with Session(self.engine) as session:
            tables = session.exec(
                select(Table).where(
                    Table.id.in_(table_ids),
                    Table.business_id == business_id,
                )
            ).all()
        return {table.id: table.number for table in tables}

    def get_table(self, table_id: str, business_id: str) -> Table:
        table = self.find_by_id(table_id, business_id)
        if not table:
            logger.warning(f"Table {table_id} not found for business {business_id}")
            raise NotFound(f"Table with id {table_id} not found")
        return table
