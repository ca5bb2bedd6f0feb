from collections.abc import Iterator

from sqlmodel import Session, SQLModel, create_engine, text

from .settings import settings

engine = create_engine(settings.database_url, pool_pre_ping=True)


def create_db_and_tables(bind=None) -> None:
    # Import so the table models are registered on SQLModel.metadata
    from . import models  # noqa: F401

    SQLModel.metadata.create_all(bind or engine)


def check_db_connection(bind=None) -> None:
    with Session(bind or engine) as session:
        session.exec(text("SELECT 1"))


def get_session() -> Iterator[Session]:
    with Session(engine) as session:
        yield session
