from typing import Iterator

from sqlmodel import SQLModel, Session, create_engine

from libs.py_common.config import settings

# Synchronous engine shared by the API (threadpool handlers) and the Celery worker
engine = create_engine(settings.database_url, echo=False, pool_pre_ping=True)


def init_db(bind=None) -> None:
    # Migrations own the schema in deployed environments; this is for local runs and tests.
    SQLModel.metadata.create_all(bind or engine)


def get_session() -> Iterator[Session]:
    with Session(engine, expire_on_commit=False) as session:
        yield session
