from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine

import model.file  # noqa: F401 테이블 등록


def make_engine(database_url: str) -> Engine:
    """DATABASE_URL로 엔진을 만든다.

    SQLite는 워커 스레드에서도 쓰므로 check_same_thread를 끄고,
    동시 쓰기 시 바로 실패하지 않도록 busy timeout을 준다.
    """
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": 30},
        )

        @event.listens_for(engine, "connect")
        def _sqlite_pragmas(dbapi_conn, _record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()

        return engine

    return create_engine(database_url, pool_pre_ping=True)


def create_db_and_tables(engine: Engine) -> None:
    SQLModel.metadata.create_all(engine)
