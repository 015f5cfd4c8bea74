from collections.abc import Iterator

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine

from core.config import settings


def build_engine(url: str, **kwargs) -> Engine:
    """DB 엔진을 만든다.

    SQLite는 쓰기 트랜잭션을 BEGIN IMMEDIATE로 시작해야
    동시에 크레딧을 차감하는 요청들이 락 업그레이드 교착 없이 직렬화된다.
    (PostgreSQL은 조건부 UPDATE의 행 락으로 충분)
    """
    if url.startswith("sqlite"):
        connect_args = kwargs.pop("connect_args", {})
        connect_args.setdefault("check_same_thread", False)
        connect_args.setdefault("timeout", settings.DB_BUSY_TIMEOUT_SECONDS)
        engine = create_engine(url, connect_args=connect_args, **kwargs)
        _use_immediate_transactions(engine)
        return engine
    return create_engine(url, pool_pre_ping=True, **kwargs)


def _use_immediate_transactions(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        # pysqlite의 암묵적 BEGIN을 끄고 아래 begin 이벤트가 직접 시작한다
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


engine = build_engine(settings.DATABASE_URL)


def create_db_and_tables(bind: Engine | None = None) -> None:
    SQLModel.metadata.create_all(bind or engine)


def get_session() -> Iterator[Session]:
    with Session(engine) as session:
        yield session
