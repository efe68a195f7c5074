from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker


class Base(DeclarativeBase):
    pass


def build_engine(database_url: str, *, echo: bool = False) -> Engine:
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": 30}

    db_engine = create_engine(database_url, echo=echo, connect_args=connect_args)

    # WAL lets the webhook writer and the queue worker share one SQLite file
    if database_url.startswith("sqlite"):
        @event.listens_for(db_engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA busy_timeout=30000")
            cursor.close()

    return db_engine


def build_session_factory(db_engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=db_engine, autoflush=False, expire_on_commit=False)


def init_db(db_engine: Engine) -> None:
    # models must be registered on Base.metadata before create_all
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=db_engine)


def insert_ignore(db: Session, model, values: dict, conflict_columns: list[str]) -> int:
    """INSERT ... ON CONFLICT DO NOTHING; returns the number of rows created."""
    dialect = db.get_bind().dialect.name
    if dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    elif dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    else:
        raise NotImplementedError(f"insert_ignore is not supported on {dialect}")
    stmt = insert(model).values(**values).on_conflict_do_nothing(index_elements=conflict_columns)
    result = db.execute(stmt)
    return int(result.rowcount or 0)


def ping(db: Session) -> bool:
    db.execute(text("SELECT 1"))
    return True
