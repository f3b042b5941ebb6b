from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

Base = declarative_base()
engine = None
SessionLocal = None


def create_db_engine(database_url: str):
    if not database_url.startswith("sqlite"):
        return create_engine(database_url, pool_pre_ping=True)

    options = {"connect_args": {"check_same_thread": False}}
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        # one shared connection, otherwise every session sees an empty database
        options["poolclass"] = StaticPool
    return create_engine(database_url, **options)


def create_tables(bind):
    from learnpay import models  # noqa: F401
    Base.metadata.create_all(bind=bind)


def init_db(database_url: str):
    global engine, SessionLocal
    if engine is None:
        engine = create_db_engine(database_url)
        SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
        # create tables
        create_tables(engine)
    return engine


def close_db():
    global engine, SessionLocal
    if engine is not None:
        engine.dispose()
    engine = None
    SessionLocal = None
