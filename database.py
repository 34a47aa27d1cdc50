from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import models


def get_engine(database_url: str):
    if not database_url.startswith("sqlite"):
        return create_engine(database_url, pool_size=50, max_overflow=0, pool_pre_ping=True)

    # API handlers and background tasks share the pool from different threads
    connect_args = {"check_same_thread": False}
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(database_url, connect_args=connect_args, poolclass=StaticPool)
    return create_engine(database_url, connect_args=connect_args, pool_size=50, max_overflow=0)


def init_db(engine):
    models.Base.metadata.create_all(bind=engine)


def get_session_factory(database_url: str) -> sessionmaker:
    engine = get_engine(database_url)
    init_db(engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)
