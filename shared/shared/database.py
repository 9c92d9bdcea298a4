from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base


def get_engine(database_url: str, **kwargs):
    if database_url.startswith("sqlite"):
        # concurrent writers wait on the file lock instead of failing fast
        kwargs.setdefault("connect_args", {"timeout": 30})
    else:
        kwargs.setdefault("pool_pre_ping", True)
    return create_async_engine(database_url, echo=False, future=True, **kwargs)


Base = declarative_base()


def get_session(engine):
    return async_sessionmaker(
        bind=engine,
        expire_on_commit=False
    )
