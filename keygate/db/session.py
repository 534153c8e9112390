from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from keygate.core.config import settings


def make_engine(url: str) -> AsyncEngine:
    # SQLite admite un solo escritor: las escrituras concurrentes esperan al lock
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=False, connect_args={"timeout": 15})
    return create_async_engine(url, echo=False, pool_pre_ping=True)


engine = make_engine(settings.db_url)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)
