"""
session.py
----------
Async PostgreSQL connection setup.

Provides:
  - engine: SQLAlchemy async engine with a configured pool
  - AsyncSessionLocal: session factory handed to every SQL repository
  - init_db: creates tables in development (production uses migrations)
  - dispose_db: closes the pool on shutdown

Repositories open one session per operation from AsyncSessionLocal,
so the monitor's concurrent tasks never share a session.
"""

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from risk_engine.core.config import settings

# asyncpg does not accept sslmode in the URL
db_url = settings.DATABASE_URL
if "?sslmode=" in db_url:
    db_url = db_url.split("?sslmode=")[0]

# ── Database engine ───────────────────────────────────────────────────
engine = create_async_engine(
    db_url,
    echo           = settings.DEBUG,   # SQL logging only in development
    pool_pre_ping  = True,             # Check the connection before using it
    pool_size      = 10,               # Permanent connections in the pool
    max_overflow   = 20,               # Extra connections under load
)

# ── Session factory ───────────────────────────────────────────────────
AsyncSessionLocal = async_sessionmaker(
    bind             = engine,
    class_           = AsyncSession,
    expire_on_commit = False,
    autoflush        = False,
)


# ── Development bootstrap ────────────────────────────────────────────
async def init_db() -> None:
    """
    Creates every table defined in models.py.
    Development only. Called from the lifespan in main.py when DEBUG is True.
    """
    from risk_engine.domain.models import Base
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_db() -> None:
    await engine.dispose()
