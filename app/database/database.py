import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool

from app.common.exceptions import PersistenceError
from app.core.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


def build_async_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Create the async engine; pool sizing only applies to server databases."""
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=echo, poolclass=NullPool)
    return create_async_engine(
        url,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        echo=echo,
        poolclass=NullPool if settings.ENVIRONMENT == "test" else None
    )


# Async engine for application use
async_engine = build_async_engine(settings.async_database_url, echo=settings.DEBUG)

# Async session for application
AsyncSessionLocal = async_sessionmaker(
    async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False
)

Base = declarative_base()


# Async dependency for application endpoints
async def get_async_db() -> AsyncSession:
    """Genera una sesión de base de datos asíncrona para endpoints."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception as e:
            logger.error(f"Database error: {e}")
            await session.rollback()
            raise
        finally:
            await session.close()


async def run_in_transaction(
    db: AsyncSession,
    work: Callable[[], Awaitable[T]],
    timeout: Optional[float] = None,
    operation: str = "transaction"
) -> T:
    """
    Ejecuta `work` y confirma la transacción con un tiempo máximo.

    En PostgreSQL además se fija `statement_timeout` local a la transacción.
    Si se agota el tiempo o falla la base de datos se hace rollback y se lanza
    PersistenceError. No hay compensación de cambios remotos ya confirmados.
    """
    timeout = settings.DB_TRANSACTION_TIMEOUT_SECONDS if timeout is None else timeout

    async def _run() -> T:
        if db.bind is not None and db.bind.dialect.name == "postgresql":
            await db.execute(text(f"SET LOCAL statement_timeout = {int(timeout * 1000)}"))
        result = await work()
        await db.commit()
        return result

    try:
        return await asyncio.wait_for(_run(), timeout=timeout)
    except asyncio.TimeoutError:
        await db.rollback()
        logger.error(f"Local write timed out after {timeout}s during {operation}")
        raise PersistenceError(
            f"La operación '{operation}' excedió el tiempo límite",
            details={"operation": operation, "timeout_seconds": timeout}
        )
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"Database error during {operation}: {e}")
        raise PersistenceError(
            f"Error de base de datos en '{operation}'",
            details={"operation": operation}
        ) from e
