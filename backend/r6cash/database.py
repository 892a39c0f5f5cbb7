"""
=============================================================================
R6CASH - Acceso a Datos
=============================================================================
Motor async y fábrica de sesiones. Se construye explícitamente y se inyecta
en cada servicio; no existe un cliente global.

Atomicidad:
- PostgreSQL: transacciones READ COMMITTED + `SELECT ... FOR UPDATE` sobre
  las filas que se van a mutar (perfil, partida, retiro).
- SQLite: cada transacción abre con `BEGIN IMMEDIATE`, lo que serializa a
  los escritores de la base completa.
=============================================================================
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .models import Base

logger = logging.getLogger(__name__)

SQLITE_BUSY_TIMEOUT_SECONDS = 30


class Database:
    """Dueño del engine y de la fábrica de sesiones."""

    def __init__(self, url: str, *, echo: bool = False):
        self.url = url
        self.is_sqlite = url.startswith("sqlite")
        connect_args = {"timeout": SQLITE_BUSY_TIMEOUT_SECONDS} if self.is_sqlite else {}
        self.engine: AsyncEngine = create_async_engine(url, echo=echo, connect_args=connect_args)
        if self.is_sqlite:
            _install_sqlite_hooks(self.engine)
        self._sessionmaker = async_sessionmaker(self.engine, expire_on_commit=False)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """
        Unidad atómica: commit al salir sin error, rollback ante cualquier
        excepción. Nada queda a medio aplicar.
        """
        async with self._sessionmaker() as session:
            async with session.begin():
                yield session

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Sesión de sólo lectura (sin commit explícito)."""
        async with self._sessionmaker() as session:
            yield session

    async def create_schema(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Schema verified for %s", self.engine.url.render_as_string(hide_password=True))

    async def ping(self) -> bool:
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except Exception:
            logger.exception("Database ping failed")
            return False
        return True

    async def dispose(self) -> None:
        await self.engine.dispose()


def _install_sqlite_hooks(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # El driver no emite BEGIN; lo hace el hook "begin"
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


__all__ = ["Database"]
