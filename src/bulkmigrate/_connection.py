"""
Connection helpers shared by the SQL-backed stores.

The lock and state stores accept either an ``AsyncEngine`` (they open their
own connection per call) or an ``AsyncConnection`` owned by the caller (they
run inside the caller's transaction).
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine


@asynccontextmanager
async def execute_with_connection(
    conn: AsyncConnection | AsyncEngine,
    transactional: bool = True,
) -> AsyncIterator[AsyncConnection]:
    """
    Yield a connection ready for ``execute()`` calls.

    Args:
        conn: Database connection or engine
        transactional: For an engine, run inside ``begin()`` (commit on
            exit) when True, or a bare ``connect()`` for reads when False.
            Ignored for a caller-owned connection.

    Example:
        >>> async with execute_with_connection(self._conn) as conn:
        ...     await conn.execute(text("DELETE FROM migration_locks"), {})
    """
    if isinstance(conn, AsyncEngine):
        if transactional:
            async with conn.begin() as connection:
                yield connection
        else:
            async with conn.connect() as connection:
                yield connection
    else:
        # Caller is responsible for transaction management
        yield conn


def dialect_name(conn: AsyncConnection | AsyncEngine) -> str:
    """
    Return the SQLAlchemy dialect name ("postgresql", "sqlite", "mysql", ...).

    Used for the ``db.system`` span attribute and to pick dialect-specific
    statements.
    """
    return conn.dialect.name
