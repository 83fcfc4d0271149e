"""
SQL schema for the database-backed stores.

Tables:
    - migration_locks: Singleton lock record (SQLAlchemyLockStore)
    - migration_state: Shared migration status (SQLAlchemyMigrationStateStore)

Supported backends:
    - postgresql (default)
    - sqlite

Usage:
    from bulkmigrate.schema import create_schema, get_schema

    locks_sql = get_schema("locks", backend="sqlite")

    # Create all tables for the engine's dialect
    await create_schema(engine)
"""

from pathlib import Path
from typing import Literal, get_args

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from bulkmigrate._connection import dialect_name, execute_with_connection

SchemaName = Literal["locks", "state"]

BackendName = Literal["postgresql", "sqlite"]

_TEMPLATES_DIR = Path(__file__).parent / "templates"


def get_template_path(name: SchemaName, backend: BackendName = "postgresql") -> Path:
    """
    Path of a SQL template file.

    Raises:
        ValueError: For an unknown schema name or backend
    """
    if name not in get_args(SchemaName):
        raise ValueError(
            f"Unknown schema {name!r}. Available schemas: {list(get_args(SchemaName))}"
        )
    if backend not in get_args(BackendName):
        raise ValueError(f"Unsupported backend {backend!r}. Use 'postgresql' or 'sqlite'.")
    return _TEMPLATES_DIR / backend / f"{name}.sql"


def get_schema(name: SchemaName, backend: BackendName = "postgresql") -> str:
    """
    SQL for one schema.

    Args:
        name: "locks" or "state"
        backend: "postgresql" (default) or "sqlite"

    Returns:
        The CREATE statements as a string
    """
    return get_template_path(name, backend).read_text(encoding="utf-8")


def get_all_schemas(backend: BackendName = "postgresql") -> str:
    """SQL for every table, concatenated."""
    return "\n".join(get_schema(name, backend) for name in get_args(SchemaName))


def _statements(sql: str) -> list[str]:
    statements = []
    for chunk in sql.split(";"):
        lines = [line for line in chunk.splitlines() if not line.strip().startswith("--")]
        statement = "\n".join(lines).strip()
        if statement:
            statements.append(statement)
    return statements


async def create_schema(conn: AsyncConnection | AsyncEngine) -> None:
    """
    Create all tables for the connection's dialect, if missing.

    Raises:
        ValueError: If the dialect is neither PostgreSQL nor SQLite
    """
    backend = dialect_name(conn)
    if backend not in get_args(BackendName):
        raise ValueError(f"Unsupported backend {backend!r}. Use 'postgresql' or 'sqlite'.")
    sql = get_all_schemas(backend)  # type: ignore[arg-type]
    async with execute_with_connection(conn) as connection:
        for statement in _statements(sql):
            await connection.exec_driver_sql(statement)


__all__ = [
    "BackendName",
    "SchemaName",
    "create_schema",
    "get_all_schemas",
    "get_schema",
    "get_template_path",
]
