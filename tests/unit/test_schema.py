"""Unit tests for the bundled SQL schema."""

import pytest
from sqlalchemy import text

from bulkmigrate.schema import create_schema, get_all_schemas, get_schema, get_template_path
from tests.conftest import skip_if_no_aiosqlite


class TestSchemaTemplates:
    """Tests for template lookup."""

    @pytest.mark.parametrize("backend", ["postgresql", "sqlite"])
    def test_templates_exist(self, backend: str) -> None:
        for name in ("locks", "state"):
            assert get_template_path(name, backend).is_file()  # type: ignore[arg-type]

    def test_locks_schema_has_table(self) -> None:
        assert "CREATE TABLE IF NOT EXISTS migration_locks" in get_schema("locks")

    def test_all_schemas(self) -> None:
        sql = get_all_schemas("sqlite")
        assert "migration_locks" in sql
        assert "migration_state" in sql

    def test_unknown_schema(self) -> None:
        with pytest.raises(ValueError, match="Unknown schema"):
            get_template_path("outbox")  # type: ignore[arg-type]

    def test_unknown_backend(self) -> None:
        with pytest.raises(ValueError, match="Unsupported backend"):
            get_schema("locks", "oracle")  # type: ignore[arg-type]


@pytest.mark.sqlite
@skip_if_no_aiosqlite
class TestCreateSchema:
    """Tests for create_schema on SQLite."""

    @pytest.mark.asyncio
    async def test_tables_created(self, sqlite_engine) -> None:
        async with sqlite_engine.connect() as conn:
            result = await conn.execute(
                text("SELECT name FROM sqlite_master WHERE type = 'table' ORDER BY name")
            )
            tables = [row[0] for row in result.fetchall()]
        assert tables == ["migration_locks", "migration_state"]

    @pytest.mark.asyncio
    async def test_idempotent(self, sqlite_engine) -> None:
        await create_schema(sqlite_engine)
