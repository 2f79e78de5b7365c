"""Tests for schema upgrade helpers."""

import pytest
import pytest_asyncio
from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine

from db.migrations import (
    add_fractional_stock_column_if_missing,
    add_version_column_if_missing,
    run_migrations,
)


@pytest_asyncio.fixture
async def legacy_engine(tmp_path):
    """A database whose inventory_stock table predates optimistic locking."""
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'legacy.db'}")
    async with eng.begin() as conn:
        await conn.execute(
            text(
                """
                CREATE TABLE inventory_stock (
                    id CHAR(32) PRIMARY KEY,
                    store_id CHAR(32) NOT NULL,
                    item VARCHAR NOT NULL,
                    unit VARCHAR NOT NULL,
                    stock_quantity INTEGER NOT NULL DEFAULT 0
                )
                """
            )
        )
        await conn.execute(
            text("INSERT INTO inventory_stock (id, store_id, item, unit, stock_quantity) VALUES ('a', 'b', 'Milk', 'l', 4)")
        )
    yield eng
    await eng.dispose()


class TestVersionColumn:
    @pytest.mark.asyncio
    async def test_adds_missing_column(self, legacy_engine):
        assert await add_version_column_if_missing(legacy_engine) is True

        async with legacy_engine.connect() as conn:
            version = (await conn.execute(text("SELECT version FROM inventory_stock"))).scalar_one()
        assert version == 1

    @pytest.mark.asyncio
    async def test_is_idempotent(self, legacy_engine):
        await add_version_column_if_missing(legacy_engine)

        assert await add_version_column_if_missing(legacy_engine) is False

    @pytest.mark.asyncio
    async def test_current_schema_needs_nothing(self, engine):
        assert await add_version_column_if_missing(engine) is False
        assert await add_fractional_stock_column_if_missing(engine) is False

    @pytest.mark.asyncio
    async def test_missing_table_is_skipped(self, tmp_path):
        eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")
        try:
            assert await add_version_column_if_missing(eng) is False
        finally:
            await eng.dispose()


class TestRunMigrations:
    @pytest.mark.asyncio
    async def test_brings_legacy_table_up_to_date(self, legacy_engine):
        await run_migrations(legacy_engine)

        async with legacy_engine.connect() as conn:
            row = (await conn.execute(text("SELECT version, fractional_stock FROM inventory_stock"))).one()
        assert row.version == 1
        assert row.fractional_stock == 0
