"""Database migration utilities"""
import logging

from sqlalchemy import inspect, text
from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)


def _column_names(sync_conn, table_name: str) -> set:
    insp = inspect(sync_conn)
    if not insp.has_table(table_name):
        return set()
    return {c["name"] for c in insp.get_columns(table_name)}


async def add_version_column_if_missing(engine: AsyncEngine) -> bool:
    """
    Add the optimistic-lock `version` column to inventory_stock if it doesn't exist.

    Returns True when the column was added. Existing rows start at version 1.
    """
    async with engine.begin() as conn:
        existing_columns = await conn.run_sync(_column_names, "inventory_stock")
        if not existing_columns:
            logger.info("inventory_stock table does not exist yet; nothing to migrate")
            return False

        if "version" in existing_columns:
            logger.info("version column already exists in inventory_stock table")
            return False

        logger.info("Adding version column to inventory_stock table...")
        await conn.execute(
            text("""
                ALTER TABLE inventory_stock
                ADD COLUMN version INTEGER NOT NULL DEFAULT 1
            """)
        )
        logger.info("Successfully added version column to inventory_stock table")
        return True


async def add_fractional_stock_column_if_missing(engine: AsyncEngine) -> bool:
    """Add `fractional_stock` (sub-unit remainder) to inventory_stock if it doesn't exist."""
    async with engine.begin() as conn:
        existing_columns = await conn.run_sync(_column_names, "inventory_stock")
        if not existing_columns or "fractional_stock" in existing_columns:
            return False

        logger.info("Adding fractional_stock column to inventory_stock table...")
        await conn.execute(
            text("""
                ALTER TABLE inventory_stock
                ADD COLUMN fractional_stock FLOAT NOT NULL DEFAULT 0
            """)
        )
        return True


async def run_migrations(engine: AsyncEngine) -> None:
    await add_version_column_if_missing(engine)
    await add_fractional_stock_column_if_missing(engine)
