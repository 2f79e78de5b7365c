"""
Inventory store client.

Every component receives an ``InventoryStore`` instead of reaching for a global session.
Each public method opens its own short-lived session and commits before returning, so no
transaction ever spans more than one logical write. Rows are handed back as pydantic
records; driver failures surface as ``RemoteIOError`` and rows that do not fit their record
as ``ValidationSystemError``.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple, Type, TypeVar
from uuid import UUID

from pydantic import BaseModel, ValidationError
from sqlalchemy import delete, func, inspect, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.orm import aliased, selectinload

from core.errors import RemoteIOError, ValidationSystemError, VersionConflict
from core.matching import normalize_name
from db.database import utcnow
from db.inventory.compensation import CompensationLog
from db.inventory.conversion_mapping import ConversionMapping
from db.inventory.idempotency import DeductionIdempotency
from db.inventory.movement import InventoryMovement
from db.inventory.stock import InventoryStock
from db.product import Product, ProductCatalog
from db.recipe import Recipe, RecipeIngredient, RecipeIngredientMapping
from db.recipe_template import RecipeTemplate
from schemas.deployments import CatalogRecord, ProductRecord, RecipeRecord, TemplateRecord
from schemas.inventory import (
    CompensationRecord,
    MappingRecord,
    MovementRecord,
    ResolvedMapping,
    StockRecord,
)

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=BaseModel)


def _record(record_cls: Type[R], row) -> R:
    return record_cls.model_validate(row)


class InventoryStore:
    def __init__(self, session_maker: async_sessionmaker):
        self.session_maker = session_maker

    @asynccontextmanager
    async def session(self):
        try:
            async with self.session_maker() as session:
                yield session
        except IntegrityError:
            raise
        except DBAPIError as e:
            logger.warning(f"Inventory store I/O failure: {e.__class__.__name__}: {e.orig!r}")
            raise RemoteIOError(f"Inventory store unavailable: {e.orig}") from e
        except ValidationError as e:
            logger.error(f"Unexpected row shape from inventory store: {e}")
            raise ValidationSystemError(f"Unexpected data from inventory store: {e.error_count()} error(s)") from e

    # ------------------------------------------------------------------
    # Stock
    # ------------------------------------------------------------------

    async def get_stock(self, stock_id: UUID) -> Optional[StockRecord]:
        async with self.session() as session:
            row = await session.get(InventoryStock, stock_id)
            return _record(StockRecord, row) if row is not None else None

    async def list_active_stock(self, store_id: UUID) -> List[StockRecord]:
        """Active stock of a store in declared order (creation time, then item name)."""
        async with self.session() as session:
            res = await session.execute(
                select(InventoryStock)
                .where(InventoryStock.store_id == store_id, InventoryStock.is_active.is_(True))
                .order_by(InventoryStock.created_at, InventoryStock.item)
            )
            return [_record(StockRecord, r) for r in res.scalars().all()]

    async def compare_and_set_stock(
        self,
        stock_id: UUID,
        expected_version: int,
        values: Dict[str, Any],
    ) -> StockRecord:
        """
        Conditional write: applies ``values`` only while the row still carries
        ``expected_version`` and bumps the version by one. Raises ``VersionConflict``
        when another writer got there first.
        """
        async with self.session() as session:
            res = await session.execute(
                update(InventoryStock)
                .where(InventoryStock.id == stock_id, InventoryStock.version == expected_version)
                .values(**values, version=expected_version + 1, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                await session.rollback()
                raise VersionConflict(stock_id, expected_version)
            await session.commit()
            row = await session.get(InventoryStock, stock_id, populate_existing=True)
            return _record(StockRecord, row)

    # ------------------------------------------------------------------
    # Conversion mappings
    # ------------------------------------------------------------------

    def _mapping_query(self, store_id: UUID):
        return (
            select(ConversionMapping, InventoryStock)
            .join(InventoryStock, ConversionMapping.inventory_stock_id == InventoryStock.id)
            .where(InventoryStock.store_id == store_id)
        )

    async def find_mapping(
        self, store_id: UUID, ingredient_name: str, ingredient_unit: str
    ) -> Optional[ResolvedMapping]:
        async with self.session() as session:
            res = await session.execute(
                self._mapping_query(store_id)
                .where(
                    func.lower(func.trim(ConversionMapping.recipe_ingredient_name)) == normalize_name(ingredient_name),
                    func.lower(func.trim(ConversionMapping.recipe_ingredient_unit)) == normalize_name(ingredient_unit),
                    ConversionMapping.is_active.is_(True),
                    InventoryStock.is_active.is_(True),
                )
                .order_by(ConversionMapping.created_at)
                .limit(1)
            )
            row = res.first()
            if row is None:
                return None
            mapping, stock = row
            return ResolvedMapping(mapping=_record(MappingRecord, mapping), stock=_record(StockRecord, stock))

    async def find_active_mapping_ids(
        self, store_id: UUID, ingredient_name: str, ingredient_unit: str
    ) -> List[UUID]:
        async with self.session() as session:
            res = await session.execute(
                select(ConversionMapping.id)
                .join(InventoryStock, ConversionMapping.inventory_stock_id == InventoryStock.id)
                .where(
                    InventoryStock.store_id == store_id,
                    func.lower(func.trim(ConversionMapping.recipe_ingredient_name)) == normalize_name(ingredient_name),
                    func.lower(func.trim(ConversionMapping.recipe_ingredient_unit)) == normalize_name(ingredient_unit),
                    ConversionMapping.is_active.is_(True),
                )
            )
            return list(res.scalars().all())

    async def get_mapping(self, mapping_id: UUID) -> Optional[ResolvedMapping]:
        async with self.session() as session:
            res = await session.execute(
                select(ConversionMapping, InventoryStock)
                .join(InventoryStock, ConversionMapping.inventory_stock_id == InventoryStock.id)
                .where(ConversionMapping.id == mapping_id)
            )
            row = res.first()
            if row is None:
                return None
            mapping, stock = row
            return ResolvedMapping(mapping=_record(MappingRecord, mapping), stock=_record(StockRecord, stock))

    async def list_mappings(self, store_id: UUID, include_inactive: bool = False) -> List[ResolvedMapping]:
        q = self._mapping_query(store_id)
        if not include_inactive:
            q = q.where(ConversionMapping.is_active.is_(True))
        async with self.session() as session:
            res = await session.execute(
                q.order_by(ConversionMapping.recipe_ingredient_name, ConversionMapping.created_at)
            )
            return [
                ResolvedMapping(mapping=_record(MappingRecord, m), stock=_record(StockRecord, s))
                for m, s in res.all()
            ]

    async def insert_mapping(self, values: Dict[str, Any]) -> MappingRecord:
        async with self.session() as session:
            row = ConversionMapping(**values)
            session.add(row)
            await session.commit()
            await session.refresh(row)
            return _record(MappingRecord, row)

    async def update_mapping(self, mapping_id: UUID, values: Dict[str, Any]) -> Optional[MappingRecord]:
        async with self.session() as session:
            row = await session.get(ConversionMapping, mapping_id)
            if row is None:
                return None
            for field, value in values.items():
                setattr(row, field, value)
            await session.commit()
            await session.refresh(row)
            return _record(MappingRecord, row)

    async def deactivate_mappings(self, mapping_ids: Iterable[UUID]) -> int:
        ids = list(mapping_ids)
        if not ids:
            return 0
        async with self.session() as session:
            res = await session.execute(
                update(ConversionMapping)
                .where(ConversionMapping.id.in_(ids))
                .values(is_active=False, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return res.rowcount

    # ------------------------------------------------------------------
    # Movements
    # ------------------------------------------------------------------

    async def insert_movement(self, values: Dict[str, Any]) -> MovementRecord:
        async with self.session() as session:
            row = InventoryMovement(**values)
            session.add(row)
            await session.commit()
            await session.refresh(row)
            return _record(MovementRecord, row)

    async def list_movements(
        self,
        *,
        reference_id: Optional[str] = None,
        store_id: Optional[UUID] = None,
        inventory_stock_id: Optional[UUID] = None,
        movement_type: Optional[str] = None,
    ) -> List[MovementRecord]:
        q = select(InventoryMovement)
        if reference_id is not None:
            q = q.where(InventoryMovement.reference_id == reference_id)
        if store_id is not None:
            q = q.where(InventoryMovement.store_id == store_id)
        if inventory_stock_id is not None:
            q = q.where(InventoryMovement.inventory_stock_id == inventory_stock_id)
        if movement_type is not None:
            q = q.where(InventoryMovement.movement_type == movement_type)
        async with self.session() as session:
            res = await session.execute(q.order_by(InventoryMovement.created_at))
            return [_record(MovementRecord, r) for r in res.scalars().all()]

    async def list_unreversed_sales(self, transaction_id: str) -> List[MovementRecord]:
        reversal = aliased(InventoryMovement)
        async with self.session() as session:
            res = await session.execute(
                select(InventoryMovement)
                .outerjoin(reversal, reversal.reversal_of_id == InventoryMovement.id)
                .where(
                    InventoryMovement.reference_id == transaction_id,
                    InventoryMovement.movement_type == "sale",
                    reversal.id.is_(None),
                )
                .order_by(InventoryMovement.created_at)
            )
            return [_record(MovementRecord, r) for r in res.scalars().all()]

    async def count_cross_store_movements(self, store_id: UUID) -> int:
        """Movements written on behalf of ``store_id`` against another store's stock."""
        async with self.session() as session:
            res = await session.execute(
                select(func.count(InventoryMovement.id))
                .join(InventoryStock, InventoryMovement.inventory_stock_id == InventoryStock.id)
                .where(InventoryMovement.store_id == store_id, InventoryStock.store_id != store_id)
            )
            return int(res.scalar_one())

    # ------------------------------------------------------------------
    # Idempotency
    # ------------------------------------------------------------------

    async def get_idempotency_records(self, transaction_id: str) -> Dict[str, Dict[str, Any]]:
        """Recorded outcomes of a transaction keyed by ingredient key."""
        async with self.session() as session:
            res = await session.execute(
                select(DeductionIdempotency).where(DeductionIdempotency.transaction_id == transaction_id)
            )
            return {
                r.ingredient_key: {"status": r.status, "result": r.result, "created_at": r.created_at}
                for r in res.scalars().all()
            }

    async def insert_idempotency_record(
        self,
        *,
        transaction_id: str,
        ingredient_key: str,
        store_id: UUID,
        inventory_stock_id: Optional[UUID],
        status: str,
        result: Dict[str, Any],
    ) -> bool:
        """Returns False when a record for (transaction, ingredient) already exists."""
        try:
            async with self.session() as session:
                session.add(
                    DeductionIdempotency(
                        transaction_id=transaction_id,
                        ingredient_key=ingredient_key,
                        store_id=store_id,
                        inventory_stock_id=inventory_stock_id,
                        status=status,
                        result=result,
                    )
                )
                await session.commit()
                return True
        except IntegrityError:
            logger.warning(f"Idempotency record already exists for {transaction_id} / {ingredient_key}")
            return False

    async def list_idempotency_outcomes(
        self, store_id: UUID, since: Optional[datetime] = None
    ) -> List[Tuple[str, Dict[str, Any], datetime]]:
        q = select(DeductionIdempotency.status, DeductionIdempotency.result, DeductionIdempotency.created_at).where(
            DeductionIdempotency.store_id == store_id
        )
        if since is not None:
            q = q.where(DeductionIdempotency.created_at >= since)
        async with self.session() as session:
            res = await session.execute(q.order_by(DeductionIdempotency.created_at))
            return [(status, result or {}, created_at) for status, result, created_at in res.all()]

    async def count_idempotency_records(self) -> int:
        async with self.session() as session:
            res = await session.execute(select(func.count(DeductionIdempotency.id)))
            return int(res.scalar_one())

    # ------------------------------------------------------------------
    # Compensation log
    # ------------------------------------------------------------------

    async def insert_compensation(self, values: Dict[str, Any]) -> CompensationRecord:
        async with self.session() as session:
            row = CompensationLog(**values)
            session.add(row)
            await session.commit()
            await session.refresh(row)
            return _record(CompensationRecord, row)

    async def list_compensations(
        self, *, transaction_id: Optional[str] = None, store_id: Optional[UUID] = None, since: Optional[datetime] = None
    ) -> List[CompensationRecord]:
        q = select(CompensationLog)
        if transaction_id is not None:
            q = q.where(CompensationLog.transaction_id == transaction_id)
        if store_id is not None:
            q = q.where(CompensationLog.store_id == store_id)
        if since is not None:
            q = q.where(CompensationLog.compensated_at >= since)
        async with self.session() as session:
            res = await session.execute(q.order_by(CompensationLog.compensated_at))
            return [_record(CompensationRecord, r) for r in res.scalars().all()]

    async def count_compensation_log(self) -> int:
        async with self.session() as session:
            res = await session.execute(select(func.count(CompensationLog.id)))
            return int(res.scalar_one())

    # ------------------------------------------------------------------
    # Schema / scoping introspection (health monitor)
    # ------------------------------------------------------------------

    async def get_columns(self, table_name: str) -> Dict[str, str]:
        """Column name -> SQL type name; empty when the table is missing."""

        def _columns(sync_conn):
            insp = inspect(sync_conn)
            if not insp.has_table(table_name):
                return {}
            return {c["name"]: str(c["type"]) for c in insp.get_columns(table_name)}

        async with self.session() as session:
            conn = await session.connection()
            return await conn.run_sync(_columns)

    async def count_duplicate_active_mappings(self, store_id: UUID) -> int:
        """(name, unit) pairs with more than one active mapping inside the store."""
        name = func.lower(func.trim(ConversionMapping.recipe_ingredient_name))
        unit = func.lower(func.trim(ConversionMapping.recipe_ingredient_unit))
        dupes = (
            select(name.label("n"), unit.label("u"))
            .join(InventoryStock, ConversionMapping.inventory_stock_id == InventoryStock.id)
            .where(InventoryStock.store_id == store_id, ConversionMapping.is_active.is_(True))
            .group_by(name, unit)
            .having(func.count(ConversionMapping.id) > 1)
            .subquery()
        )
        async with self.session() as session:
            res = await session.execute(select(func.count()).select_from(dupes))
            return int(res.scalar_one())

    async def count_active_mappings(self, store_id: UUID) -> Tuple[int, int]:
        """(active mappings in the store, of which pointing at inactive stock)."""
        async with self.session() as session:
            res = await session.execute(
                select(func.count(ConversionMapping.id))
                .join(InventoryStock, ConversionMapping.inventory_stock_id == InventoryStock.id)
                .where(InventoryStock.store_id == store_id, ConversionMapping.is_active.is_(True))
            )
            total = int(res.scalar_one())
            res = await session.execute(
                select(func.count(ConversionMapping.id))
                .join(InventoryStock, ConversionMapping.inventory_stock_id == InventoryStock.id)
                .where(
                    InventoryStock.store_id == store_id,
                    ConversionMapping.is_active.is_(True),
                    InventoryStock.is_active.is_(False),
                )
            )
            return total, int(res.scalar_one())

    # ------------------------------------------------------------------
    # Deployment rows
    # ------------------------------------------------------------------

    async def get_template(self, template_id: UUID) -> Optional[TemplateRecord]:
        async with self.session() as session:
            res = await session.execute(
                select(RecipeTemplate)
                .options(selectinload(RecipeTemplate.ingredients))
                .where(RecipeTemplate.id == template_id)
            )
            row = res.scalars().first()
            return _record(TemplateRecord, row) if row is not None else None

    async def find_deployed_recipe(self, template_id: UUID, store_id: UUID) -> Optional[RecipeRecord]:
        async with self.session() as session:
            res = await session.execute(
                select(Recipe).where(
                    Recipe.template_id == template_id,
                    Recipe.store_id == store_id,
                    Recipe.is_active.is_(True),
                )
            )
            row = res.scalars().first()
            return _record(RecipeRecord, row) if row is not None else None

    async def _insert(self, model, record_cls: Type[R], values: Dict[str, Any]) -> R:
        async with self.session() as session:
            row = model(**values)
            session.add(row)
            await session.commit()
            await session.refresh(row)
            return _record(record_cls, row)

    async def _update(self, model, record_cls: Type[R], row_id: UUID, values: Dict[str, Any]) -> R:
        async with self.session() as session:
            row = await session.get(model, row_id)
            if row is None:
                raise ValidationSystemError(f"{model.__tablename__} row {row_id} disappeared")
            for field, value in values.items():
                setattr(row, field, value)
            await session.commit()
            await session.refresh(row)
            return _record(record_cls, row)

    async def insert_product(self, values: Dict[str, Any]) -> ProductRecord:
        return await self._insert(Product, ProductRecord, values)

    async def update_product(self, product_id: UUID, values: Dict[str, Any]) -> ProductRecord:
        return await self._update(Product, ProductRecord, product_id, values)

    async def delete_product(self, product_id: UUID) -> None:
        async with self.session() as session:
            await session.execute(delete(Product).where(Product.id == product_id))
            await session.commit()

    async def insert_catalog_entry(self, values: Dict[str, Any]) -> CatalogRecord:
        return await self._insert(ProductCatalog, CatalogRecord, values)

    async def update_catalog_entry(self, catalog_id: UUID, values: Dict[str, Any]) -> CatalogRecord:
        return await self._update(ProductCatalog, CatalogRecord, catalog_id, values)

    async def delete_catalog_entry(self, catalog_id: UUID) -> None:
        async with self.session() as session:
            await session.execute(delete(ProductCatalog).where(ProductCatalog.id == catalog_id))
            await session.commit()

    async def insert_recipe(self, values: Dict[str, Any]) -> RecipeRecord:
        return await self._insert(Recipe, RecipeRecord, values)

    async def update_recipe(self, recipe_id: UUID, values: Dict[str, Any]) -> RecipeRecord:
        return await self._update(Recipe, RecipeRecord, recipe_id, values)

    async def delete_recipe(self, recipe_id: UUID) -> None:
        async with self.session() as session:
            await session.execute(delete(RecipeIngredientMapping).where(RecipeIngredientMapping.recipe_id == recipe_id))
            await session.execute(delete(RecipeIngredient).where(RecipeIngredient.recipe_id == recipe_id))
            await session.execute(delete(Recipe).where(Recipe.id == recipe_id))
            await session.commit()

    async def insert_recipe_ingredients(
        self, ingredients: List[Dict[str, Any]], mappings: List[Dict[str, Any]]
    ) -> int:
        async with self.session() as session:
            session.add_all([RecipeIngredient(**v) for v in ingredients])
            session.add_all([RecipeIngredientMapping(**v) for v in mappings])
            await session.commit()
            return len(ingredients)

    async def delete_recipe_ingredients(self, recipe_id: UUID) -> None:
        async with self.session() as session:
            await session.execute(delete(RecipeIngredientMapping).where(RecipeIngredientMapping.recipe_id == recipe_id))
            await session.execute(delete(RecipeIngredient).where(RecipeIngredient.recipe_id == recipe_id))
            await session.commit()

    async def count_recipe_ingredient_mappings(self, recipe_id: UUID) -> int:
        async with self.session() as session:
            res = await session.execute(
                select(func.count(RecipeIngredientMapping.id)).where(RecipeIngredientMapping.recipe_id == recipe_id)
            )
            return int(res.scalar_one())
