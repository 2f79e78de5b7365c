import logging
from typing import List, Optional
from uuid import UUID

from core.errors import MappingConflict, NotFound
from schemas.inventory import (
    ConversionMappingCreate,
    ConversionMappingOut,
    ConversionMappingUpdate,
    MappingRecord,
    ResolvedMapping,
)
from services.inventory_store import InventoryStore

logger = logging.getLogger(__name__)


def mapping_out(resolved: ResolvedMapping) -> ConversionMappingOut:
    return ConversionMappingOut(
        **resolved.mapping.model_dump(),
        store_id=resolved.stock.store_id,
        inventory_item=resolved.stock.item,
        inventory_unit=resolved.stock.unit,
    )


class ConversionMappingResolver:
    """
    Resolves a recipe ingredient (name, unit) to the store's stock record and the factor
    between the two units: one inventory unit equals ``conversion_factor`` recipe units.

    Lookups are case-insensitive and always scoped to the store that owns the stock
    record, so a mapping can never resolve to another store's inventory.
    """

    def __init__(self, store: InventoryStore):
        self.store = store

    async def find_mapping(
        self, store_id: UUID, ingredient_name: str, ingredient_unit: str
    ) -> Optional[ResolvedMapping]:
        resolved = await self.store.find_mapping(store_id, ingredient_name, ingredient_unit)
        if resolved is None:
            logger.debug(f"No mapping for '{ingredient_name}' ({ingredient_unit}) in store {store_id}")
        return resolved

    async def get(self, mapping_id: UUID) -> ResolvedMapping:
        resolved = await self.store.get_mapping(mapping_id)
        if resolved is None:
            raise NotFound(f"Conversion mapping {mapping_id} not found")
        return resolved

    async def list_for_store(self, store_id: UUID, include_inactive: bool = False) -> List[ResolvedMapping]:
        return await self.store.list_mappings(store_id, include_inactive=include_inactive)

    async def _ensure_unique(
        self, store_id: UUID, name: str, unit: str, exclude_id: Optional[UUID] = None
    ) -> None:
        existing = [
            mid for mid in await self.store.find_active_mapping_ids(store_id, name, unit) if mid != exclude_id
        ]
        if existing:
            raise MappingConflict(
                f"An active mapping for '{name}' ({unit}) already exists in store {store_id}"
            )

    async def create(self, payload: ConversionMappingCreate) -> MappingRecord:
        stock = await self.store.get_stock(payload.inventory_stock_id)
        if stock is None:
            raise NotFound(f"Inventory stock {payload.inventory_stock_id} not found")

        await self._ensure_unique(stock.store_id, payload.recipe_ingredient_name, payload.recipe_ingredient_unit)

        mapping = await self.store.insert_mapping(payload.model_dump())
        logger.info(
            f"Created conversion mapping {mapping.id}: '{mapping.recipe_ingredient_name}' "
            f"({mapping.recipe_ingredient_unit}) -> {stock.item} x{mapping.conversion_factor:g}"
        )
        return mapping

    async def update(self, mapping_id: UUID, payload: ConversionMappingUpdate) -> MappingRecord:
        current = await self.get(mapping_id)
        values = payload.model_dump(exclude_unset=True)
        if not values:
            return current.mapping

        stock = current.stock
        if values.get("inventory_stock_id") and values["inventory_stock_id"] != stock.id:
            stock = await self.store.get_stock(values["inventory_stock_id"])
            if stock is None:
                raise NotFound(f"Inventory stock {values['inventory_stock_id']} not found")

        will_be_active = values.get("is_active", current.mapping.is_active)
        if will_be_active:
            await self._ensure_unique(
                stock.store_id,
                values.get("recipe_ingredient_name", current.mapping.recipe_ingredient_name),
                values.get("recipe_ingredient_unit", current.mapping.recipe_ingredient_unit),
                exclude_id=mapping_id,
            )

        updated = await self.store.update_mapping(mapping_id, values)
        if updated is None:
            raise NotFound(f"Conversion mapping {mapping_id} not found")
        return updated

    async def delete(self, mapping_id: UUID) -> MappingRecord:
        """Soft delete: the row stays, flagged inactive."""
        await self.get(mapping_id)
        updated = await self.store.update_mapping(mapping_id, {"is_active": False})
        logger.info(f"Deactivated conversion mapping {mapping_id}")
        return updated
