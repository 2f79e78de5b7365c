"""
Bulk-to-serving breakdown for deliveries.

A delivery arrives in bulk units ("1 box/70pcs Croissant"); stock is tracked in servings.
The processor turns each delivered line into a serving quantity and a per-serving cost and
writes them onto the stock record, together with a ``delivery`` movement.
"""

import asyncio
import logging
import math
import re
from typing import Dict, List, Optional
from uuid import UUID

from core.errors import InventoryError, NotFound, ValidationSystemError
from core.matching import normalize_name
from core.retry import RetryPolicy
from schemas.deliveries import (
    Breakdown,
    BulkDeliveryItem,
    BulkDescription,
    DeliveryItemResult,
    DeliverySummary,
)
from schemas.inventory import StockRecord
from services.inventory_store import InventoryStore

logger = logging.getLogger(__name__)

BULK_DESCRIPTION_RE = re.compile(
    r"(\d+(?:\.\d+)?)\s*([A-Za-z]+)\s*/\s*(\d+)\s*([A-Za-z]+)"
)

UNIT_ALIASES = {
    "pc": "pieces",
    "pcs": "pieces",
    "piece": "pieces",
    "pieces": "pieces",
    "serving": "servings",
    "servings": "servings",
}

# Mini croffle toppings and bases served as half portions: each delivered piece yields
# this many servings. Matched on the whole item name.
HALF_SERVING_ITEMS: Dict[str, float] = {
    "croissant": 0.5,
    "regular croissant": 0.5,
    "whipped cream": 0.5,
    "chocolate sauce": 0.5,
    "caramel sauce": 0.5,
    "tiramisu sauce": 0.5,
    "colored sprinkle": 0.5,
    "peanut": 0.5,
    "choco flakes": 0.5,
    "marshmallow": 0.5,
}


def normalize_unit(unit: str) -> str:
    u = (unit or "").strip().lower()
    return UNIT_ALIASES.get(u, u)


def parse_bulk_description(text: Optional[str]) -> Optional[BulkDescription]:
    """
    Parse ``"<N> <bulk_unit>/<M> <serving_unit>"``.

    >>> parse_bulk_description("1 box/70pcs Croissant")
    BulkDescription(bulk_quantity=1.0, bulk_unit='box', breakdown_count=70, serving_unit='pieces')

    Returns None when the text does not follow the pattern; callers then use a ratio of 1.
    """
    if not text:
        return None
    match = BULK_DESCRIPTION_RE.search(text)
    if match is None:
        return None
    breakdown_count = int(match.group(3))
    if breakdown_count <= 0:
        return None
    return BulkDescription(
        bulk_quantity=float(match.group(1)),
        bulk_unit=match.group(2).lower(),
        breakdown_count=breakdown_count,
        serving_unit=normalize_unit(match.group(4)),
    )


def compute_breakdown(bulk_quantity: float, ratio: float, bulk_cost: float, multiplier: float = 1.0) -> Breakdown:
    if ratio <= 0:
        raise ValueError("breakdown ratio must be > 0")
    if multiplier <= 0:
        raise ValueError("serving multiplier must be > 0")
    servings_per_bulk = ratio * multiplier
    return Breakdown(
        serving_quantity=round(bulk_quantity * servings_per_bulk, 6),
        cost_per_serving=round(bulk_cost / servings_per_bulk, 6),
        breakdown_ratio=ratio,
        multiplier=multiplier,
    )


class BulkBreakdownProcessor:
    def __init__(
        self,
        store: InventoryStore,
        retry_policy: Optional[RetryPolicy] = None,
        serving_overrides: Optional[Dict[str, float]] = None,
    ):
        self.store = store
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        overrides = HALF_SERVING_ITEMS if serving_overrides is None else serving_overrides
        self.serving_overrides = {normalize_name(k): v for k, v in overrides.items()}

    def multiplier_for(self, item_name: str) -> float:
        return self.serving_overrides.get(normalize_name(item_name), 1.0)

    @staticmethod
    def resolve_ratio(item: BulkDeliveryItem, stock: Optional[StockRecord] = None) -> float:
        if item.breakdown_ratio:
            return item.breakdown_ratio
        parsed = parse_bulk_description(item.bulk_description)
        if parsed is not None:
            return float(parsed.breakdown_count)
        if stock is not None and stock.breakdown_ratio:
            return stock.breakdown_ratio
        return 1.0

    async def _load_stock(self, item: BulkDeliveryItem, store_id: Optional[UUID]) -> StockRecord:
        stock = await self.store.get_stock(item.inventory_stock_id)
        if stock is None:
            raise NotFound(f"Inventory stock {item.inventory_stock_id} not found")
        if store_id is not None and stock.store_id != store_id:
            raise NotFound(f"Inventory stock {item.inventory_stock_id} does not belong to store {store_id}")
        return stock

    async def preview_delivery(
        self, items: List[BulkDeliveryItem], store_id: Optional[UUID] = None
    ) -> List[DeliveryItemResult]:
        """Breakdown per item, nothing written."""

        async def preview(item: BulkDeliveryItem) -> DeliveryItemResult:
            try:
                stock = await self._load_stock(item, store_id)
            except InventoryError as e:
                return DeliveryItemResult(inventory_stock_id=item.inventory_stock_id, success=False, error=str(e))
            breakdown = compute_breakdown(
                item.bulk_quantity, self.resolve_ratio(item, stock), item.unit_cost, self.multiplier_for(stock.item)
            )
            whole = math.floor(breakdown.serving_quantity)
            return DeliveryItemResult(
                inventory_stock_id=stock.id,
                item_name=stock.item,
                success=True,
                breakdown=breakdown,
                previous_quantity=stock.total_quantity,
                stock_quantity=whole,
                fractional_stock=round(breakdown.serving_quantity - whole, 6),
            )

        return list(await asyncio.gather(*(preview(i) for i in items)))

    async def process_delivery(
        self, items: List[BulkDeliveryItem], store_id: Optional[UUID] = None
    ) -> DeliverySummary:
        """
        Apply a delivery batch. Items are independent: one failing item is reported in the
        summary and does not stop the others.
        """
        results = await asyncio.gather(*(self._process_item(i, store_id) for i in items))
        failed = [r for r in results if not r.success]
        summary = DeliverySummary(
            total_items=len(results),
            processed=len(results) - len(failed),
            failed=len(failed),
            items=list(results),
            errors=[f"{r.item_name or r.inventory_stock_id}: {r.error}" for r in failed],
        )
        logger.info(f"Delivery processed: {summary.processed}/{summary.total_items} item(s), {summary.failed} failed")
        return summary

    async def _process_item(self, item: BulkDeliveryItem, store_id: Optional[UUID]) -> DeliveryItemResult:
        item_name = None
        try:
            async def attempt():
                stock = await self._load_stock(item, store_id)
                breakdown = compute_breakdown(
                    item.bulk_quantity,
                    self.resolve_ratio(item, stock),
                    item.unit_cost,
                    self.multiplier_for(stock.item),
                )
                whole = math.floor(breakdown.serving_quantity)
                fraction = round(breakdown.serving_quantity - whole, 6)
                await self.store.compare_and_set_stock(
                    stock.id,
                    stock.version,
                    {
                        "bulk_quantity": item.bulk_quantity,
                        "bulk_unit": item.bulk_unit,
                        "serving_quantity": breakdown.serving_quantity,
                        "serving_unit": normalize_unit(item.serving_unit),
                        "breakdown_ratio": breakdown.breakdown_ratio,
                        "cost_per_serving": breakdown.cost_per_serving,
                        "cost": item.unit_cost,
                        "stock_quantity": whole,
                        "fractional_stock": fraction,
                    },
                )
                return stock, breakdown, whole, fraction

            stock, breakdown, whole, fraction = await self.retry_policy.run(
                attempt, label=f"delivery {item.inventory_stock_id}"
            )
            item_name = stock.item
            new_total = round(whole + fraction, 6)
            movement = await self.retry_policy.run(
                lambda: self.store.insert_movement(
                    {
                        "store_id": stock.store_id,
                        "inventory_stock_id": stock.id,
                        "movement_type": "delivery",
                        "quantity_change": round(new_total - stock.total_quantity, 6),
                        "previous_quantity": stock.total_quantity,
                        "new_quantity": new_total,
                        "reference_type": "delivery",
                        "reference_id": item.reference_id,
                        "notes": (
                            f"{item.bulk_quantity:g} {item.bulk_unit} -> {breakdown.serving_quantity:g} "
                            f"{normalize_unit(item.serving_unit)}"
                        ),
                    }
                ),
                label=f"delivery movement {stock.id}",
            )
        except InventoryError as e:
            logger.warning(f"Delivery item {item.inventory_stock_id} failed: {e}")
            return DeliveryItemResult(
                inventory_stock_id=item.inventory_stock_id, item_name=item_name, success=False, error=str(e)
            )
        except Exception as e:
            logger.exception(f"Unexpected failure processing delivery item {item.inventory_stock_id}")
            err = ValidationSystemError(f"Delivery processing failed: {e}")
            return DeliveryItemResult(
                inventory_stock_id=item.inventory_stock_id, item_name=item_name, success=False, error=str(err)
            )

        return DeliveryItemResult(
            inventory_stock_id=stock.id,
            item_name=stock.item,
            success=True,
            breakdown=breakdown,
            previous_quantity=stock.total_quantity,
            stock_quantity=whole,
            fractional_stock=fraction,
            movement_id=movement.id,
        )
