import asyncio
import logging
from collections import OrderedDict
from typing import Iterable, List, Optional
from uuid import UUID

from core.config import settings
from core.errors import InventoryError, MappingNotFound, ValidationSystemError
from schemas.inventory import (
    AvailabilityRequest,
    AvailabilityResult,
    DeductionLine,
    ErrorInfo,
    ResolvedMapping,
    ValidationResult,
)
from services.conversion_mappings import ConversionMappingResolver

logger = logging.getLogger(__name__)

EPSILON = 1e-9


def aggregate_lines(lines: Iterable[DeductionLine]) -> List[DeductionLine]:
    """
    Collapse duplicate (name, unit) lines into one line per ingredient, summing the
    required quantity. First-seen spelling and order are kept.
    """
    merged: "OrderedDict[str, DeductionLine]" = OrderedDict()
    for line in lines:
        prev = merged.get(line.key)
        if prev is None:
            merged[line.key] = DeductionLine(
                ingredient_name=line.ingredient_name,
                ingredient_unit=line.ingredient_unit,
                quantity=line.required_quantity,
            )
        else:
            merged[line.key] = prev.model_copy(update={"quantity": prev.quantity + line.required_quantity})
    return list(merged.values())


def _error_info(exc: InventoryError) -> ErrorInfo:
    return ErrorInfo(code=exc.code, message=exc.message, hint=exc.hint)


class AvailabilityChecker:
    def __init__(self, resolver: ConversionMappingResolver):
        self.resolver = resolver

    @staticmethod
    def evaluate(
        resolved: ResolvedMapping, ingredient_name: str, ingredient_unit: str, required_qty: float
    ) -> AvailabilityResult:
        """Pure availability arithmetic in recipe units for an already resolved mapping."""
        stock = resolved.stock
        factor = resolved.conversion_factor
        available = stock.total_quantity * factor
        required_units = required_qty / factor
        return AvailabilityResult(
            ingredient_name=ingredient_name,
            ingredient_unit=ingredient_unit,
            required_quantity=required_qty,
            available_quantity=available,
            is_sufficient=available + EPSILON >= required_qty,
            inventory_stock_id=stock.id,
            inventory_item=stock.item,
            conversion_factor=factor,
            remaining_inventory_units=round(stock.total_quantity - required_units, 6),
            minimum_threshold=stock.minimum_threshold,
        )

    async def check_availability(
        self, store_id: UUID, ingredient_name: str, ingredient_unit: str, required_qty: float
    ) -> AvailabilityResult:
        """Never raises: lookup failures come back as an insufficient result with an error."""
        try:
            resolved = await self.resolver.find_mapping(store_id, ingredient_name, ingredient_unit)
            if resolved is None:
                raise MappingNotFound(store_id, ingredient_name, ingredient_unit)
            return self.evaluate(resolved, ingredient_name, ingredient_unit, required_qty)
        except InventoryError as e:
            error = e
        except Exception as e:
            logger.exception(f"Availability check failed for '{ingredient_name}' in store {store_id}")
            error = ValidationSystemError(f"Availability check failed: {e}")

        return AvailabilityResult(
            ingredient_name=ingredient_name,
            ingredient_unit=ingredient_unit,
            required_quantity=required_qty,
            available_quantity=0.0,
            is_sufficient=False,
            error=_error_info(error),
        )

    async def bulk_check(self, store_id: UUID, items: List[AvailabilityRequest]) -> List[AvailabilityResult]:
        """Checks every entry concurrently; results come back in input order."""
        return list(
            await asyncio.gather(
                *(
                    self.check_availability(store_id, i.ingredient_name, i.ingredient_unit, i.quantity)
                    for i in items
                )
            )
        )

    async def validate_order(self, store_id: UUID, lines: List[DeductionLine]) -> ValidationResult:
        """
        Validate a whole order before it is sold.

        Missing mappings and insufficient stock are blocking errors, each with a
        remediation hint. Stock that would fall to or below its minimum threshold after
        the sale only produces a warning.
        """
        merged = aggregate_lines(lines)
        checks = await self.bulk_check(
            store_id,
            [
                AvailabilityRequest(
                    ingredient_name=l.ingredient_name, ingredient_unit=l.ingredient_unit, quantity=l.quantity
                )
                for l in merged
            ],
        )

        errors: List[ErrorInfo] = []
        warnings: List[str] = []
        for check in checks:
            if check.error is not None:
                errors.append(check.error)
                continue
            if not check.is_sufficient:
                errors.append(
                    ErrorInfo(
                        code="insufficient_stock",
                        message=(
                            f"Insufficient stock for '{check.ingredient_name}': need "
                            f"{check.required_quantity:g} {check.ingredient_unit}, have "
                            f"{check.available_quantity:g} {check.ingredient_unit}"
                        ),
                        hint="restock the item or remove it from the order",
                    )
                )
                continue
            threshold = self._threshold(check.minimum_threshold)
            if check.remaining_inventory_units is not None and check.remaining_inventory_units <= threshold:
                warnings.append(
                    f"Low stock: '{check.inventory_item}' will have {check.remaining_inventory_units:g} left "
                    f"(minimum {threshold:g})"
                )

        result = ValidationResult(is_valid=not errors, errors=errors, warnings=warnings, checks=checks)
        if errors:
            logger.info(f"Order validation failed for store {store_id}: {errors[0].message}")
        return result

    @staticmethod
    def _threshold(value: Optional[float]) -> float:
        return settings.default_minimum_threshold if value is None else value
