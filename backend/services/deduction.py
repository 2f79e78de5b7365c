"""
Atomic, idempotent ingredient deduction for recipe-based sales.

An order is deducted in three phases:

1. replay: ingredients already recorded for the transaction are answered from the
   idempotency store without touching stock;
2. pre-check: every remaining ingredient is resolved and checked for availability; under
   the ``reject`` policy one insufficient or unmapped ingredient rejects the whole order
   before anything is written;
3. apply: ingredients are deducted concurrently, each through a read / conditional write
   on the stock row's ``version`` retried by the shared ``RetryPolicy``. Once every apply
   has settled, a failure compensates the siblings that did apply.

Every applied deduction writes a ``sale`` movement; every reversal a ``compensation``
movement pointing back at it plus a compensation-log entry.
"""

import asyncio
import logging
import math
from collections import deque
from typing import Deque, Dict, List, Optional, Tuple
from uuid import UUID

from pydantic import ValidationError

from core.config import settings
from core.errors import (
    InsufficientStock,
    InventoryError,
    MappingNotFound,
    NotFound,
    RemoteIOError,
    ValidationSystemError,
)
from core.locks import KeyedLocks
from core.retry import RetryPolicy
from schemas.inventory import (
    CompensationRecord,
    CompensationResult,
    DeductionLine,
    DeductionRequest,
    ErrorInfo,
    IngredientDeductionResult,
    MovementRecord,
    OrderDeductionResult,
    ResolvedMapping,
    ValidationResult,
)
from services.availability import EPSILON, AvailabilityChecker, aggregate_lines
from services.conversion_mappings import ConversionMappingResolver
from services.inventory_store import InventoryStore

logger = logging.getLogger(__name__)


def split_quantity(total: float) -> Tuple[int, float]:
    """Whole units and the sub-unit remainder of a stock total."""
    total = round(max(total, 0.0), 6)
    whole = math.floor(total)
    return whole, round(total - whole, 6)


def _error_info(exc: InventoryError) -> ErrorInfo:
    return ErrorInfo(code=exc.code, message=exc.message, hint=exc.hint)


class DeferredQueue:
    """Orders accepted while the inventory store is known to be offline, in arrival order."""

    def __init__(self):
        self._items: Deque[DeductionRequest] = deque()

    def push(self, request: DeductionRequest) -> None:
        self._items.append(request)

    def push_front(self, request: DeductionRequest) -> None:
        self._items.appendleft(request)

    def pop(self) -> DeductionRequest:
        return self._items.popleft()

    def __len__(self) -> int:
        return len(self._items)


deferred_queue = DeferredQueue()
transaction_locks = KeyedLocks()


class DeductionExecutor:
    def __init__(
        self,
        store: InventoryStore,
        resolver: Optional[ConversionMappingResolver] = None,
        checker: Optional[AvailabilityChecker] = None,
        retry_policy: Optional[RetryPolicy] = None,
        policy: Optional[str] = None,
        offline: Optional[bool] = None,
        deferred: Optional[DeferredQueue] = None,
    ):
        self.store = store
        self.resolver = resolver or ConversionMappingResolver(store)
        self.checker = checker or AvailabilityChecker(self.resolver)
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.policy = (policy or settings.insufficient_stock_policy).lower()
        if self.policy not in ("reject", "clamp"):
            raise ValueError(f"Unknown insufficient stock policy: {self.policy}")
        self.offline = settings.offline_mode if offline is None else offline
        self.deferred = deferred if deferred is not None else deferred_queue

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def validate_order(self, store_id: UUID, lines: List[DeductionLine]) -> ValidationResult:
        if self.offline:
            return ValidationResult(
                is_valid=True,
                deferred=True,
                warnings=["inventory store offline, validation deferred"],
            )
        return await self.checker.validate_order(store_id, lines)

    async def deduct_order(self, request: DeductionRequest, *, allow_defer: bool = True) -> OrderDeductionResult:
        if self.offline and allow_defer:
            self.deferred.push(request)
            logger.warning(
                f"Inventory offline: deferred deduction for transaction {request.transaction_id} "
                f"({len(self.deferred)} queued)"
            )
            return OrderDeductionResult(
                transaction_id=request.transaction_id,
                store_id=request.store_id,
                status="DEFERRED",
                warnings=["inventory store offline, deduction deferred"],
            )

        async with transaction_locks.hold(request.transaction_id):
            result = await self._deduct_order(request)

        logger.info(
            f"Transaction {request.transaction_id} deduction finished: {result.status}"
            + (" (replayed)" if result.replayed else "")
        )
        return result

    async def flush_deferred(self) -> List[OrderDeductionResult]:
        """Replay deferred orders in arrival order. Stops and re-queues on store I/O failure."""
        if self.offline:
            logger.info(f"Still offline; {len(self.deferred)} deferred deduction(s) kept")
            return []

        results: List[OrderDeductionResult] = []
        while len(self.deferred):
            request = self.deferred.pop()
            try:
                results.append(await self.deduct_order(request, allow_defer=False))
            except RemoteIOError:
                self.deferred.push_front(request)
                logger.warning(f"Flush interrupted, {len(self.deferred)} deferred deduction(s) remain")
                raise
        return results

    async def compensate_transaction(
        self, transaction_id: str, reason: str = "transaction voided"
    ) -> CompensationResult:
        """Reverse every not-yet-reversed sale movement of a transaction (void / refund)."""
        async with transaction_locks.hold(transaction_id):
            compensations, errors = await self._compensate_movements(transaction_id, reason)

        if compensations:
            logger.warning(
                f"Compensated {len(compensations)} ingredient deduction(s) of transaction {transaction_id}: {reason}"
            )
        return CompensationResult(
            transaction_id=transaction_id,
            success=not errors,
            items_restored=len(compensations),
            errors=errors,
            compensations=compensations,
        )

    async def list_transaction_movements(self, transaction_id: str) -> List[MovementRecord]:
        return await self.store.list_movements(reference_id=transaction_id)

    # ------------------------------------------------------------------
    # Order flow
    # ------------------------------------------------------------------

    async def _deduct_order(self, request: DeductionRequest) -> OrderDeductionResult:
        txn = request.transaction_id
        lines = aggregate_lines(request.lines)
        logger.info(f"Deducting transaction {txn} for store {request.store_id}: {len(lines)} ingredient(s)")

        cached = await self.retry_policy.run(
            lambda: self.store.get_idempotency_records(txn), label=f"idempotency lookup {txn}"
        )
        replayed: Dict[str, IngredientDeductionResult] = {}
        pending: List[DeductionLine] = []
        for line in lines:
            record = cached.get(line.key)
            if record is None:
                pending.append(line)
            else:
                replayed[line.key] = self._cached_result(record)

        if not pending:
            return await self._replay(request, lines, replayed)

        prechecked = await asyncio.gather(*(self._precheck(request.store_id, line) for line in pending))
        resolved: Dict[str, ResolvedMapping] = {}
        blocked: Dict[str, IngredientDeductionResult] = {}
        warnings: List[str] = []
        for line, (mapping, blocking) in zip(pending, prechecked):
            if blocking is not None:
                blocked[line.key] = blocking
            else:
                resolved[line.key] = mapping

        if blocked:
            results = []
            for line in lines:
                if line.key in replayed:
                    results.append(replayed[line.key])
                elif line.key in blocked:
                    results.append(blocked[line.key])
                else:
                    results.append(self._base_result(line, resolved[line.key], state="SUFFICIENT"))
            errors = [r.error for r in results if r.error is not None]
            logger.info(f"Transaction {txn} rejected before deduction: {errors[0].message}")
            return OrderDeductionResult(
                transaction_id=txn,
                store_id=request.store_id,
                status="REJECTED",
                ingredients=results,
                errors=errors,
                warnings=warnings,
            )

        applied = await asyncio.gather(
            *(self._apply_line(request, line, resolved[line.key]) for line in pending)
        )
        by_key = dict(replayed)
        by_key.update({r.ingredient_key: r for r in applied})
        results = [by_key[line.key] for line in lines]
        for r in results:
            warnings.extend(r.warnings)

        failed = [r for r in results if r.state == "FAILED"]
        if not failed:
            return OrderDeductionResult(
                transaction_id=txn,
                store_id=request.store_id,
                status="ALL_APPLIED",
                ingredients=results,
                warnings=warnings,
            )

        # Every sibling apply has settled; undo whatever did land.
        reason = f"ingredient '{failed[0].ingredient_name}' failed: {failed[0].error.code if failed[0].error else 'error'}"
        compensations, comp_errors = await self._compensate_movements(txn, reason)
        if compensations:
            logger.warning(f"Rolled back {len(compensations)} ingredient deduction(s) of transaction {txn}: {reason}")
        results = self._mark_compensated(results, compensations)
        errors = [r.error for r in failed if r.error is not None]
        errors.extend(
            ErrorInfo(code="compensation_failed", message=msg, hint="reconcile the stock item manually")
            for msg in comp_errors
        )
        return OrderDeductionResult(
            transaction_id=txn,
            store_id=request.store_id,
            status="ROLLED_BACK",
            ingredients=results,
            errors=errors,
            warnings=warnings,
            compensations=compensations,
        )

    async def _replay(
        self, request: DeductionRequest, lines: List[DeductionLine], replayed: Dict[str, IngredientDeductionResult]
    ) -> OrderDeductionResult:
        results = [replayed[line.key] for line in lines]
        compensations = await self.store.list_compensations(transaction_id=request.transaction_id)
        results = self._mark_compensated(results, compensations)
        all_applied = all(r.state == "APPLIED" for r in results) and not compensations
        logger.info(f"Transaction {request.transaction_id} already processed, replaying recorded outcome")
        return OrderDeductionResult(
            transaction_id=request.transaction_id,
            store_id=request.store_id,
            status="ALL_APPLIED" if all_applied else "ROLLED_BACK",
            ingredients=results,
            errors=[r.error for r in results if r.error is not None],
            warnings=[w for r in results for w in r.warnings],
            compensations=compensations,
            replayed=True,
        )

    @staticmethod
    def _cached_result(record: dict) -> IngredientDeductionResult:
        try:
            result = IngredientDeductionResult.model_validate(record["result"])
        except ValidationError as e:
            raise ValidationSystemError(f"Unreadable idempotency record: {e.error_count()} error(s)") from e
        return result.model_copy(update={"replayed": True})

    @staticmethod
    def _mark_compensated(
        results: List[IngredientDeductionResult], compensations: List[CompensationRecord]
    ) -> List[IngredientDeductionResult]:
        reversed_movements = {c.movement_id for c in compensations}
        return [
            r.model_copy(update={"state": "COMPENSATED"})
            if r.state == "APPLIED" and r.movement_id in reversed_movements
            else r
            for r in results
        ]

    @staticmethod
    def _base_result(line: DeductionLine, resolved: Optional[ResolvedMapping], **fields) -> IngredientDeductionResult:
        values = dict(
            ingredient_name=line.ingredient_name,
            ingredient_unit=line.ingredient_unit,
            ingredient_key=line.key,
            required_recipe_quantity=line.quantity,
        )
        if resolved is not None:
            values.update(
                required_inventory_units=round(line.quantity / resolved.conversion_factor, 6),
                inventory_stock_id=resolved.stock.id,
                inventory_item=resolved.stock.item,
            )
        values.update(fields)
        return IngredientDeductionResult(**values)

    async def _precheck(
        self, store_id: UUID, line: DeductionLine
    ) -> Tuple[Optional[ResolvedMapping], Optional[IngredientDeductionResult]]:
        """(mapping, blocking failure) for one ingredient. Never writes."""
        try:
            resolved = await self.retry_policy.run(
                lambda: self.resolver.find_mapping(store_id, line.ingredient_name, line.ingredient_unit),
                label=f"resolve {line.key}",
            )
            if resolved is None:
                raise MappingNotFound(store_id, line.ingredient_name, line.ingredient_unit)
        except InventoryError as e:
            return None, self._base_result(line, None, state="FAILED", error=_error_info(e))
        except Exception as e:
            logger.exception(f"Unexpected failure resolving '{line.ingredient_name}' in store {store_id}")
            err = ValidationSystemError(f"Mapping lookup failed: {e}")
            return None, self._base_result(line, None, state="FAILED", error=_error_info(err))

        check = AvailabilityChecker.evaluate(resolved, line.ingredient_name, line.ingredient_unit, line.quantity)
        # clamp deducts down to zero at apply time and reports the shortfall there
        if check.is_sufficient or self.policy == "clamp":
            return resolved, None

        stock = resolved.stock
        required_units = round(line.quantity / resolved.conversion_factor, 6)
        exc = InsufficientStock(stock.item, stock.total_quantity, required_units, stock.unit)
        return None, self._base_result(line, resolved, state="FAILED", error=_error_info(exc))

    # ------------------------------------------------------------------
    # Single ingredient apply
    # ------------------------------------------------------------------

    async def _apply_line(
        self, request: DeductionRequest, line: DeductionLine, resolved: ResolvedMapping
    ) -> IngredientDeductionResult:
        txn = request.transaction_id
        stock_id = resolved.stock.id
        required_units = round(line.quantity / resolved.conversion_factor, 6)
        attempts = 0

        async def attempt():
            nonlocal attempts
            attempts += 1
            stock = await self.store.get_stock(stock_id)
            if stock is None or not stock.is_active or stock.store_id != request.store_id:
                raise MappingNotFound(request.store_id, line.ingredient_name, line.ingredient_unit)

            current = stock.total_quantity
            deduct = required_units
            notes: List[str] = []
            if current + EPSILON < required_units:
                if self.policy != "clamp":
                    raise InsufficientStock(stock.item, current, required_units, stock.unit)
                deduct = max(current, 0.0)
                notes.append(
                    f"Clamped '{stock.item}': needed {required_units:g} {stock.unit}, deducted {deduct:g}"
                )

            new_total = max(round(current - deduct, 6), 0.0)
            whole, fraction = split_quantity(new_total)
            await self.store.compare_and_set_stock(
                stock.id, stock.version, {"stock_quantity": whole, "fractional_stock": fraction}
            )
            return current, new_total, notes

        try:
            previous, new_total, notes = await self.retry_policy.run(attempt, label=f"deduct {line.key} ({txn})")
        except InventoryError as e:
            logger.info(f"Transaction {txn}: '{line.ingredient_name}' not deducted after {attempts} attempt(s): {e}")
            return await self._record_failure(request, line, resolved, e, attempts)
        except Exception as e:
            logger.exception(f"Transaction {txn}: unexpected failure deducting '{line.ingredient_name}'")
            return await self._record_failure(
                request, line, resolved, ValidationSystemError(f"Deduction failed: {e}"), attempts
            )

        change = round(new_total - previous, 6)
        try:
            movement = await self.retry_policy.run(
                lambda: self.store.insert_movement(
                    {
                        "store_id": request.store_id,
                        "inventory_stock_id": stock_id,
                        "movement_type": "sale",
                        "quantity_change": change,
                        "previous_quantity": previous,
                        "new_quantity": new_total,
                        "reference_type": request.reference_type,
                        "reference_id": txn,
                        "ingredient_key": line.key,
                        "notes": f"{line.ingredient_name} {line.quantity:g} {line.ingredient_unit}",
                    }
                ),
                label=f"sale movement {line.key} ({txn})",
            )
        except InventoryError as e:
            # Ledger write failed after the stock moved: put the quantity back untracked.
            logger.error(f"Transaction {txn}: movement write failed for '{line.ingredient_name}', restoring stock")
            try:
                await self._add_stock(stock_id, -change)
            except Exception:
                logger.exception(f"Transaction {txn}: could not restore stock {stock_id} by {-change:g}")
            return await self._record_failure(request, line, resolved, e, attempts)

        result = self._base_result(
            line,
            resolved,
            state="APPLIED",
            deducted_inventory_units=-change,
            previous_quantity=previous,
            new_quantity=new_total,
            movement_id=movement.id,
            attempts=attempts,
            warnings=notes,
        )
        try:
            recorded = await self._record_outcome(request, result, stock_id)
        except RemoteIOError as e:
            # An applied line without a record would be deducted again on replay
            logger.error(
                f"Transaction {txn}: could not record outcome of {line.key}, reversing movement {movement.id}"
            )
            try:
                await self._reverse_movement(movement, "outcome not recorded", log_compensation=False)
            except Exception:
                logger.exception(f"Transaction {txn}: could not reverse movement {movement.id}")
            return self._base_result(line, resolved, state="FAILED", error=_error_info(e), attempts=attempts)
        if not recorded:
            return await self._undo_duplicate(request, line, movement)
        return result

    async def _record_failure(
        self,
        request: DeductionRequest,
        line: DeductionLine,
        resolved: ResolvedMapping,
        exc: InventoryError,
        attempts: int,
    ) -> IngredientDeductionResult:
        result = self._base_result(line, resolved, state="FAILED", error=_error_info(exc), attempts=attempts)
        try:
            await self._record_outcome(request, result, resolved.stock.id)
        except RemoteIOError:
            logger.error(f"Could not record failure of {line.key} for transaction {request.transaction_id}")
        return result

    async def _record_outcome(
        self, request: DeductionRequest, result: IngredientDeductionResult, stock_id: Optional[UUID]
    ) -> bool:
        """Persist the outcome once; False means another worker already recorded this ingredient."""
        return await self.retry_policy.run(
            lambda: self.store.insert_idempotency_record(
                transaction_id=request.transaction_id,
                ingredient_key=result.ingredient_key,
                store_id=request.store_id,
                inventory_stock_id=stock_id,
                status="applied" if result.state == "APPLIED" else "failed",
                result=result.model_dump(mode="json"),
            ),
            label=f"idempotency record {result.ingredient_key} ({request.transaction_id})",
        )

    async def _undo_duplicate(
        self, request: DeductionRequest, line: DeductionLine, movement: MovementRecord
    ) -> IngredientDeductionResult:
        """Another worker recorded this (transaction, ingredient) first: reverse our copy, return theirs."""
        logger.warning(
            f"Duplicate deduction of {line.key} for transaction {request.transaction_id}, reversing movement {movement.id}"
        )
        await self._reverse_movement(movement, "duplicate submission", log_compensation=False)
        records = await self.store.get_idempotency_records(request.transaction_id)
        return self._cached_result(records[line.key])

    # ------------------------------------------------------------------
    # Compensation
    # ------------------------------------------------------------------

    async def _add_stock(self, stock_id: UUID, amount: float) -> Tuple[float, float]:
        async def attempt():
            stock = await self.store.get_stock(stock_id)
            if stock is None:
                raise NotFound(f"Inventory stock {stock_id} not found")
            previous = stock.total_quantity
            new_total = round(previous + amount, 6)
            whole, fraction = split_quantity(new_total)
            await self.store.compare_and_set_stock(
                stock.id, stock.version, {"stock_quantity": whole, "fractional_stock": fraction}
            )
            return previous, new_total

        return await self.retry_policy.run(attempt, label=f"restore stock {stock_id}")

    async def _reverse_movement(
        self, movement: MovementRecord, reason: str, log_compensation: bool = True
    ) -> Optional[CompensationRecord]:
        restored = -movement.quantity_change
        previous, new_total = await self._add_stock(movement.inventory_stock_id, restored)
        reversal = await self.retry_policy.run(
            lambda: self.store.insert_movement(
                {
                    "store_id": movement.store_id,
                    "inventory_stock_id": movement.inventory_stock_id,
                    "movement_type": "compensation",
                    "quantity_change": round(new_total - previous, 6),
                    "previous_quantity": previous,
                    "new_quantity": new_total,
                    "reference_type": movement.reference_type,
                    "reference_id": movement.reference_id,
                    "ingredient_key": movement.ingredient_key,
                    "reversal_of_id": movement.id,
                    "notes": reason,
                }
            ),
            label=f"compensation movement {movement.id}",
        )
        if not log_compensation:
            return None
        return await self.retry_policy.run(
            lambda: self.store.insert_compensation(
                {
                    "transaction_id": movement.reference_id,
                    "store_id": movement.store_id,
                    "inventory_stock_id": movement.inventory_stock_id,
                    "movement_id": movement.id,
                    "reversal_movement_id": reversal.id,
                    "original_quantity": previous,
                    "restored_quantity": restored,
                    "new_quantity": new_total,
                    "reason": reason,
                }
            ),
            label=f"compensation log {movement.id}",
        )

    async def _compensate_movements(
        self, transaction_id: str, reason: str
    ) -> Tuple[List[CompensationRecord], List[str]]:
        movements = await self.store.list_unreversed_sales(transaction_id)
        outcomes = await asyncio.gather(
            *(self._reverse_movement(m, reason) for m in movements), return_exceptions=True
        )
        compensations: List[CompensationRecord] = []
        errors: List[str] = []
        for movement, outcome in zip(movements, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Compensation of movement {movement.id} ({movement.ingredient_key}) failed: {outcome!r}")
                errors.append(f"{movement.ingredient_key}: {outcome}")
            else:
                compensations.append(outcome)
        return compensations, errors
