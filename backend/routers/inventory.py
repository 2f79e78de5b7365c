from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from core.dependencies import (
    get_availability_checker,
    get_deduction_executor,
    get_resolver,
    http_error,
)
from core.errors import InventoryError
from schemas.inventory import (
    AvailabilityResult,
    BulkAvailabilityRequest,
    CompensationResult,
    ConversionMappingCreate,
    ConversionMappingOut,
    ConversionMappingUpdate,
    DeductionRequest,
    MovementRecord,
    OrderDeductionResult,
    OrderValidationRequest,
    ValidationResult,
)
from services.availability import AvailabilityChecker
from services.conversion_mappings import ConversionMappingResolver, mapping_out
from services.deduction import DeductionExecutor

router = APIRouter()


@router.post("/availability", response_model=List[AvailabilityResult])
async def check_availability(
    payload: BulkAvailabilityRequest,
    checker: AvailabilityChecker = Depends(get_availability_checker),
):
    return await checker.bulk_check(payload.store_id, payload.items)


@router.post("/validate", response_model=ValidationResult)
async def validate_order(
    payload: OrderValidationRequest,
    executor: DeductionExecutor = Depends(get_deduction_executor),
):
    return await executor.validate_order(payload.store_id, payload.lines)


@router.post("/deductions", response_model=OrderDeductionResult)
async def deduct_order(
    payload: DeductionRequest,
    executor: DeductionExecutor = Depends(get_deduction_executor),
):
    try:
        return await executor.deduct_order(payload)
    except InventoryError as e:
        raise http_error(e)


@router.post("/deductions/flush", response_model=List[OrderDeductionResult])
async def flush_deferred(executor: DeductionExecutor = Depends(get_deduction_executor)):
    try:
        return await executor.flush_deferred()
    except InventoryError as e:
        raise http_error(e)


@router.post("/transactions/{transaction_id}/void", response_model=CompensationResult)
async def void_transaction(
    transaction_id: str,
    executor: DeductionExecutor = Depends(get_deduction_executor),
):
    try:
        return await executor.compensate_transaction(transaction_id)
    except InventoryError as e:
        raise http_error(e)


@router.get("/transactions/{transaction_id}/movements", response_model=List[MovementRecord])
async def list_transaction_movements(
    transaction_id: str,
    executor: DeductionExecutor = Depends(get_deduction_executor),
):
    return await executor.list_transaction_movements(transaction_id)


# ---------------------------------------------------------------------------
# Conversion mappings
# ---------------------------------------------------------------------------

@router.get("/mappings", response_model=List[ConversionMappingOut])
async def list_mappings(
    store_id: UUID,
    include_inactive: bool = Query(False),
    resolver: ConversionMappingResolver = Depends(get_resolver),
):
    return [mapping_out(m) for m in await resolver.list_for_store(store_id, include_inactive=include_inactive)]


@router.get("/mappings/{mapping_id}", response_model=ConversionMappingOut)
async def get_mapping(mapping_id: UUID, resolver: ConversionMappingResolver = Depends(get_resolver)):
    try:
        return mapping_out(await resolver.get(mapping_id))
    except InventoryError as e:
        raise http_error(e)


@router.post("/mappings", response_model=ConversionMappingOut, status_code=status.HTTP_201_CREATED)
async def create_mapping(
    payload: ConversionMappingCreate,
    resolver: ConversionMappingResolver = Depends(get_resolver),
):
    try:
        created = await resolver.create(payload)
        return mapping_out(await resolver.get(created.id))
    except InventoryError as e:
        raise http_error(e)


@router.patch("/mappings/{mapping_id}", response_model=ConversionMappingOut)
async def update_mapping(
    mapping_id: UUID,
    payload: ConversionMappingUpdate,
    resolver: ConversionMappingResolver = Depends(get_resolver),
):
    try:
        await resolver.update(mapping_id, payload)
        return mapping_out(await resolver.get(mapping_id))
    except InventoryError as e:
        raise http_error(e)


@router.delete("/mappings/{mapping_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_mapping(mapping_id: UUID, resolver: ConversionMappingResolver = Depends(get_resolver)):
    try:
        await resolver.delete(mapping_id)
    except InventoryError as e:
        raise http_error(e)
    return None
