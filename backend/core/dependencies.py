from fastapi import Depends, HTTPException, status
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.errors import (
    InsufficientStock,
    InventoryError,
    MappingConflict,
    MappingNotFound,
    NotFound,
    RemoteIOError,
    VersionConflict,
)
from db.database import get_session_maker
from services.availability import AvailabilityChecker
from services.bulk_breakdown import BulkBreakdownProcessor
from services.conversion_mappings import ConversionMappingResolver
from services.deduction import DeductionExecutor
from services.deployment import RecipeDeploymentMapper
from services.health import HealthMonitor
from services.inventory_store import InventoryStore

_STATUS_BY_ERROR = (
    ((NotFound, MappingNotFound), status.HTTP_404_NOT_FOUND),
    ((MappingConflict, InsufficientStock, VersionConflict), status.HTTP_409_CONFLICT),
    ((RemoteIOError,), status.HTTP_503_SERVICE_UNAVAILABLE),
)


def http_error(exc: InventoryError) -> HTTPException:
    for types, code in _STATUS_BY_ERROR:
        if isinstance(exc, types):
            return HTTPException(status_code=code, detail=exc.to_dict())
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=exc.to_dict())


def get_inventory_store(session_maker: async_sessionmaker = Depends(get_session_maker)) -> InventoryStore:
    return InventoryStore(session_maker)


def get_resolver(store: InventoryStore = Depends(get_inventory_store)) -> ConversionMappingResolver:
    return ConversionMappingResolver(store)


def get_availability_checker(
    resolver: ConversionMappingResolver = Depends(get_resolver),
) -> AvailabilityChecker:
    return AvailabilityChecker(resolver)


def get_deduction_executor(
    store: InventoryStore = Depends(get_inventory_store),
    resolver: ConversionMappingResolver = Depends(get_resolver),
) -> DeductionExecutor:
    return DeductionExecutor(store, resolver=resolver)


def get_breakdown_processor(store: InventoryStore = Depends(get_inventory_store)) -> BulkBreakdownProcessor:
    return BulkBreakdownProcessor(store)


def get_deployment_mapper(
    store: InventoryStore = Depends(get_inventory_store),
    resolver: ConversionMappingResolver = Depends(get_resolver),
) -> RecipeDeploymentMapper:
    return RecipeDeploymentMapper(store, resolver=resolver)


def get_health_monitor(store: InventoryStore = Depends(get_inventory_store)) -> HealthMonitor:
    return HealthMonitor(store)
