from uuid import UUID

from fastapi import APIRouter, Depends

from core.dependencies import get_health_monitor, http_error
from core.errors import InventoryError
from schemas.health import DeductionMetrics, InventoryHealth
from services.health import HealthMonitor

router = APIRouter()


@router.get("/{store_id}", response_model=InventoryHealth)
async def inventory_health(store_id: UUID, monitor: HealthMonitor = Depends(get_health_monitor)):
    return await monitor.run_health_check(store_id)


@router.get("/{store_id}/metrics", response_model=DeductionMetrics)
async def deduction_metrics(store_id: UUID, monitor: HealthMonitor = Depends(get_health_monitor)):
    try:
        return await monitor.get_deduction_metrics(store_id)
    except InventoryError as e:
        raise http_error(e)
