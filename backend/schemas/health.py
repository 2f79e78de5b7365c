from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field

HealthStatus = Literal["healthy", "warning", "critical"]

STATUS_SEVERITY = {"healthy": 0, "warning": 1, "critical": 2}


def worst_status(statuses) -> str:
    worst = "healthy"
    for s in statuses:
        if STATUS_SEVERITY[s] > STATUS_SEVERITY[worst]:
            worst = s
    return worst


class HealthCheck(BaseModel):
    name: str
    status: HealthStatus
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class HealthSummary(BaseModel):
    total_checks: int
    healthy: int
    warnings: int
    critical: int


class InventoryHealth(BaseModel):
    store_id: UUID
    overall_status: HealthStatus
    checked_at: datetime
    checks: List[HealthCheck]
    summary: HealthSummary


class WindowMetrics(BaseModel):
    total_deductions: int = 0
    successful_deductions: int = 0
    failed_deductions: int = 0
    success_rate: Optional[float] = None


class DeductionMetrics(BaseModel):
    store_id: UUID
    all_time: WindowMetrics
    last_24h: WindowMetrics
    # Conditional-write retries (version conflicts and transient I/O)
    retries: int = 0
    compensations: int = 0
    last_deduction_at: Optional[datetime] = None
