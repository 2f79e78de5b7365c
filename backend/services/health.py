"""
Read-only health monitor for the deduction pipeline.

Each check is independent and never raises: a check that cannot run reports itself as
critical. The overall status is the worst individual status.
"""

import asyncio
import logging
from datetime import timedelta
from typing import AsyncIterator, Awaitable, Callable, List, Optional
from uuid import UUID

from core.config import settings
from db.database import utcnow
from schemas.health import (
    DeductionMetrics,
    HealthCheck,
    HealthSummary,
    InventoryHealth,
    WindowMetrics,
    worst_status,
)
from services.inventory_store import InventoryStore

logger = logging.getLogger(__name__)

HEALTHY_SUCCESS_RATE = 0.95
WARNING_SUCCESS_RATE = 0.80


def success_rate_status(rate: float) -> str:
    if rate >= HEALTHY_SUCCESS_RATE:
        return "healthy"
    if rate >= WARNING_SUCCESS_RATE:
        return "warning"
    return "critical"


def _window(outcomes) -> WindowMetrics:
    total = len(outcomes)
    ok = sum(1 for status, _, _ in outcomes if status == "applied")
    return WindowMetrics(
        total_deductions=total,
        successful_deductions=ok,
        failed_deductions=total - ok,
        success_rate=round(ok / total, 4) if total else None,
    )


class HealthMonitor:
    def __init__(self, store: InventoryStore, window_minutes: Optional[int] = None):
        self.store = store
        self.window_minutes = settings.health_success_window_minutes if window_minutes is None else window_minutes

    async def run_health_check(self, store_id: UUID) -> InventoryHealth:
        checks: List[HealthCheck] = list(
            await asyncio.gather(
                self._guard("Version Column", self.check_version_column),
                self._guard("Idempotency Table", self.check_idempotency_table),
                self._guard("Conversion Mappings", lambda: self.check_mapping_scoping(store_id)),
                self._guard("Cross-Store Prevention", lambda: self.check_cross_store(store_id)),
                self._guard("Compensation Log", self.check_compensation_log),
                self._guard("Recent Success Rate", lambda: self.check_success_rate(store_id)),
            )
        )
        overall = worst_status(c.status for c in checks)
        report = InventoryHealth(
            store_id=store_id,
            overall_status=overall,
            checked_at=utcnow(),
            checks=checks,
            summary=HealthSummary(
                total_checks=len(checks),
                healthy=sum(1 for c in checks if c.status == "healthy"),
                warnings=sum(1 for c in checks if c.status == "warning"),
                critical=sum(1 for c in checks if c.status == "critical"),
            ),
        )
        if overall != "healthy":
            logger.warning(f"Inventory health for store {store_id}: {overall}")
        return report

    async def _guard(self, name: str, check: Callable[[], Awaitable[HealthCheck]]) -> HealthCheck:
        try:
            return await check()
        except Exception as e:
            logger.exception(f"Health check '{name}' could not run")
            return HealthCheck(name=name, status="critical", message=f"Check failed: {e}")

    async def check_version_column(self) -> HealthCheck:
        name = "Version Column"
        columns = await self.store.get_columns("inventory_stock")
        if not columns:
            return HealthCheck(name=name, status="critical", message="inventory_stock table not found")
        if "version" not in columns:
            return HealthCheck(
                name=name,
                status="critical",
                message="inventory_stock.version is missing, optimistic locking is disabled",
            )
        column_type = columns["version"]
        if "INT" not in column_type.upper():
            return HealthCheck(
                name=name,
                status="warning",
                message=f"inventory_stock.version has type {column_type}, expected an integer",
                details={"type": column_type},
            )
        return HealthCheck(name=name, status="healthy", message="Version column present", details={"type": column_type})

    async def check_idempotency_table(self) -> HealthCheck:
        count = await self.store.count_idempotency_records()
        return HealthCheck(
            name="Idempotency Table",
            status="healthy",
            message="Idempotency store reachable",
            details={"records": count},
        )

    async def check_mapping_scoping(self, store_id: UUID) -> HealthCheck:
        name = "Conversion Mappings"
        duplicates = await self.store.count_duplicate_active_mappings(store_id)
        total, on_inactive = await self.store.count_active_mappings(store_id)
        details = {"active_mappings": total, "duplicate_keys": duplicates, "inactive_targets": on_inactive}
        if duplicates:
            return HealthCheck(
                name=name,
                status="critical",
                message=f"{duplicates} ingredient(s) have more than one active mapping in this store",
                details=details,
            )
        if on_inactive:
            return HealthCheck(
                name=name,
                status="warning",
                message=f"{on_inactive} active mapping(s) point at deactivated stock",
                details=details,
            )
        if not total:
            return HealthCheck(
                name=name, status="warning", message="No conversion mappings configured for this store", details=details
            )
        return HealthCheck(name=name, status="healthy", message=f"{total} store-scoped mapping(s)", details=details)

    async def check_cross_store(self, store_id: UUID) -> HealthCheck:
        leaked = await self.store.count_cross_store_movements(store_id)
        if leaked:
            return HealthCheck(
                name="Cross-Store Prevention",
                status="critical",
                message=f"{leaked} movement(s) touched stock owned by another store",
                details={"cross_store_movements": leaked},
            )
        return HealthCheck(name="Cross-Store Prevention", status="healthy", message="No cross-store movements")

    async def check_compensation_log(self) -> HealthCheck:
        count = await self.store.count_compensation_log()
        return HealthCheck(
            name="Compensation Log",
            status="healthy",
            message="Compensation log reachable",
            details={"entries": count},
        )

    async def check_success_rate(self, store_id: UUID) -> HealthCheck:
        name = "Recent Success Rate"
        since = utcnow() - timedelta(minutes=self.window_minutes)
        window = _window(await self.store.list_idempotency_outcomes(store_id, since=since))
        details = window.model_dump()
        if not window.total_deductions:
            return HealthCheck(
                name=name, status="healthy", message=f"No deductions in the last {self.window_minutes} min", details=details
            )
        status = success_rate_status(window.success_rate)
        return HealthCheck(
            name=name,
            status=status,
            message=(
                f"{window.success_rate:.0%} of {window.total_deductions} deduction(s) succeeded "
                f"in the last {self.window_minutes} min"
            ),
            details=details,
        )

    async def get_deduction_metrics(self, store_id: UUID) -> DeductionMetrics:
        outcomes = await self.store.list_idempotency_outcomes(store_id)
        since = utcnow() - timedelta(hours=24)
        recent = [o for o in outcomes if o[2] >= since]
        compensations = await self.store.list_compensations(store_id=store_id)
        return DeductionMetrics(
            store_id=store_id,
            all_time=_window(outcomes),
            last_24h=_window(recent),
            retries=sum(max(int(result.get("attempts") or 0) - 1, 0) for _, result, _ in outcomes),
            compensations=len(compensations),
            last_deduction_at=outcomes[-1][2] if outcomes else None,
        )

    async def watch(
        self, store_id: UUID, interval: Optional[float] = None, iterations: Optional[int] = None
    ) -> AsyncIterator[InventoryHealth]:
        """Yield a health report every ``interval`` seconds (forever unless ``iterations`` is set)."""
        interval = settings.health_check_interval_seconds if interval is None else interval
        count = 0
        while iterations is None or count < iterations:
            yield await self.run_health_check(store_id)
            count += 1
            if iterations is not None and count >= iterations:
                break
            await asyncio.sleep(interval)
