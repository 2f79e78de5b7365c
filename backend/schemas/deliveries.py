from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


class BulkDescription(BaseModel):
    bulk_quantity: float
    bulk_unit: str
    breakdown_count: int
    serving_unit: str


class Breakdown(BaseModel):
    serving_quantity: float
    cost_per_serving: float
    breakdown_ratio: float
    multiplier: float = 1.0


class ParseRequest(BaseModel):
    description: str


class BulkDeliveryItem(BaseModel):
    inventory_stock_id: UUID
    bulk_quantity: float = Field(ge=0)
    bulk_unit: str
    serving_unit: str
    breakdown_ratio: Optional[float] = None
    unit_cost: float = Field(default=0, ge=0)
    # e.g. "1 box/70pcs Croissant"; used when breakdown_ratio is not given
    bulk_description: Optional[str] = None
    reference_id: Optional[str] = None

    @field_validator("breakdown_ratio")
    @classmethod
    def _ratio_positive(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v <= 0:
            raise ValueError("breakdown_ratio must be > 0")
        return v


class DeliveryRequest(BaseModel):
    store_id: Optional[UUID] = None
    items: List[BulkDeliveryItem] = Field(min_length=1)


class DeliveryItemResult(BaseModel):
    inventory_stock_id: UUID
    item_name: Optional[str] = None
    success: bool
    breakdown: Optional[Breakdown] = None
    previous_quantity: Optional[float] = None
    stock_quantity: Optional[int] = None
    fractional_stock: Optional[float] = None
    movement_id: Optional[UUID] = None
    error: Optional[str] = None


class DeliverySummary(BaseModel):
    total_items: int
    processed: int
    failed: int
    items: List[DeliveryItemResult] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.failed == 0
