from datetime import datetime
from typing import List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

from core.matching import normalize_name


InsufficientStockPolicy = Literal["reject", "clamp"]
# SUFFICIENT: checked but not applied because a sibling blocked the order
IngredientState = Literal["SUFFICIENT", "APPLIED", "FAILED", "COMPENSATED"]
# REJECTED: pre-check failed, nothing mutated. ROLLED_BACK: an apply failed and siblings were compensated.
OrderStatus = Literal["ALL_APPLIED", "ROLLED_BACK", "REJECTED", "DEFERRED"]
MovementType = Literal["sale", "compensation", "delivery"]


def ingredient_key(name: str, unit: str) -> str:
    """Identity of a recipe ingredient inside one transaction."""
    return f"{normalize_name(name)}|{normalize_name(unit)}"


class ErrorInfo(BaseModel):
    code: str
    message: str
    hint: Optional[str] = None


# ---------------------------------------------------------------------------
# Records read from the inventory store
# ---------------------------------------------------------------------------

class StockRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    store_id: UUID
    item: str
    unit: str
    stock_quantity: int
    fractional_stock: float = 0.0
    bulk_quantity: Optional[float] = None
    bulk_unit: Optional[str] = None
    serving_quantity: Optional[float] = None
    serving_unit: Optional[str] = None
    breakdown_ratio: Optional[float] = None
    cost_per_serving: Optional[float] = None
    cost: Optional[float] = None
    minimum_threshold: Optional[float] = None
    version: int
    is_active: bool = True

    @field_validator("fractional_stock", mode="before")
    @classmethod
    def _none_is_zero(cls, v):
        return 0.0 if v is None else v

    @property
    def total_quantity(self) -> float:
        return float(self.stock_quantity) + float(self.fractional_stock)


class MappingRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    inventory_stock_id: UUID
    recipe_ingredient_name: str
    recipe_ingredient_unit: str
    conversion_factor: float = Field(gt=0)
    notes: Optional[str] = None
    is_active: bool = True


class ResolvedMapping(BaseModel):
    """A conversion mapping joined with the stock record it points at."""

    mapping: MappingRecord
    stock: StockRecord

    @property
    def conversion_factor(self) -> float:
        return self.mapping.conversion_factor


class MovementRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    store_id: UUID
    inventory_stock_id: UUID
    movement_type: str
    quantity_change: float
    previous_quantity: float
    new_quantity: float
    reference_type: Optional[str] = None
    reference_id: Optional[str] = None
    ingredient_key: Optional[str] = None
    reversal_of_id: Optional[UUID] = None
    notes: Optional[str] = None
    created_at: datetime


class CompensationRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    transaction_id: str
    store_id: UUID
    inventory_stock_id: UUID
    movement_id: Optional[UUID] = None
    reversal_movement_id: Optional[UUID] = None
    original_quantity: float
    restored_quantity: float
    new_quantity: float
    reason: Optional[str] = None
    compensated_at: datetime


# ---------------------------------------------------------------------------
# Conversion mapping management
# ---------------------------------------------------------------------------

class ConversionMappingCreate(BaseModel):
    inventory_stock_id: UUID
    recipe_ingredient_name: str
    recipe_ingredient_unit: str
    conversion_factor: float = 1.0
    notes: Optional[str] = None

    @field_validator("recipe_ingredient_name", "recipe_ingredient_unit")
    @classmethod
    def _strip_required(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("field is required")
        return v

    @field_validator("conversion_factor")
    @classmethod
    def _factor_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("conversion_factor must be > 0")
        return v


class ConversionMappingUpdate(BaseModel):
    inventory_stock_id: Optional[UUID] = None
    recipe_ingredient_name: Optional[str] = None
    recipe_ingredient_unit: Optional[str] = None
    conversion_factor: Optional[float] = None
    notes: Optional[str] = None
    is_active: Optional[bool] = None

    @field_validator("recipe_ingredient_name", "recipe_ingredient_unit")
    @classmethod
    def _strip_optional(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        if not v:
            raise ValueError("cannot be empty")
        return v

    @field_validator("conversion_factor")
    @classmethod
    def _factor_positive_optional(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v <= 0:
            raise ValueError("conversion_factor must be > 0")
        return v


class ConversionMappingOut(MappingRecord):
    store_id: UUID
    inventory_item: str
    inventory_unit: str


# ---------------------------------------------------------------------------
# Availability & validation
# ---------------------------------------------------------------------------

class AvailabilityRequest(BaseModel):
    ingredient_name: str
    ingredient_unit: str
    quantity: float = Field(ge=0)


class AvailabilityResult(BaseModel):
    ingredient_name: str
    ingredient_unit: str
    required_quantity: float
    available_quantity: float = 0.0
    is_sufficient: bool = False
    inventory_stock_id: Optional[UUID] = None
    inventory_item: Optional[str] = None
    conversion_factor: Optional[float] = None
    # Inventory units left on the stock record after the requested quantity is taken
    remaining_inventory_units: Optional[float] = None
    minimum_threshold: Optional[float] = None
    error: Optional[ErrorInfo] = None


class BulkAvailabilityRequest(BaseModel):
    store_id: UUID
    items: List[AvailabilityRequest]


class ValidationResult(BaseModel):
    is_valid: bool
    errors: List[ErrorInfo] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    checks: List[AvailabilityResult] = Field(default_factory=list)
    deferred: bool = False


# ---------------------------------------------------------------------------
# Deduction
# ---------------------------------------------------------------------------

class DeductionLine(BaseModel):
    ingredient_name: str
    ingredient_unit: str
    quantity: float = Field(gt=0)
    order_multiplier: float = Field(default=1.0, gt=0)

    @field_validator("ingredient_name", "ingredient_unit")
    @classmethod
    def _strip_required(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("field is required")
        return v

    @property
    def required_quantity(self) -> float:
        return self.quantity * self.order_multiplier

    @property
    def key(self) -> str:
        return ingredient_key(self.ingredient_name, self.ingredient_unit)


class DeductionRequest(BaseModel):
    store_id: UUID
    transaction_id: str
    lines: List[DeductionLine] = Field(min_length=1)
    reference_type: str = "transaction"
    user_id: Optional[UUID] = None

    @field_validator("transaction_id")
    @classmethod
    def _strip_txn(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("transaction_id is required")
        return v


class IngredientDeductionResult(BaseModel):
    ingredient_name: str
    ingredient_unit: str
    ingredient_key: str
    state: IngredientState
    required_recipe_quantity: float
    required_inventory_units: Optional[float] = None
    deducted_inventory_units: float = 0.0
    inventory_stock_id: Optional[UUID] = None
    inventory_item: Optional[str] = None
    previous_quantity: Optional[float] = None
    new_quantity: Optional[float] = None
    movement_id: Optional[UUID] = None
    attempts: int = 0
    replayed: bool = False
    error: Optional[ErrorInfo] = None
    warnings: List[str] = Field(default_factory=list)

    @property
    def applied(self) -> bool:
        return self.state == "APPLIED"


class OrderDeductionResult(BaseModel):
    transaction_id: str
    store_id: UUID
    status: OrderStatus
    ingredients: List[IngredientDeductionResult] = Field(default_factory=list)
    errors: List[ErrorInfo] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    compensations: List[CompensationRecord] = Field(default_factory=list)
    replayed: bool = False

    @computed_field
    @property
    def success(self) -> bool:
        return self.status == "ALL_APPLIED"

    @property
    def first_error(self) -> Optional[ErrorInfo]:
        return self.errors[0] if self.errors else None


class CompensationResult(BaseModel):
    transaction_id: str
    success: bool
    items_restored: int = 0
    errors: List[str] = Field(default_factory=list)
    compensations: List[CompensationRecord] = Field(default_factory=list)


class OrderValidationRequest(BaseModel):
    store_id: UUID
    lines: List[DeductionLine] = Field(min_length=1)
