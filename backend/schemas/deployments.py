from typing import List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

AvailabilityStatus = Literal["available", "low_stock", "out_of_stock"]
MatchType = Literal["exact", "substring"]


class IngredientMapping(BaseModel):
    """One template ingredient matched (or not) against the store's inventory."""

    template_ingredient_id: UUID
    ingredient_name: str
    quantity: float
    unit: str
    inventory_stock_id: Optional[UUID] = None
    inventory_item: Optional[str] = None
    inventory_unit: Optional[str] = None
    match_type: Optional[MatchType] = None
    current_stock: float = 0.0
    minimum_threshold: Optional[float] = None
    unit_cost: float = 0.0
    availability_status: Optional[AvailabilityStatus] = None

    @property
    def is_mapped(self) -> bool:
        return self.inventory_stock_id is not None


class RecipeInventoryMapping(BaseModel):
    template_id: UUID
    template_name: str
    store_id: UUID
    ingredients: List[IngredientMapping] = Field(default_factory=list)
    missing_ingredients: List[str] = Field(default_factory=list)


class DeploymentValidation(BaseModel):
    template_id: UUID
    store_id: UUID
    is_deployable: bool
    missing_ingredients: List[str] = Field(default_factory=list)
    out_of_stock_ingredients: List[str] = Field(default_factory=list)
    low_stock_ingredients: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    already_deployed: bool = False


class DeploymentPreview(BaseModel):
    mapping: RecipeInventoryMapping
    validation: DeploymentValidation
    total_cost: float
    cost_per_serving: float
    suggested_price: float


class DeploymentRequest(BaseModel):
    template_id: UUID
    store_id: UUID


class BatchDeploymentRequest(BaseModel):
    template_id: UUID
    store_ids: List[UUID] = Field(min_length=1)


class DeploymentResult(BaseModel):
    template_id: UUID
    store_id: UUID
    success: bool
    product_id: Optional[UUID] = None
    catalog_id: Optional[UUID] = None
    recipe_id: Optional[UUID] = None
    sku: Optional[str] = None
    total_cost: float = 0.0
    cost_per_serving: float = 0.0
    suggested_price: float = 0.0
    ingredient_count: int = 0
    created_conversion_mappings: int = 0
    failed_step: Optional[str] = None
    compensated_steps: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Records read from the store
# ---------------------------------------------------------------------------

class TemplateIngredientRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    ingredient_name: str
    quantity: float
    unit: str
    cost_per_unit: Optional[float] = None
    sort_order: int = 0


class TemplateRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    description: Optional[str] = None
    instructions: Optional[str] = None
    category_name: Optional[str] = None
    yield_quantity: float = 1
    serving_size: float = 1
    is_active: bool = True
    ingredients: List[TemplateIngredientRecord] = Field(default_factory=list)


class ProductRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    store_id: UUID
    name: str
    sku: str
    price: float
    cost: float
    is_active: bool = True


class CatalogRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    store_id: UUID
    product_id: Optional[UUID] = None
    recipe_id: Optional[UUID] = None
    product_name: str
    price: float
    is_available: bool = True


class RecipeRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    store_id: UUID
    template_id: Optional[UUID] = None
    product_id: Optional[UUID] = None
    name: str
    serving_size: float = 1
    total_cost: float = 0
    cost_per_serving: float = 0
    is_active: bool = True
