"""Import every mapped model so Base.metadata knows all tables."""

from db.store import Store  # noqa: F401
from db.product import Product, ProductCatalog  # noqa: F401
from db.recipe_template import RecipeTemplate, RecipeTemplateIngredient  # noqa: F401
from db.recipe import Recipe, RecipeIngredient, RecipeIngredientMapping  # noqa: F401
from db.inventory.stock import InventoryStock  # noqa: F401
from db.inventory.conversion_mapping import ConversionMapping  # noqa: F401
from db.inventory.movement import InventoryMovement  # noqa: F401
from db.inventory.idempotency import DeductionIdempotency  # noqa: F401
from db.inventory.compensation import CompensationLog  # noqa: F401
