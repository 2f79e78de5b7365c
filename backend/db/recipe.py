import uuid
from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


class Recipe(Base):
    """A recipe template deployed to one store."""

    __tablename__ = "recipes"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    store_id = Column(Uuid, ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True)
    template_id = Column(Uuid, ForeignKey("recipe_templates.id", ondelete="SET NULL"), nullable=True, index=True)
    product_id = Column(Uuid, ForeignKey("products.id", ondelete="SET NULL"), nullable=True, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    instructions = Column(Text, nullable=True)
    category_name = Column(String, nullable=True)
    yield_quantity = Column(Float, nullable=False, default=1)
    serving_size = Column(Float, nullable=False, default=1)
    total_cost = Column(Float, nullable=False, default=0)
    cost_per_serving = Column(Float, nullable=False, default=0)
    approval_status = Column(String, nullable=False, default="approved")
    version = Column(Integer, nullable=False, default=1)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    ingredients = relationship("RecipeIngredient", back_populates="recipe", cascade="all, delete-orphan")
    ingredient_mappings = relationship(
        "RecipeIngredientMapping", back_populates="recipe", cascade="all, delete-orphan"
    )


class RecipeIngredient(Base):
    __tablename__ = "recipe_ingredients"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    recipe_id = Column(Uuid, ForeignKey("recipes.id", ondelete="CASCADE"), nullable=False, index=True)
    inventory_stock_id = Column(
        Uuid, ForeignKey("inventory_stock.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    ingredient_name = Column(String, nullable=False)
    quantity = Column(Float, nullable=False)
    unit = Column(String, nullable=False)
    cost_per_unit = Column(Float, nullable=False, default=0)

    recipe = relationship("Recipe", back_populates="ingredients")
    inventory_stock = relationship("InventoryStock")


class RecipeIngredientMapping(Base):
    """Per-store materialization of a template ingredient, captured at deployment time."""

    __tablename__ = "recipe_ingredient_mappings"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    recipe_id = Column(Uuid, ForeignKey("recipes.id", ondelete="CASCADE"), nullable=False, index=True)
    store_id = Column(Uuid, ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True)
    template_ingredient_id = Column(
        Uuid, ForeignKey("recipe_template_ingredients.id", ondelete="SET NULL"), nullable=True
    )
    template_ingredient_name = Column(String, nullable=False)
    inventory_stock_id = Column(
        Uuid, ForeignKey("inventory_stock.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    quantity_per_serving = Column(Float, nullable=False)
    unit = Column(String, nullable=False)
    match_type = Column(String, nullable=False, default="exact")  # exact|substring
    # 'available' | 'low_stock' | 'out_of_stock'
    availability_status = Column(String, nullable=False)
    current_stock = Column(Float, nullable=False, default=0)

    recipe = relationship("Recipe", back_populates="ingredient_mappings")
