import uuid
from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


class RecipeTemplate(Base):
    """Store-independent recipe definition, deployed to stores by the deployment mapper."""

    __tablename__ = "recipe_templates"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    instructions = Column(Text, nullable=True)
    category_name = Column(String, nullable=True)
    yield_quantity = Column(Float, nullable=False, default=1)
    serving_size = Column(Float, nullable=False, default=1)
    version = Column(Integer, nullable=False, default=1)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    ingredients = relationship(
        "RecipeTemplateIngredient",
        back_populates="template",
        cascade="all, delete-orphan",
        order_by="RecipeTemplateIngredient.sort_order",
    )


class RecipeTemplateIngredient(Base):
    __tablename__ = "recipe_template_ingredients"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    recipe_template_id = Column(
        Uuid, ForeignKey("recipe_templates.id", ondelete="CASCADE"), nullable=False, index=True
    )
    ingredient_name = Column(String, nullable=False)
    quantity = Column(Float, nullable=False)
    unit = Column(String, nullable=False)
    cost_per_unit = Column(Float, nullable=True)
    sort_order = Column(Integer, nullable=False, default=0)

    template = relationship("RecipeTemplate", back_populates="ingredients")
