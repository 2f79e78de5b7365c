import uuid
from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


class Product(Base):
    __tablename__ = "products"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    store_id = Column(Uuid, ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    sku = Column(String, nullable=False, unique=True)
    price = Column(Float, nullable=False, default=0)
    cost = Column(Float, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())


class ProductCatalog(Base):
    """Store-facing POS catalog entry for a sellable product."""

    __tablename__ = "product_catalog"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    store_id = Column(Uuid, ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Uuid, ForeignKey("products.id", ondelete="CASCADE"), nullable=True, index=True)
    recipe_id = Column(Uuid, ForeignKey("recipes.id", ondelete="SET NULL"), nullable=True, index=True)
    product_name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Float, nullable=False, default=0)
    is_available = Column(Boolean, nullable=False, default=True)
    display_order = Column(Integer, nullable=False, default=0)

    product = relationship("Product")
    recipe = relationship("Recipe")
