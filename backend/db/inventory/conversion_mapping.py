import uuid

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, String, Text, Uuid
from sqlalchemy.orm import relationship

from ..database import Base, utcnow


class ConversionMapping(Base):
    """1 unit of the stock record == `conversion_factor` units of the recipe ingredient."""

    __tablename__ = "inventory_conversion_mappings"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    inventory_stock_id = Column(
        Uuid,
        ForeignKey("inventory_stock.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    recipe_ingredient_name = Column(String, nullable=False, index=True)
    recipe_ingredient_unit = Column(String, nullable=False)
    conversion_factor = Column(Float, nullable=False, default=1)
    notes = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, index=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    inventory_stock = relationship("InventoryStock", back_populates="mappings")
