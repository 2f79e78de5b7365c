import uuid

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Integer, String, Uuid
from sqlalchemy.orm import relationship

from ..database import Base, utcnow


class InventoryStock(Base):
    __tablename__ = "inventory_stock"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    store_id = Column(Uuid, ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True)

    item = Column(String, nullable=False)
    unit = Column(String, nullable=False)

    # Whole units plus a sub-unit remainder (0 <= fractional_stock < 1 by convention)
    stock_quantity = Column(Integer, nullable=False, default=0)
    fractional_stock = Column(Float, nullable=False, default=0)

    bulk_quantity = Column(Float, nullable=True)
    bulk_unit = Column(String, nullable=True)
    serving_quantity = Column(Float, nullable=True)
    serving_unit = Column(String, nullable=True)
    breakdown_ratio = Column(Float, nullable=True)
    cost_per_serving = Column(Float, nullable=True)
    cost = Column(Float, nullable=True)
    minimum_threshold = Column(Float, nullable=True)

    # Optimistic lock: every conditional write bumps it by one
    version = Column(Integer, nullable=False, default=1)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    mappings = relationship("ConversionMapping", back_populates="inventory_stock")
    movements = relationship("InventoryMovement", back_populates="inventory_stock")
