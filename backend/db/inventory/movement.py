import uuid

from sqlalchemy import Column, DateTime, Float, ForeignKey, String, Text, Uuid
from sqlalchemy.orm import relationship

from ..database import Base, utcnow


class InventoryMovement(Base):
    __tablename__ = "inventory_movements"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    # Store on whose behalf the movement was written (compared against the stock's store)
    store_id = Column(Uuid, nullable=False, index=True)

    inventory_stock_id = Column(
        Uuid,
        ForeignKey("inventory_stock.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    # 'sale' | 'compensation' | 'delivery'
    movement_type = Column(String, nullable=False, index=True)
    quantity_change = Column(Float, nullable=False)
    previous_quantity = Column(Float, nullable=False)
    new_quantity = Column(Float, nullable=False)

    reference_type = Column(String, nullable=True, index=True)  # 'transaction' | 'delivery'
    reference_id = Column(String, nullable=True, index=True)
    ingredient_key = Column(String, nullable=True)
    reversal_of_id = Column(Uuid, ForeignKey("inventory_movements.id", ondelete="SET NULL"), nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    inventory_stock = relationship("InventoryStock", back_populates="movements")
