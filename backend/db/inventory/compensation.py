import uuid

from sqlalchemy import Column, DateTime, Float, ForeignKey, String, Text, Uuid

from ..database import Base, utcnow


class CompensationLog(Base):
    __tablename__ = "inventory_compensation_log"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    transaction_id = Column(String, nullable=False, index=True)
    store_id = Column(Uuid, nullable=False, index=True)
    inventory_stock_id = Column(Uuid, ForeignKey("inventory_stock.id", ondelete="RESTRICT"), nullable=False)

    # The sale movement being undone and the movement that undid it
    movement_id = Column(Uuid, ForeignKey("inventory_movements.id", ondelete="SET NULL"), nullable=True)
    reversal_movement_id = Column(Uuid, ForeignKey("inventory_movements.id", ondelete="SET NULL"), nullable=True)

    original_quantity = Column(Float, nullable=False)
    restored_quantity = Column(Float, nullable=False)
    new_quantity = Column(Float, nullable=False)
    reason = Column(Text, nullable=True)

    compensated_at = Column(DateTime, nullable=False, default=utcnow, index=True)
