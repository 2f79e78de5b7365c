import uuid

from sqlalchemy import JSON, Column, DateTime, String, UniqueConstraint, Uuid

from ..database import Base, utcnow


class DeductionIdempotency(Base):
    __tablename__ = "inventory_deduction_idempotency"
    __table_args__ = (
        UniqueConstraint("transaction_id", "ingredient_key", name="ux_deduction_idempotency_txn_ingredient"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    transaction_id = Column(String, nullable=False, index=True)
    ingredient_key = Column(String, nullable=False)
    store_id = Column(Uuid, nullable=False, index=True)
    inventory_stock_id = Column(Uuid, nullable=True)

    # 'applied' | 'failed'
    status = Column(String, nullable=False, index=True)
    # Serialized IngredientDeductionResult returned on replay
    result = Column(JSON, nullable=False)

    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
