import uuid
from sqlalchemy import Boolean, Column, DateTime, String, Uuid
from sqlalchemy.sql import func

from .database import Base


class Store(Base):
    __tablename__ = "stores"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
