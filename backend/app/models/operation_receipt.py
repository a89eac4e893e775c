from sqlalchemy import Column, Integer, String, DateTime, JSON, UniqueConstraint
from sqlalchemy.sql import func
from app.core.ids import utcnow
from app.database.connection import Base


class OperationReceipt(Base):
    """Outcome of a replayed client operation, keyed by its correlation id"""

    __tablename__ = "operation_receipts"
    __table_args__ = (
        UniqueConstraint("user_id", "correlation_id", name="uq_receipts_user_correlation"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(255), nullable=False)
    correlation_id = Column(String(64), nullable=False)
    kind = Column(String(32), nullable=False)
    response = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())
