from sqlalchemy.orm import Session
from typing import Any, Dict, Optional
from app.core.ids import utcnow
from app.models.operation_receipt import OperationReceipt


def get_receipt(db: Session, user_id: str, correlation_id: str) -> Optional[OperationReceipt]:
    return (
        db.query(OperationReceipt)
        .filter(OperationReceipt.user_id == user_id, OperationReceipt.correlation_id == correlation_id)
        .first()
    )


def record_receipt(db: Session, user_id: str, correlation_id: str, kind: str, response: Dict[str, Any]) -> OperationReceipt:
    """Store the outcome alongside the operation, in the same transaction"""
    receipt = OperationReceipt(
        user_id=user_id,
        correlation_id=correlation_id,
        kind=kind,
        response=response,
        created_at=utcnow(),
    )
    db.add(receipt)
    db.flush()
    return receipt
