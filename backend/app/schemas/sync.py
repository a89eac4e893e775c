from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from app.models.enums import OperationKind


class OperationOutcome(str, Enum):
    applied = "applied"
    duplicate = "duplicate"
    conflict = "conflict"
    rejected = "rejected"


class PendingOperationIn(BaseModel):
    correlation_id: str = Field(..., min_length=1, max_length=64)
    kind: OperationKind
    chat_id: Optional[str] = None
    payload: Dict[str, Any] = {}


class SyncRequest(BaseModel):
    operations: List[PendingOperationIn] = Field(..., min_length=1, max_length=100)


class OperationResult(BaseModel):
    correlation_id: str
    kind: OperationKind
    outcome: OperationOutcome
    result: Dict[str, Any] = {}
    error: Optional[Dict[str, Any]] = None


class SyncResponse(BaseModel):
    results: List[OperationResult]
