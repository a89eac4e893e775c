from typing import Any, Dict, List

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.exceptions import ChatCoreError, ConflictError, ValidationError
from app.core.logging import sync_logger
from app.core.monitoring import record_sync_operation
from app.crud.chat import serialize_chat
from app.crud.sync import get_receipt
from app.models.enums import OperationKind
from app.schemas.chat import ChatCreate, ChatUpdate, MessageCreate
from app.schemas.sync import OperationOutcome, OperationResult, PendingOperationIn
from app.services.chat_service import ChatService


class SyncService:
    """Applies operations replayed from a client's offline queue.

    Each operation carries its client correlation id. An operation already
    applied returns the response stored when it first succeeded, so a client
    that lost the acknowledgement can safely send it again.
    """

    def __init__(self, chat_service: ChatService):
        self.chat_service = chat_service

    async def apply_batch(self, db: Session, user_id: str, operations: List[PendingOperationIn]) -> List[OperationResult]:
        """Apply operations in the order given; one failing does not stop the rest"""
        results = []
        for operation in operations:
            result = await self.apply(db, user_id, operation)
            record_sync_operation(operation.kind.value, result.outcome.value)
            results.append(result)
        return results

    async def apply(self, db: Session, user_id: str, operation: PendingOperationIn) -> OperationResult:
        receipt = get_receipt(db, user_id, operation.correlation_id)
        if receipt is not None:
            return self._duplicate(operation, receipt.response)

        try:
            response = await self._dispatch(db, user_id, operation)
        except IntegrityError:
            # A concurrent replay of the same operation won the race
            db.rollback()
            receipt = get_receipt(db, user_id, operation.correlation_id)
            if receipt is None:
                raise
            return self._duplicate(operation, receipt.response)
        except ConflictError as e:
            sync_logger.info("Replayed operation conflicts", correlation_id=operation.correlation_id, chat_id=operation.chat_id)
            return OperationResult(
                correlation_id=operation.correlation_id,
                kind=operation.kind,
                outcome=OperationOutcome.conflict,
                result={"current": e.current},
                error=e.to_dict(),
            )
        except ChatCoreError as e:
            sync_logger.info(
                "Replayed operation rejected",
                correlation_id=operation.correlation_id,
                code=e.code,
                detail=e.message,
            )
            return OperationResult(
                correlation_id=operation.correlation_id,
                kind=operation.kind,
                outcome=OperationOutcome.rejected,
                error=e.to_dict(),
            )

        outcome = OperationOutcome.duplicate if response.pop("duplicate", False) else OperationOutcome.applied
        return OperationResult(
            correlation_id=operation.correlation_id,
            kind=operation.kind,
            outcome=outcome,
            result=response,
        )

    async def _dispatch(self, db: Session, user_id: str, operation: PendingOperationIn) -> Dict[str, Any]:
        payload = dict(operation.payload)
        receipt_id = operation.correlation_id

        if operation.kind == OperationKind.create_chat:
            payload.setdefault("correlation_id", operation.correlation_id)
            result = await self.chat_service.create_chat(
                db, user_id, self._parse(ChatCreate, payload), receipt_id=receipt_id
            )
            response = result.to_dict()
            response["duplicate"] = result.duplicate
            return response

        chat_id = self._require_chat_id(operation)

        if operation.kind == OperationKind.send_message:
            payload.setdefault("correlation_id", operation.correlation_id)
            result = await self.chat_service.send_message(
                db, user_id, chat_id, self._parse(MessageCreate, payload), receipt_id=receipt_id
            )
            return result.to_dict()

        if operation.kind == OperationKind.update_chat:
            chat = await self.chat_service.update_chat(
                db, user_id, chat_id, self._parse(ChatUpdate, payload), receipt_id=receipt_id
            )
            return {"chat": serialize_chat(chat)}

        if operation.kind == OperationKind.delete_chat:
            deleted = await self.chat_service.delete_chat(
                db,
                user_id,
                chat_id,
                confirm=bool(payload.get("confirm", True)),
                hard=bool(payload.get("hard", False)),
                receipt_id=receipt_id,
            )
            return {"chat_id": chat_id, "deleted_message_count": deleted}

        raise ValidationError(f"Unsupported operation kind '{operation.kind}'")

    def _duplicate(self, operation: PendingOperationIn, response: Dict[str, Any]) -> OperationResult:
        sync_logger.info("Replayed operation already applied", correlation_id=operation.correlation_id)
        return OperationResult(
            correlation_id=operation.correlation_id,
            kind=operation.kind,
            outcome=OperationOutcome.duplicate,
            result=dict(response or {}),
        )

    def _require_chat_id(self, operation: PendingOperationIn) -> str:
        if not operation.chat_id:
            raise ValidationError("Operation requires a chat_id", details={"kind": operation.kind.value})
        return operation.chat_id

    def _parse(self, model, payload: Dict[str, Any]):
        try:
            return model.model_validate(payload)
        except PydanticValidationError as e:
            raise ValidationError("Invalid operation payload", details=e.errors(include_url=False)) from e
