from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from app.core.logging import sync_logger
from app.core.rate_limiter import limiter
from app.core.security import AuthIdentity, get_current_identity
from app.database.connection import get_db
from app.schemas.sync import SyncRequest, SyncResponse
from app.services.chat_service import ChatService, get_chat_service
from app.services.sync_service import SyncService

router = APIRouter(prefix="/sync", tags=["sync"])


@router.post("/operations", response_model=SyncResponse)
@limiter.limit("30/minute")
async def apply_operations(
    request: Request,
    batch: SyncRequest,
    identity: AuthIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
    service: ChatService = Depends(get_chat_service),
):
    """Replay operations queued by an offline client, in order"""
    sync_logger.info(
        "Replaying offline operations",
        user_id=identity.user_id,
        device_id=identity.device_id,
        count=len(batch.operations),
    )
    results = await SyncService(service).apply_batch(db, identity.user_id, batch.operations)
    return SyncResponse(results=results)
