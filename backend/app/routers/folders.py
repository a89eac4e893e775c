from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from typing import List

from app.core.security import AuthIdentity, get_current_identity
from app.database.connection import get_db
from app.schemas.chat import Folder, FolderCreate
from app.services.chat_service import ChatService, get_chat_service

router = APIRouter(prefix="/folders", tags=["folders"])


@router.post("", response_model=Folder, status_code=status.HTTP_201_CREATED)
async def create_folder(
    folder: FolderCreate,
    identity: AuthIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
    service: ChatService = Depends(get_chat_service),
):
    return service.create_folder(db, identity.user_id, folder.name)


@router.get("", response_model=List[Folder])
async def list_folders(
    identity: AuthIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
    service: ChatService = Depends(get_chat_service),
):
    return service.list_folders(db, identity.user_id)


@router.delete("/{folder_id}")
async def delete_folder(
    folder_id: str,
    identity: AuthIdentity = Depends(get_current_identity),
    db: Session = Depends(get_db),
    service: ChatService = Depends(get_chat_service),
):
    """Delete a folder; its chats are kept"""
    detached = service.delete_folder(db, identity.user_id, folder_id)
    return {"folder_id": folder_id, "detached_chats": detached}
