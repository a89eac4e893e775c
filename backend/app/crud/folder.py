from sqlalchemy.orm import Session
from typing import List, Optional
from app.core.exceptions import ValidationError
from app.core.ids import new_id, utcnow
from app.models.chat import Chat
from app.models.folder import Folder


def create_folder(db: Session, user_id: str, name: str) -> Folder:
    """Create a new folder"""
    db_folder = Folder(id=new_id("fld"), user_id=user_id, name=name.strip(), created_at=utcnow())
    db.add(db_folder)
    db.flush()
    return db_folder


def get_user_folders(db: Session, user_id: str) -> List[Folder]:
    return (
        db.query(Folder)
        .filter(Folder.user_id == user_id)
        .order_by(Folder.name.asc())
        .all()
    )


def get_folder(db: Session, folder_id: str, user_id: str) -> Optional[Folder]:
    return (
        db.query(Folder)
        .filter(Folder.id == folder_id, Folder.user_id == user_id)
        .first()
    )


def require_folder(db: Session, folder_id: str, user_id: str) -> Folder:
    folder = get_folder(db, folder_id, user_id)
    if folder is None:
        raise ValidationError("Unknown folder", details={"folder_id": folder_id})
    return folder


def delete_folder(db: Session, folder: Folder) -> int:
    """Delete a folder; its chats stay and lose the folder reference"""
    detached = (
        db.query(Chat)
        .filter(Chat.folder_id == folder.id)
        .update({Chat.folder_id: None}, synchronize_session=False)
    )
    db.delete(folder)
    db.flush()
    return detached
