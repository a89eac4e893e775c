from sqlalchemy import Column, String, DateTime
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from app.core.ids import utcnow
from app.database.connection import Base


class Folder(Base):
    __tablename__ = "folders"

    id = Column(String(40), primary_key=True)
    user_id = Column(String(255), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())

    # Relationships
    chats = relationship("Chat", back_populates="folder")
