from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Boolean, JSON, UniqueConstraint, Index
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from app.core.ids import utcnow
from app.database.connection import Base


class Chat(Base):
    __tablename__ = "chats"
    __table_args__ = (
        UniqueConstraint("user_id", "client_correlation_id", name="uq_chats_user_correlation"),
        Index("ix_chats_user_updated", "user_id", "updated_at"),
    )

    id = Column(String(40), primary_key=True)
    user_id = Column(String(255), nullable=False, index=True)  # Owner, supplied by the auth service
    title = Column(String(255), nullable=False)
    folder_id = Column(String(40), ForeignKey("folders.id", ondelete="SET NULL"), nullable=True, index=True)
    tags = Column(JSON, nullable=False, default=list)
    chat_metadata = Column("metadata", JSON, nullable=False, default=dict)
    is_favorite = Column(Boolean, nullable=False, default=False)
    is_archived = Column(Boolean, nullable=False, default=False)

    message_count = Column(Integer, nullable=False, default=0)  # Non-deleted messages only
    last_seq = Column(Integer, nullable=False, default=0)  # Sequence counter for messages
    version = Column(Integer, nullable=False, default=1)  # Metadata version counter
    field_versions = Column(JSON, nullable=False, default=dict)  # field -> version of last change

    client_correlation_id = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    folder = relationship("Folder", back_populates="chats")
    messages = relationship("Message", back_populates="chat", cascade="all, delete-orphan", passive_deletes=True)
