from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, Boolean, JSON, UniqueConstraint, CheckConstraint
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from app.core.ids import utcnow
from app.database.connection import Base


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("chat_id", "seq", name="uq_messages_chat_seq"),
        UniqueConstraint("chat_id", "correlation_id", "attempt", name="uq_messages_correlation_attempt"),
        CheckConstraint("role IN ('user', 'bot')", name="check_message_role"),
        CheckConstraint(
            "status IN ('sending', 'sent', 'delivered', 'read', 'failed')",
            name="check_message_status",
        ),
    )

    id = Column(String(40), primary_key=True)
    chat_id = Column(String(40), ForeignKey("chats.id", ondelete="CASCADE"), nullable=False, index=True)
    seq = Column(Integer, nullable=False)  # Strictly increasing within a chat
    role = Column(String(16), nullable=False)  # 'user' or 'bot'
    content = Column(Text, nullable=False)
    content_type = Column(String(50), nullable=False, default="text")
    status = Column(String(16), nullable=False, default="sent")

    correlation_id = Column(String(64), nullable=True, index=True)  # Client-assigned
    attempt = Column(Integer, nullable=False, default=1)
    reply_to_id = Column(String(40), nullable=True)
    thread_id = Column(String(40), nullable=True, index=True)

    reactions = Column(JSON, nullable=False, default=dict)  # emoji -> [user ids]
    edit_history = Column(JSON, nullable=False, default=list)  # [{content, edited_at}]
    is_truncated = Column(Boolean, nullable=False, default=False)  # Bot reply cut short by a stop

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())
    edited_at = Column(DateTime(timezone=True), nullable=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    chat = relationship("Chat", back_populates="messages")
