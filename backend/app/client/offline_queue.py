"""
Durable store for operations made while the device is offline.

The queue lives in a local SQLite file with its own declarative base, so it
never shares tables or sessions with the server schema. Operations keep their
insertion order (``position``) and are only removed once the server has
acknowledged them.
"""

import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import Column, DateTime, Integer, JSON, String, Text, create_engine
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.sql import func

from app.core.ids import utcnow
from app.core.logging import get_logger
from app.models.enums import OperationKind

logger = get_logger("offline")

LocalBase = declarative_base()

STATUS_PENDING = "pending"
STATUS_FAILED = "failed"
STATUS_CONFLICT = "conflict"

# Prefix for chats created offline, before the server has assigned an id
LOCAL_CHAT_PREFIX = "local_"


class PendingOperationRecord(LocalBase):
    __tablename__ = "pending_operations"

    position = Column(Integer, primary_key=True, autoincrement=True)
    correlation_id = Column(String(64), nullable=False, unique=True, index=True)
    kind = Column(String(32), nullable=False)
    chat_ref = Column(String(64), nullable=True, index=True)
    payload = Column(JSON, nullable=False, default=dict)
    retry_count = Column(Integer, nullable=False, default=0)
    status = Column(String(16), nullable=False, default=STATUS_PENDING)
    last_error = Column(Text, nullable=True)
    server_state = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())

    @property
    def is_blocked(self) -> bool:
        return self.status in (STATUS_FAILED, STATUS_CONFLICT)

    def to_wire(self, chat_id: Optional[str]) -> Dict[str, Any]:
        """Shape expected by POST /sync/operations"""
        return {
            "correlation_id": self.correlation_id,
            "kind": self.kind,
            "chat_id": chat_id,
            "payload": dict(self.payload or {}),
        }


class ChatRefMapping(LocalBase):
    """Local chat ref -> server chat id, learned when a queued create is acknowledged"""

    __tablename__ = "chat_ref_mappings"

    local_ref = Column(String(64), primary_key=True)
    chat_id = Column(String(64), nullable=False)


def new_local_chat_ref() -> str:
    return f"{LOCAL_CHAT_PREFIX}{uuid.uuid4().hex}"


class OfflineQueue:
    """FIFO log of pending operations for one device."""

    def __init__(self, database_url: str = "sqlite:///offline_queue.db"):
        options = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            options["poolclass"] = StaticPool
        self.engine = create_engine(database_url, **options)
        self._session_maker = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)
        LocalBase.metadata.create_all(bind=self.engine)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self._session_maker()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def enqueue(self, kind: OperationKind, payload: Dict[str, Any], chat_ref: Optional[str] = None) -> PendingOperationRecord:
        record = PendingOperationRecord(
            correlation_id=uuid.uuid4().hex,
            kind=OperationKind(kind).value,
            chat_ref=chat_ref,
            payload=dict(payload or {}),
            retry_count=0,
            status=STATUS_PENDING,
            created_at=utcnow(),
        )
        with self._session() as db:
            db.add(record)
            db.flush()
        logger.debug("Operation queued", correlation_id=record.correlation_id, kind=record.kind, chat_ref=chat_ref)
        return record

    def operations(self) -> List[PendingOperationRecord]:
        """Every queued operation, oldest first"""
        with self._session() as db:
            return db.query(PendingOperationRecord).order_by(PendingOperationRecord.position).all()

    def with_status(self, status: str) -> List[PendingOperationRecord]:
        with self._session() as db:
            return (
                db.query(PendingOperationRecord)
                .filter(PendingOperationRecord.status == status)
                .order_by(PendingOperationRecord.position)
                .all()
            )

    def get(self, correlation_id: str) -> Optional[PendingOperationRecord]:
        with self._session() as db:
            return (
                db.query(PendingOperationRecord)
                .filter(PendingOperationRecord.correlation_id == correlation_id)
                .first()
            )

    def update(self, correlation_id: str, **fields: Any) -> PendingOperationRecord:
        with self._session() as db:
            record = (
                db.query(PendingOperationRecord)
                .filter(PendingOperationRecord.correlation_id == correlation_id)
                .first()
            )
            if record is None:
                raise KeyError(correlation_id)
            for field, value in fields.items():
                setattr(record, field, value)
            return record

    def remove(self, correlation_id: str) -> bool:
        with self._session() as db:
            deleted = (
                db.query(PendingOperationRecord)
                .filter(PendingOperationRecord.correlation_id == correlation_id)
                .delete(synchronize_session=False)
            )
        return deleted > 0

    def __len__(self) -> int:
        with self._session() as db:
            return db.query(PendingOperationRecord).count()

    def map_chat_ref(self, local_ref: str, chat_id: str) -> int:
        """Record the server id for a local chat and rewrite queued operations that use it"""
        with self._session() as db:
            db.merge(ChatRefMapping(local_ref=local_ref, chat_id=chat_id))
            rewritten = (
                db.query(PendingOperationRecord)
                .filter(PendingOperationRecord.chat_ref == local_ref)
                .update({PendingOperationRecord.chat_ref: chat_id}, synchronize_session=False)
            )
        logger.info("Local chat mapped", local_ref=local_ref, chat_id=chat_id, rewritten=rewritten)
        return rewritten

    def resolve_chat_ref(self, chat_ref: Optional[str]) -> Optional[str]:
        if chat_ref is None or not chat_ref.startswith(LOCAL_CHAT_PREFIX):
            return chat_ref
        with self._session() as db:
            mapping = db.get(ChatRefMapping, chat_ref)
            return mapping.chat_id if mapping else chat_ref

    def close(self) -> None:
        self.engine.dispose()
