"""
Queue Item Model - durable work derived from partner webhooks
"""
import enum
from datetime import datetime

from sqlalchemy import Column, Integer, String, Text, DateTime, Enum as SQLEnum, Index

from partner_sync.db.database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the convention for every queue column"""
    return datetime.utcnow()


class QueueItemStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class QueueItem(Base):
    """Work item with attempt tracking and exponential-backoff retry"""

    __tablename__ = "queue_items"
    __table_args__ = (
        Index("ix_queue_items_ready", "status", "next_retry_at"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    owner_id = Column(Integer, nullable=False, index=True)  # tenant the item belongs to
    category = Column(Integer, nullable=False, index=True)  # 16 product, 17 order, -1 diagnostic

    payload = Column(Text, nullable=False, default="")  # serialized strategy output
    raw_payload = Column(Text, nullable=True)  # decrypted webhook text, for audit/replay
    change_type = Column(String(100), nullable=True)

    status = Column(SQLEnum(QueueItemStatus), default=QueueItemStatus.PENDING, nullable=False, index=True)
    attempts = Column(Integer, default=0, nullable=False)
    max_attempts = Column(Integer, default=3, nullable=False)
    priority = Column(Integer, default=0, nullable=False)

    # Timestamps
    created_at = Column(DateTime, default=utcnow, nullable=False)
    processing_started_at = Column(DateTime, nullable=True)
    processed_at = Column(DateTime, nullable=True)
    next_retry_at = Column(DateTime, nullable=True)

    # Error tracking
    error_message = Column(String(2000), nullable=True)

    correlation_id = Column(String(100), nullable=True, index=True)
    source = Column(String(100), nullable=True)

    @property
    def is_terminal(self) -> bool:
        if self.status in (QueueItemStatus.COMPLETED, QueueItemStatus.CANCELLED):
            return True
        return self.status == QueueItemStatus.FAILED and self.attempts >= self.max_attempts
