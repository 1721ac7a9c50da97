"""
Manual review queue for events that could not be applied automatically.
"""
import uuid
from sqlalchemy import Column, String, Text, Integer, DateTime, Uuid, JSON, Index

from stockledger.core.business_day import utcnow
from stockledger.db.base import Base


class ManualReviewItem(Base):
    """An event escalated to an operator after retries were exhausted."""
    __tablename__ = "manual_review_items"
    __table_args__ = (
        Index("idx_manual_review_open", "resolved_at"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    source = Column(String(50), nullable=False)  # sale, purchase, transfer, count
    correlation_id = Column(String(100))
    payload = Column(JSON, nullable=False, default=dict)
    error_kind = Column(String(50), nullable=False)
    message = Column(Text)
    attempts = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    resolved_at = Column(DateTime)
