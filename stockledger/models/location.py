"""
Stock-holding locations (central store, kiosks, shops).
"""
import uuid
from sqlalchemy import Column, String, Boolean, DateTime, Uuid, func

from stockledger.db.base import Base


class Location(Base):
    """A place that holds ingredient stock."""
    __tablename__ = "locations"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(100), nullable=False, unique=True)
    kind = Column(String(20), nullable=False, default="store")  # store, kiosk, shop
    timezone = Column(String(64))  # IANA name; falls back to BUSINESS_TIMEZONE
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, server_default=func.now())
