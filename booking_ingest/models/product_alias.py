"""
Product Alias Model

Maps free-text product labels extracted from emails to catalog products.
Rows with product_id NULL are pending aliases recorded by ingestion for
operators to curate.
"""

from datetime import datetime
from sqlalchemy import Column, String, Integer, Boolean, DateTime, ForeignKey, Index
from ..database import Base
import enum


class AliasMatchType(str, enum.Enum):
    EXACT = "exact"
    CONTAINS = "contains"
    REGEX = "regex"


class AliasSource(str, enum.Enum):
    MANUAL = "manual"
    INGESTION = "ingestion"


class ProductAlias(Base):
    __tablename__ = "product_aliases"

    id = Column(Integer, primary_key=True, autoincrement=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="SET NULL"), nullable=True)

    label = Column(String(255), nullable=False)
    normalized_label = Column(String(255), nullable=False, unique=True)
    match_type = Column(String(20), default=AliasMatchType.CONTAINS.value, nullable=False)
    priority = Column(Integer, default=100, nullable=False)
    active = Column(Boolean, default=True, nullable=False)

    hit_count = Column(Integer, default=0, nullable=False)
    first_seen_at = Column(DateTime, nullable=True)
    last_seen_at = Column(DateTime, nullable=True)
    source = Column(String(20), default=AliasSource.MANUAL.value, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_product_alias_order", "active", "priority", "id"),
    )

    @property
    def is_pending(self) -> bool:
        return self.product_id is None

    def __repr__(self):
        return f"<ProductAlias {self.label!r} {self.match_type} p={self.priority}>"
