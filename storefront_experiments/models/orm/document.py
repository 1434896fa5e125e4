from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, PrimaryKeyConstraint, String
from sqlalchemy.types import JSON

from .base import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DocumentORM(Base):
    """A schemaless document addressed by (collection, doc_id)."""

    __tablename__ = "documents"

    collection = Column(String, nullable=False, index=True)
    doc_id = Column(String, nullable=False)

    data = Column(JSON, default=dict, nullable=False)

    # Server-assigned; bumped on every set/update
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        PrimaryKeyConstraint("collection", "doc_id", name="document_pk"),
    )
