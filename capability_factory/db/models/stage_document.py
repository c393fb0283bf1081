"""FactoryStageDocument model: append-only, versioned stage documents."""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, String, Text, UniqueConstraint

from capability_factory.db.base import Base, JSONType


class FactoryStageDocument(Base):
    __tablename__ = "factory_stage_documents"

    doc_id = Column(String(64), primary_key=True)
    capability_id = Column(String(64), nullable=False, index=True)
    stage_key = Column(String(50), nullable=False)
    version = Column(Integer, nullable=False)
    content = Column(Text, nullable=False, default="")
    diagram_source = Column(Text, nullable=False, default="")
    attachments = Column(JSONType, nullable=False, default=list)
    status = Column(String(20), nullable=False, default="draft")  # draft, approved
    created_by = Column(String(255), nullable=False, default="unknown")

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    # NO updated_at -- versions are immutable

    # A racing writer computing the same next version loses on insert
    __table_args__ = (
        UniqueConstraint("capability_id", "stage_key", "version", name="uq_stage_document_version"),
    )
