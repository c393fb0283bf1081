"""FactoryIdea model: scoped idea intake records."""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, String, Text

from capability_factory.db.base import Base, JSONType


class FactoryIdea(Base):
    __tablename__ = "factory_ideas"

    idea_id = Column(String(64), primary_key=True)
    org_id = Column(String(255), nullable=False, index=True)
    sandbox_id = Column(String(255), nullable=False, index=True)
    product_id = Column(String(255), nullable=False, index=True)
    title = Column(String(500), nullable=False)
    description = Column(Text, nullable=False, default="")
    details = Column(JSONType, nullable=False, default=dict)
    status = Column(String(20), nullable=False, default="new")  # new, triaged, approved
    created_by = Column(String(255), nullable=False, default="unknown")

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
