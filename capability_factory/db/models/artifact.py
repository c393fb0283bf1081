"""FactoryArtifact and FactoryTicket models: audit trail of pipeline outputs."""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, String, Text

from capability_factory.db.base import Base, JSONType


class FactoryArtifact(Base):
    __tablename__ = "factory_artifacts"

    artifact_id = Column(String(64), primary_key=True)
    capability_id = Column(String(64), nullable=False, index=True)
    artifact_type = Column(String(50), nullable=False)  # spec, architecture, compliance, build-plan, <stage>-doc
    version = Column(Integer, nullable=False, default=1)
    content = Column(JSONType, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc), index=True)


class FactoryTicket(Base):
    __tablename__ = "factory_tickets"

    ticket_id = Column(String(64), primary_key=True)
    capability_id = Column(String(64), nullable=False, index=True)
    repo = Column(String(255), nullable=False)
    title = Column(String(500), nullable=False)
    body = Column(Text, nullable=False, default="")
    labels = Column(JSONType, nullable=False, default=list)
    status = Column(String(20), nullable=False, default="draft")
    external_url = Column(String(500), nullable=True)
    issue_number = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
