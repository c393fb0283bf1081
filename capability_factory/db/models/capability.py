"""FactoryCapability model: the unit that moves through the gated stages."""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, String, Text

from capability_factory.db.base import Base, JSONType


class FactoryCapability(Base):
    """Capability record with an append-only JSON history.

    `revision` is the optimistic concurrency token: every stage write is an
    UPDATE conditioned on the revision the writer read.
    """

    __tablename__ = "factory_capabilities"

    capability_id = Column(String(64), primary_key=True)
    idea_id = Column(String(64), nullable=False, index=True)
    org_id = Column(String(255), nullable=False, index=True)
    sandbox_id = Column(String(255), nullable=False)
    product_id = Column(String(255), nullable=False, index=True)
    title = Column(String(500), nullable=False)
    description = Column(Text, nullable=False, default="")

    stage = Column(String(50), nullable=False, default="triage")
    status = Column(String(30), nullable=False, default="in_progress")  # in_progress, ready_for_review
    history = Column(JSONType, nullable=False, default=list)  # [{type, actor, at, detail}]
    revision = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
