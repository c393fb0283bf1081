"""FactoryPullRequest model: local mirror of a remote pull request."""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, String, Text, UniqueConstraint

from capability_factory.db.base import Base, JSONType


class FactoryPullRequest(Base):
    __tablename__ = "factory_pull_requests"

    pr_id = Column(String(64), primary_key=True)
    capability_id = Column(String(64), nullable=False, index=True)
    repo = Column(String(255), nullable=False)
    branch = Column(String(255), nullable=False)
    title = Column(String(500), nullable=False)
    description = Column(Text, nullable=False, default="")
    files = Column(JSONType, nullable=False, default=list)
    external_url = Column(String(500), nullable=True)  # None in draft mode
    pr_number = Column(Integer, nullable=True)
    status = Column(String(20), nullable=False, default="draft")  # draft, open
    updated_by = Column(String(255), nullable=False, default="unknown")

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    # One authoritative record per capability per repository
    __table_args__ = (UniqueConstraint("capability_id", "repo", name="uq_capability_repo_pr"),)
