"""Re-export all models so Base.metadata sees them."""

from capability_factory.db.models.artifact import FactoryArtifact, FactoryTicket
from capability_factory.db.models.capability import FactoryCapability
from capability_factory.db.models.idea import FactoryIdea
from capability_factory.db.models.pull_request import FactoryPullRequest
from capability_factory.db.models.stage_document import FactoryStageDocument

__all__ = [
    "FactoryArtifact",
    "FactoryCapability",
    "FactoryIdea",
    "FactoryPullRequest",
    "FactoryStageDocument",
    "FactoryTicket",
]
