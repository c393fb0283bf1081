"""Tests for heuristic gate reviews, rendition summaries and approval outcomes."""

import pytest

from capability_factory.core.exceptions import GitHubAPIError, RemoteSyncError
from capability_factory.domain.approval import (
    Approved,
    ApprovedWithFallback,
    Rejected,
    is_approved,
    is_self_approval_block,
)
from capability_factory.domain.review import review_document, summarize_rendition

pytestmark = pytest.mark.unit


class TestReviewDocument:
    def test_short_document_needs_work(self):
        review = review_document("spec", "# Spec\n\nTBD")

        assert review.verdict == "needs-work"
        assert "Document is too short for a production gate." in review.challenges
        assert "Missing clear acceptance criteria." in review.challenges

    def test_architecture_requires_operations(self):
        content = "# Architecture\n" + "Acceptance criteria and risk notes. " * 10
        review = review_document("architecture", content)

        assert review.challenges == ["Operational considerations are missing (metrics/alerts/rollback)."]

    def test_strong_document(self):
        content = "# Spec\n" + "Acceptance criteria, risks and metrics are listed. " * 8
        review = review_document("spec", content)

        assert review.verdict == "strong"
        assert review.challenges == ["No critical issues found."]


def test_summarize_rendition():
    summary = summarize_rendition("# Spec\n\nIntro line\n\n## Scope\n- first\n- second\n```mermaid\n```")

    assert summary.headline == "Spec"
    assert summary.sections == ["Spec", "Scope"]
    assert summary.first_paragraph == "Intro line"
    assert summary.highlights == ["first", "second"]


class TestApprovalOutcome:
    def test_self_approval_block_detected(self):
        err = GitHubAPIError(422, '{"message":"Review Can not approve your own pull request"}')
        assert is_self_approval_block(err)

    @pytest.mark.parametrize(
        "err",
        [
            GitHubAPIError(422, "Validation failed"),
            GitHubAPIError(403, "can not approve your own pull request"),
            RemoteSyncError("timeout"),
        ],
    )
    def test_other_errors_are_not_self_approval(self, err):
        assert not is_self_approval_block(err)

    def test_is_approved(self):
        assert is_approved(Approved(mode="local"))
        assert is_approved(ApprovedWithFallback(upstream_error="own pull request"))
        assert not is_approved(Rejected(reason="boom"))
