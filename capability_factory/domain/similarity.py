"""Lexical duplicate-idea detection.

Pure domain functions: token-set Jaccard similarity with a small status boost.
No embeddings, no DB access, fully deterministic.
"""

import re
from collections.abc import Iterable
from dataclasses import dataclass, field

TOKEN_PATTERN = re.compile(r"[a-z0-9]+")
MIN_TOKEN_LENGTH = 3
APPROVED_STATUS_BOOST = 0.05
DUPLICATE_THRESHOLD = 0.45
MIN_LIMIT = 1
MAX_LIMIT = 12


@dataclass
class RankedIdea:
    """A candidate idea with its raw similarity and boosted score."""

    idea_id: str
    title: str
    status: str
    similarity: float
    score: float


@dataclass
class SimilarityRanking:
    ideas: list[RankedIdea] = field(default_factory=list)
    duplicate_warning: str | None = None


def tokenize(text: str | None) -> set[str]:
    """Lowercase alphanumeric tokens, dropping tokens of length <= 2."""
    if not text:
        return set()
    return {t for t in TOKEN_PATTERN.findall(str(text).lower()) if len(t) >= MIN_TOKEN_LENGTH}


def tokens_from_parts(parts: Iterable[str | None]) -> set[str]:
    return tokenize(" ".join(p for p in parts if p))


def jaccard_similarity(a: set[str], b: set[str]) -> float:
    """|a & b| / |a | b|, defined as 0 when either set is empty."""
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def clamp_limit(limit: int | None, default: int = 5) -> int:
    value = default if limit is None else int(limit)
    return max(MIN_LIMIT, min(MAX_LIMIT, value))


def rank_candidates(
    query_tokens: set[str],
    candidates: Iterable[tuple[str, str, str, set[str]]],
    limit: int | None = 5,
    exclude_idea_id: str | None = None,
) -> SimilarityRanking:
    """Rank (idea_id, title, status, tokens) candidates against a query token set.

    Rules:
        - similarity is Jaccard over token sets
        - approved ideas get +0.05, score clamped to [0, 1], rounded to 4 dp
        - zero-similarity candidates are dropped
        - sorted by score desc, then idea_id asc; limit clamped to [1, 12]
        - duplicate warning when the top candidate's similarity >= 0.45
    """
    ranked: list[RankedIdea] = []
    for idea_id, title, status, tokens in candidates:
        if exclude_idea_id and idea_id == exclude_idea_id:
            continue
        similarity = jaccard_similarity(query_tokens, tokens)
        if similarity <= 0:
            continue
        boost = APPROVED_STATUS_BOOST if status == "approved" else 0.0
        score = round(max(0.0, min(1.0, similarity + boost)), 4)
        ranked.append(
            RankedIdea(
                idea_id=idea_id,
                title=title,
                status=status,
                similarity=round(similarity, 4),
                score=score,
            )
        )

    ranked.sort(key=lambda r: (-r.score, r.idea_id))
    ranked = ranked[: clamp_limit(limit)]

    warning = None
    if ranked and ranked[0].similarity >= DUPLICATE_THRESHOLD:
        top = ranked[0]
        warning = (
            f"Possible duplicate of {top.idea_id} "
            f"({int(top.similarity * 100)}% similar): {top.title}"
        )
    return SimilarityRanking(ideas=ranked, duplicate_warning=warning)
