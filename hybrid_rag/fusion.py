# =============================================================================
# Fusion Module
# =============================================================================
# Late fusion of vector and keyword matches into one candidate list.
#
# Each source contributes its own similarity times its own weight; a document
# found by both gets the sum. Scores of the two sources are not normalized
# against each other.

from dataclasses import dataclass
from typing import Any, Dict, List

from hybrid_rag.retrieval import Document, document_from_match

VECTOR_WEIGHT = 0.6
KEYWORD_WEIGHT = 0.4


@dataclass(frozen=True)
class FusionWeights:
    vector: float = VECTOR_WEIGHT
    keyword: float = KEYWORD_WEIGHT

    @classmethod
    def from_config(cls, config):
        fusion_config = config.get('fusion', {})
        return cls(
            vector=float(fusion_config.get('vector_weight', VECTOR_WEIGHT)),
            keyword=float(fusion_config.get('keyword_weight', KEYWORD_WEIGHT)),
        )


@dataclass
class FusedCandidate:
    id: Any
    document: Document
    fused_score: float


def fuse_results(vector_matches, keyword_matches, weights=None) -> List[FusedCandidate]:
    """
    Merge vector and keyword matches by document id.

    For an id found in both lists the fused score is exactly
    `vector_score * weights.vector + keyword_score * weights.keyword`.
    Keyword-only hits never receive the vector weight. A document returned
    by several keyword queries accumulates every keyword contribution.

    Args:
        vector_matches: Match dicts from vector_search
        keyword_matches: Match dicts from keyword_search (may repeat ids)
        weights: FusionWeights (default 0.6 / 0.4)

    Returns:
        list: FusedCandidate objects sorted by fused score, highest first.
              Ties keep first-seen order.
    """
    weights = weights or FusionWeights()
    candidates: Dict[Any, FusedCandidate] = {}

    for match in vector_matches:
        weighted = match['score'] * weights.vector
        if match['id'] in candidates:
            candidates[match['id']].fused_score += weighted
        else:
            candidates[match['id']] = FusedCandidate(
                id=match['id'],
                document=document_from_match(match),
                fused_score=weighted,
            )

    for match in keyword_matches:
        weighted = match['score'] * weights.keyword
        if match['id'] in candidates:
            candidates[match['id']].fused_score += weighted
        else:
            candidates[match['id']] = FusedCandidate(
                id=match['id'],
                document=document_from_match(match),
                fused_score=weighted,
            )

    return sorted(candidates.values(), key=lambda c: c.fused_score, reverse=True)
