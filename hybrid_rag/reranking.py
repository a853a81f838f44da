# =============================================================================
# Reranking Module
# =============================================================================
# This module re-scores fused candidates for relevance to the query.
#
# The default backend asks a chat model for one 0-100 score per candidate.
# A local cross-encoder can be used instead (reranking.backend: cross_encoder).
# Either way every candidate comes back with an integer relevance in [0, 100]
# and the list is re-sorted by it; the fused score only decided the input
# order, which breaks ties.

import logging
import math
from dataclasses import dataclass
from functools import lru_cache
from typing import List

from sentence_transformers import CrossEncoder

from hybrid_rag.retrieval import Document
from hybrid_rag.run_tracker import log_message

log = logging.getLogger(__name__)

MAX_CANDIDATE_CHARS = 1000
MIN_RELEVANCE = 0
MAX_RELEVANCE = 100


@dataclass(frozen=True)
class RankedDocument:
    document: Document
    relevance: int


RERANK_PROMPT = """You are ranking search results for relevance to a user's question.

QUESTION:
{query}

CANDIDATE PASSAGES:
{candidates}

Score every passage from 0 to 100 for how well it helps answer the question:
- 80-100: directly answers the question; matches both the meaning and the key terms
- 40-79: partially relevant or only covers part of the question
- 0-39: weak, off-topic, or only shares words with the question

Return exactly {count} scores, one per passage, in the same order as the passages,
as integers separated by commas (for example: 85, 40, 10).
Return ONLY the comma-separated scores, nothing else."""


def build_rerank_prompt(query, documents, max_chars=MAX_CANDIDATE_CHARS):
    """
    Build the reranking prompt, numbering candidates in input order.

    Each passage is cut to its first `max_chars` characters.

    Args:
        query: The question the passages should answer
        documents: Candidate Documents, in fused order
        max_chars: Per-passage character limit

    Returns:
        str: The prompt text
    """
    candidates = "\n\n".join(
        f"[{i}] {document.content[:max_chars]}"
        for i, document in enumerate(documents, 1)
    )
    return RERANK_PROMPT.format(query=query, candidates=candidates, count=len(documents))


def parse_score_token(token):
    """
    Parse one score token.

    Grammar: optional whitespace, a finite decimal number, optional
    whitespace. Values are rounded to the nearest integer. Anything else,
    including numbers outside [0, 100], becomes 0.
    """
    try:
        value = float(token.strip())
    except ValueError:
        return 0

    if not math.isfinite(value):
        return 0

    score = int(round(value))
    if score < MIN_RELEVANCE or score > MAX_RELEVANCE:
        return 0
    return score


def parse_rerank_scores(text, count):
    """
    Parse a comma-separated score list positionally.

    score[i] belongs to candidate[i]. Missing positions default to 0 and
    extra tokens are ignored, so the result always has `count` entries.

    Args:
        text: Raw model output
        count: Number of candidates that were scored

    Returns:
        list: `count` integers in [0, 100]
    """
    tokens = (text or "").split(',') if (text or "").strip() else []
    scores = [parse_score_token(token) for token in tokens[:count]]

    if len(tokens) != count:
        log.warning(
            f"Reranker returned {len(tokens)} scores for {count} candidates; "
            f"missing positions scored 0"
        )

    scores.extend([0] * (count - len(scores)))
    return scores


def sort_by_relevance(documents, scores) -> List[RankedDocument]:
    """Attach scores to documents and stable-sort by relevance, highest first."""
    ranked = [RankedDocument(document=d, relevance=s) for d, s in zip(documents, scores)]
    return sorted(ranked, key=lambda r: r.relevance, reverse=True)


def llm_scores(query, documents, client, config):
    """
    Ask the chat model for one relevance score per document.

    Provider errors propagate to the caller.

    Returns:
        list: One integer per document
    """
    reranking_config = config.get('reranking', {})
    model = reranking_config.get('model', 'gpt-4o-mini')
    max_chars = reranking_config.get('max_chars', MAX_CANDIDATE_CHARS)

    prompt = build_rerank_prompt(query, documents, max_chars)

    response = client.chat.completions.create(
        model=model,
        messages=[{"role": "user", "content": prompt}],
        temperature=0,
    )

    content = response.choices[0].message.content
    return parse_rerank_scores(content, len(documents))


@lru_cache(maxsize=2)
def load_cross_encoder(model_name, device='cpu'):
    """
    Load a cross-encoder model once per (model, device).

    Loading is expensive, so repeated searches reuse the instance.
    """
    print(f"Loading reranker model: {model_name} (device: {device})")
    return CrossEncoder(model_name, device=device)


def cross_encoder_relevance(score):
    """
    Map a cross-encoder output to an integer relevance in [0, 100].

    Probabilities in [0, 1] are used as-is; raw logits go through a sigmoid.
    """
    score = float(score)
    if not math.isfinite(score):
        return 0
    if not 0.0 <= score <= 1.0:
        score = 1.0 / (1.0 + math.exp(-score))
    return int(round(score * MAX_RELEVANCE))


def cross_encoder_scores(query, documents, config, model=None):
    """
    Score (query, passage) pairs with a cross-encoder model.

    Args:
        query: The question
        documents: Candidate Documents
        config: Configuration dictionary with reranking settings
        model: Optional preloaded CrossEncoder (used by tests)

    Returns:
        list: One integer per document
    """
    reranking_config = config.get('reranking', {})
    max_chars = reranking_config.get('max_chars', MAX_CANDIDATE_CHARS)

    if model is None:
        model = load_cross_encoder(
            reranking_config.get('cross_encoder_model', 'cross-encoder/ms-marco-MiniLM-L-6-v2'),
            reranking_config.get('device', 'cpu'),
        )

    pairs = [(query, document.content[:max_chars]) for document in documents]
    return [cross_encoder_relevance(score) for score in model.predict(pairs)]


def rerank_documents(query, documents, client, config, logger=None, cross_encoder=None):
    """
    Rerank candidate documents by relevance to the query.

    Args:
        query: The question
        documents: Candidate Documents in fused order
        client: OpenAI client (used by the 'llm' backend)
        config: Configuration dictionary with reranking settings
        logger: Optional logger for tracking progress
        cross_encoder: Optional preloaded CrossEncoder for the 'cross_encoder' backend

    Returns:
        list: RankedDocument objects, one per input document, best first
    """
    if not documents:
        return []

    backend = config.get('reranking', {}).get('backend', 'llm')
    log_message(f"Reranking {len(documents)} candidates ({backend})...", logger)

    if backend == 'cross_encoder':
        scores = cross_encoder_scores(query, documents, config, model=cross_encoder)
    elif backend == 'llm':
        scores = llm_scores(query, documents, client, config)
    else:
        raise ValueError(f"Unknown reranking backend: {backend!r}")

    ranked = sort_by_relevance(documents, scores)

    log_message("Reranking complete", logger)
    return ranked


def rerank_with_details(query, documents, client, config, logger=None):
    """
    Rerank and report how far each document moved.

    Useful for inspecting whether the model overrides the fused order.

    Returns:
        tuple: (ranked_documents, details_dict)
    """
    original_order = [d.id for d in documents]
    ranked = rerank_documents(query, documents, client, config, logger)
    new_order = [r.document.id for r in ranked]

    rank_changes = []
    for new_rank, doc_id in enumerate(new_order):
        old_rank = original_order.index(doc_id)
        rank_changes.append({
            'id': doc_id,
            'old_rank': old_rank + 1,
            'new_rank': new_rank + 1,
            'change': old_rank - new_rank,  # Positive = moved up
        })

    details = {
        'backend': config.get('reranking', {}).get('backend', 'llm'),
        'original_order': original_order,
        'new_order': new_order,
        'relevance': [r.relevance for r in ranked],
        'rank_changes': rank_changes,
    }
    return ranked, details
