# =============================================================================
# Retrieval Module
# =============================================================================
# This module searches the vector store in two ways:
#   - vector search: embed the query and take the nearest passages
#   - keyword search: one metadata-filtered query per keyword, using a zero
#     vector so only the filter decides what comes back
# Both run concurrently; fusion waits until every query has finished.

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from hybrid_rag.embedding import get_embedding, get_embedding_dimension
from hybrid_rag.run_tracker import log_message
from hybrid_rag.vector_store import TEXT_FIELDS, keyword_filter


@dataclass(frozen=True)
class Document:
    id: Any
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    raw_score: Optional[float] = None


def extract_text(metadata):
    """
    Pull the passage text out of a match's metadata.

    The first non-empty value among 'content' and 'text' wins.

    Args:
        metadata: Payload dictionary of a match

    Returns:
        str: The passage text, or "" when neither field is set
    """
    for key in TEXT_FIELDS:
        value = metadata.get(key)
        if value:
            return str(value)
    return ""


def document_from_match(match, score=None):
    """
    Turn a raw store match into a Document.

    The similarity reported by the store is kept both as `raw_score` and in
    the metadata under 'score' so it survives serialization.

    Args:
        match: {'id', 'score', 'metadata'} dictionary from VectorStore.query
        score: Optional score to record instead of the match score

    Returns:
        Document
    """
    metadata = dict(match.get('metadata') or {})
    raw_score = match.get('score') if score is None else score
    metadata['score'] = raw_score
    return Document(
        id=match['id'],
        content=extract_text(metadata),
        metadata=metadata,
        raw_score=raw_score,
    )


def vector_search(query, embedder, store, config, top_k=None):
    """
    Embed the query and return the nearest matches from the store.

    Provider and store errors are not caught here.

    Args:
        query: The (augmented) query text
        embedder: OpenAI client used for embeddings
        store: VectorStore to query
        config: Configuration dictionary
        top_k: Number of matches (default: retrieval.hybrid_top_k)

    Returns:
        list: Match dictionaries, best first
    """
    retrieval_config = config.get('retrieval', {})
    if top_k is None:
        top_k = retrieval_config.get('hybrid_top_k', 10)

    model = config['embedding']['model']
    query_embedding = get_embedding(query, embedder, model)

    response = store.query(query_embedding, top_k, include_metadata=True)
    return response['matches']


def extract_keywords(query):
    """
    Split a query into lowercase keyword tokens.

    Tokens are taken literally: no stopword removal, no stemming and no
    punctuation stripping. A repeated token is queried once per occurrence.

    Example:
        extract_keywords("What year was Acme founded?")
        -> ['what', 'year', 'was', 'acme', 'founded?']
    """
    return query.lower().split()


def _keyword_query(keyword, store, zero_vector, top_k):
    response = store.query(zero_vector, top_k, include_metadata=True, filter=keyword_filter(keyword))
    # No matches for a keyword is a valid answer, not an error
    return response.get('matches') or []


def _submit_keyword_queries(executor, keywords, store, config):
    retrieval_config = config.get('retrieval', {})
    top_k = retrieval_config.get('keyword_top_k', 5)
    zero_vector = [0.0] * get_embedding_dimension(config)

    return [
        executor.submit(_keyword_query, keyword, store, zero_vector, top_k)
        for keyword in keywords
    ]


def _flatten(futures):
    # Called after the executor has shut down, so every future is finished.
    # The first store error, if any, is re-raised here.
    matches = []
    for future in futures:
        matches.extend(future.result())
    return matches


def keyword_search(query, store, config, logger=None):
    """
    Run one filtered store query per keyword, concurrently.

    All matches are flattened into one list. A document matching two
    keywords appears twice; fusion adds both contributions.

    Args:
        query: The (augmented) query text
        store: VectorStore to query
        config: Configuration dictionary
        logger: Optional logger for tracking progress

    Returns:
        list: Match dictionaries from every keyword query
    """
    keywords = extract_keywords(query)
    if not keywords:
        return []

    log_message(f"  Keyword search with {len(keywords)} keywords", logger)

    max_workers = config.get('retrieval', {}).get('max_workers', 8)
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = _submit_keyword_queries(executor, keywords, store, config)

    return _flatten(futures)


def hybrid_search(query, embedder, store, config, logger=None):
    """
    Run the vector query and all keyword queries at the same time.

    Returns only once every query has completed. If any of them raised, the
    first error (vector query first, then keywords in order) propagates.

    Args:
        query: The (augmented) query text
        embedder: OpenAI client used for embeddings
        store: VectorStore to query
        config: Configuration dictionary
        logger: Optional logger for tracking progress

    Returns:
        tuple: (vector_matches, keyword_matches)
    """
    retrieval_config = config.get('retrieval', {})
    top_k = retrieval_config.get('hybrid_top_k', 10)
    max_workers = retrieval_config.get('max_workers', 8)
    keywords = extract_keywords(query)

    log_message(
        f"  Hybrid search: top_k={top_k}, {len(keywords)} keyword queries",
        logger,
    )

    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        vector_future = executor.submit(vector_search, query, embedder, store, config, top_k)
        keyword_futures = _submit_keyword_queries(executor, keywords, store, config)

    vector_matches = vector_future.result()
    keyword_matches = _flatten(keyword_futures)

    log_message(
        f"  Found {len(vector_matches)} vector matches and {len(keyword_matches)} keyword matches",
        logger,
    )

    return vector_matches, keyword_matches
