# =============================================================================
# Vector Store Module
# =============================================================================
# Thin wrapper around a Qdrant collection that exposes the one query call the
# pipeline needs. The index itself is built elsewhere; this module only reads.

import math

from qdrant_client import QdrantClient, models

from hybrid_rag.config import resolve_path

# Payload fields that may hold the passage text, in priority order
TEXT_FIELDS = ('content', 'text')


def create_qdrant_client(secrets, config=None):
    """
    Create a Qdrant client from the QDRANT_URL setting.

    QDRANT_URL may be an http(s) URL of a Qdrant server, ":memory:", or a
    path to a local storage folder (resolved from the project root).

    Args:
        secrets: Dictionary from config.get_secrets()
        config: Optional configuration dictionary

    Returns:
        QdrantClient: A connected client
    """
    config = config or {}
    location = secrets.get('qdrant_url')
    timeout = config.get('providers', {}).get('timeout')

    if not location:
        raise ValueError("Qdrant location not found (set QDRANT_URL)")

    if location == ':memory:':
        return QdrantClient(location=location)

    if location.startswith(('http://', 'https://')):
        return QdrantClient(
            url=location,
            api_key=secrets.get('qdrant_api_key'),
            timeout=int(timeout) if timeout else None,
            prefer_grpc=config.get('vector_store', {}).get('prefer_grpc', False),
        )

    storage_path = resolve_path(location)
    storage_path.mkdir(parents=True, exist_ok=True)
    return QdrantClient(path=str(storage_path))


def keyword_filter(keyword, fields=TEXT_FIELDS):
    """
    Build a filter matching points whose text payload contains `keyword`.

    Either text field may match, so the conditions go in `should`.

    Args:
        keyword: The literal keyword
        fields: Payload keys to look in

    Returns:
        models.Filter: A Qdrant payload filter
    """
    return models.Filter(
        should=[
            models.FieldCondition(key=field, match=models.MatchText(text=keyword))
            for field in fields
        ]
    )


class VectorStore:
    """
    Query interface over one Qdrant collection.

    Matches come back as plain dicts ({'id', 'score', 'metadata'}) so the
    rest of the pipeline never touches Qdrant types.
    """

    def __init__(self, client, collection_name):
        self.client = client
        self.collection_name = collection_name

    def query(self, vector, top_k, include_metadata=True, filter=None):
        """
        Return the `top_k` nearest points to `vector`.

        Args:
            vector: Query embedding
            top_k: Maximum number of matches
            include_metadata: Return the payload with each match
            filter: Optional models.Filter restricting candidates

        Returns:
            dict: {'matches': [{'id', 'score', 'metadata'}, ...]}
        """
        response = self.client.query_points(
            collection_name=self.collection_name,
            query=list(vector),
            limit=top_k,
            query_filter=filter,
            with_payload=include_metadata,
        )

        matches = []
        for point in response.points:
            score = point.score
            # A zero query vector has no direction; cosine comes back as NaN
            if score is None or not math.isfinite(score):
                score = 0.0
            matches.append({
                'id': point.id,
                'score': float(score),
                'metadata': dict(point.payload or {}),
            })

        return {'matches': matches}

    def check_connection(self):
        """
        Make sure the collection is reachable.

        Raises:
            Whatever the client raises when the server or collection is missing
        """
        info = self.client.get_collection(self.collection_name)
        return info.points_count

    def close(self):
        self.client.close()
