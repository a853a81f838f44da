# =============================================================================
# Embedding Module
# =============================================================================
# This module generates vector embeddings for text using OpenAI's API.
# The same client type also serves chat completions, so provider creation for
# both lives here.

from openai import OpenAI


def create_openai_client(secrets, config=None):
    """
    Create an OpenAI client for embeddings and chat completions.

    Args:
        secrets: Dictionary from config.get_secrets()
        config: Optional configuration dictionary (reads providers.timeout)

    Returns:
        OpenAI: An initialized OpenAI client

    Raises:
        ValueError: If no API key is available
    """
    api_key = secrets.get('openai_api_key')

    if not api_key:
        raise ValueError("OpenAI API key not found (set OPENAI_API_KEY)")

    timeout = (config or {}).get('providers', {}).get('timeout')
    if timeout:
        return OpenAI(api_key=api_key, timeout=timeout)
    return OpenAI(api_key=api_key)


def get_embedding(text, embedder, model):
    """
    Generate an embedding vector for a piece of text.

    Args:
        text: The text to embed
        embedder: An OpenAI client instance
        model: The embedding model to use (e.g., "text-embedding-3-small")

    Returns:
        list: A list of floats representing the embedding vector
    """
    response = embedder.embeddings.create(
        input=text,
        model=model
    )
    return response.data[0].embedding


def get_embeddings(texts, embedder, model):
    """
    Embed several texts with a single API call.

    Returns:
        list: One vector per input text, in input order
    """
    response = embedder.embeddings.create(
        input=list(texts),
        model=model
    )
    # The API reports an index per item; do not rely on response order
    ordered = sorted(response.data, key=lambda item: item.index)
    return [item.embedding for item in ordered]


def get_embedding_dimension(config):
    """
    Get the dimension (size) of embeddings for the configured model.

    An explicit embedding.dimension setting wins; otherwise known OpenAI
    models are looked up, defaulting to 1536.

    Args:
        config: Configuration dictionary with embedding settings

    Returns:
        int: The embedding dimension
    """
    embedding_config = config.get('embedding', {})
    if embedding_config.get('dimension'):
        return int(embedding_config['dimension'])

    dimensions = {
        'text-embedding-3-small': 1536,
        'text-embedding-3-large': 3072,
        'text-embedding-ada-002': 1536,
    }
    return dimensions.get(embedding_config.get('model'), 1536)
