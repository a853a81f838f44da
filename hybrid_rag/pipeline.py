# =============================================================================
# Pipeline Module
# =============================================================================
# Wires the RAG steps together. Each step is a named stage that reads and
# fills a PipelineState; build_stages() picks the stage list from config and
# run_stages() runs it. Skipping keyword search or reranking is a config
# change, not a separate code path.
#
#   hybrid: augment -> hybrid retrieval -> fusion -> rerank -> compose -> generate
#   simple: augment -> vector retrieval -> compose -> generate

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

from hybrid_rag.config import get_secrets
from hybrid_rag.conversation import (
    ASSISTANT,
    HISTORY_TURNS,
    USER,
    ConversationTurn,
    augment_query,
    current_question,
    format_history,
)
from hybrid_rag.embedding import create_openai_client
from hybrid_rag.errors import PipelineError
from hybrid_rag.fusion import FusionWeights, fuse_results
from hybrid_rag.reranking import rerank_documents
from hybrid_rag.response import (
    MAX_CONTEXT_DOCUMENTS,
    compose_prompt,
    format_context,
    generate_answer,
    select_context_documents,
)
from hybrid_rag.retrieval import document_from_match, hybrid_search, vector_search
from hybrid_rag.run_tracker import log_message
from hybrid_rag.vector_store import VectorStore, create_qdrant_client

log = logging.getLogger(__name__)


@dataclass
class Providers:
    """External collaborators used by one pipeline invocation."""
    embedder: Any
    chat: Any
    store: Any
    cross_encoder: Any = None

    def close(self):
        close = getattr(self.store, 'close', None)
        if close:
            close()


def create_providers(config, secrets):
    """
    Build fresh provider clients for one request.

    Args:
        config: Configuration dictionary
        secrets: Dictionary from get_secrets()

    Returns:
        Providers: OpenAI client (embeddings and chat) plus the vector store
    """
    openai_client = create_openai_client(secrets, config)
    store = VectorStore(create_qdrant_client(secrets, config), secrets['qdrant_collection'])
    return Providers(embedder=openai_client, chat=openai_client, store=store)


@dataclass
class PipelineState:
    conversation: List[ConversationTurn]
    question: str = ""
    history: str = ""
    query: str = ""
    vector_matches: list = field(default_factory=list)
    keyword_matches: list = field(default_factory=list)
    fused: list = field(default_factory=list)
    candidates: list = field(default_factory=list)
    ranked: Optional[list] = None
    context_documents: list = field(default_factory=list)
    prompt: str = ""
    answer: str = ""


@dataclass(frozen=True)
class Stage:
    name: str
    run: Callable[[PipelineState, Providers, dict, Any], None]


# =============================================================================
# Stages
# =============================================================================

def augment_stage(state, providers, config, logger):
    if not state.conversation or state.conversation[-1].role != USER:
        raise ValueError("The last conversation turn must be a user question")

    window = config.get('retrieval', {}).get('history_turns', HISTORY_TURNS)
    state.question = current_question(state.conversation)
    state.history = format_history(state.conversation, window)
    state.query = augment_query(state.conversation, window)


def vector_stage(state, providers, config, logger):
    top_k = config.get('retrieval', {}).get('simple_top_k', 3)
    state.vector_matches = vector_search(state.query, providers.embedder, providers.store, config, top_k)
    state.candidates = [document_from_match(m) for m in state.vector_matches]


def hybrid_retrieval_stage(state, providers, config, logger):
    state.vector_matches, state.keyword_matches = hybrid_search(
        state.query, providers.embedder, providers.store, config, logger
    )


def fusion_stage(state, providers, config, logger):
    state.fused = fuse_results(state.vector_matches, state.keyword_matches, FusionWeights.from_config(config))
    state.candidates = [candidate.document for candidate in state.fused]
    log_message(f"  Fused {len(state.candidates)} unique candidates", logger)


def rerank_stage(state, providers, config, logger):
    state.ranked = rerank_documents(
        state.query,
        state.candidates,
        providers.chat,
        config,
        logger,
        cross_encoder=providers.cross_encoder,
    )


def compose_stage(state, providers, config, logger):
    limit = config.get('response', {}).get('context_docs', MAX_CONTEXT_DOCUMENTS)
    ranked_or_plain = state.ranked if state.ranked is not None else state.candidates
    state.context_documents = select_context_documents(ranked_or_plain, limit)
    state.prompt = compose_prompt(state.history, format_context(state.context_documents), state.question)


def generate_stage(state, providers, config, logger):
    state.answer = generate_answer(state.prompt, providers.chat, config, logger)


def build_stages(config, generate=True):
    """
    Choose the stage list for the configured pipeline variant.

    Args:
        config: Configuration dictionary (retrieval.mode, reranking.enabled)
        generate: Include prompt composition and answer generation

    Returns:
        list: Stage objects in execution order
    """
    mode = config.get('retrieval', {}).get('mode', 'hybrid')

    stages = [Stage('augment', augment_stage)]

    if mode == 'simple':
        stages.append(Stage('vector_retrieval', vector_stage))
    elif mode == 'hybrid':
        stages.append(Stage('hybrid_retrieval', hybrid_retrieval_stage))
        stages.append(Stage('fusion', fusion_stage))
        if config.get('reranking', {}).get('enabled', True):
            stages.append(Stage('rerank', rerank_stage))
    else:
        raise ValueError(f"Unknown retrieval mode: {mode!r}")

    if generate:
        stages.append(Stage('compose', compose_stage))
        stages.append(Stage('generate', generate_stage))

    return stages


def run_stages(stages, state, providers, config, logger=None):
    """
    Run stages in order on one state. Errors propagate unchanged.

    Returns:
        PipelineState: The filled-in state
    """
    for stage in stages:
        log_message(f"Stage: {stage.name}", logger)
        stage.run(state, providers, config, logger)
    return state


def run_pipeline(conversation, config, providers, logger=None, generate=True):
    """
    Run the configured pipeline on a conversation.

    Unlike answer(), errors are not wrapped; use this when the caller wants
    the intermediate results (retrieved documents, prompt).

    Returns:
        PipelineState
    """
    state = PipelineState(conversation=list(conversation))
    return run_stages(build_stages(config, generate), state, providers, config, logger)


def ask(conversation, config, secrets=None, providers=None, logger=None):
    """
    Run the full pipeline, hiding failure details from the caller.

    Provider clients are created for this call unless given. Any failure is
    logged with its traceback and re-raised as one opaque PipelineError.

    Args:
        conversation: List of ConversationTurn, oldest first
        config: Configuration dictionary
        secrets: Optional secrets dictionary (default: get_secrets())
        providers: Optional Providers to use instead of creating new ones
        logger: Optional logger; defaults to this module's logger

    Returns:
        PipelineState: With `answer` and `context_documents` filled in

    Raises:
        PipelineError: If any stage fails
    """
    logger = logger or log
    owns_providers = providers is None

    try:
        if owns_providers:
            providers = create_providers(config, secrets or get_secrets())
        return run_pipeline(conversation, config, providers, logger)
    except Exception as e:
        logger.exception(f"Pipeline failed: {e}")
        raise PipelineError() from e
    finally:
        if owns_providers and providers is not None:
            providers.close()


def answer(conversation, config, secrets=None, providers=None, logger=None):
    """
    Answer the last user turn of a conversation.

    Takes the same arguments as ask().

    Returns:
        list: The conversation with one new assistant turn appended

    Raises:
        PipelineError: If any stage fails
    """
    state = ask(conversation, config, secrets, providers, logger)
    return list(conversation) + [ConversationTurn(role=ASSISTANT, content=state.answer)]
