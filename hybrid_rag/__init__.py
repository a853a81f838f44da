# =============================================================================
# Hybrid RAG - Source Package
# =============================================================================
# This package contains all modules for the question-answering pipeline:
#   - config.py        : Configuration loading, merging and secrets
#   - errors.py        : Exception types
#   - conversation.py  : Conversation turns and the history window
#   - embedding.py     : OpenAI client creation and embeddings
#   - vector_store.py  : Qdrant collection query wrapper
#   - retrieval.py     : Vector and keyword search
#   - fusion.py        : Weighted fusion of both result sets
#   - reranking.py     : LLM (or cross-encoder) relevance reranking
#   - response.py      : Prompt composition and answer generation
#   - pipeline.py      : Stage list and the answer() entry point
#   - evaluation.py    : Offline evaluation harness and metrics
#   - run_tracker.py   : Track runs in ./runs folder
