"""Shared fakes: OpenAI-shaped client and an in-memory vector store."""

import threading
from types import SimpleNamespace

import pytest

from hybrid_rag.pipeline import Providers


def make_config(**overrides):
    config = {
        'embedding': {'model': 'text-embedding-3-small', 'dimension': 8},
        'retrieval': {
            'mode': 'hybrid',
            'simple_top_k': 3,
            'hybrid_top_k': 10,
            'keyword_top_k': 5,
            'history_turns': 4,
            'max_workers': 4,
        },
        'fusion': {'vector_weight': 0.6, 'keyword_weight': 0.4},
        'reranking': {'enabled': True, 'backend': 'llm', 'model': 'gpt-4o-mini', 'max_chars': 1000},
        'response': {'model': 'gpt-4o-mini', 'context_docs': 3},
        'evaluation': {
            'judge_model': 'gpt-4o',
            'relevance_model': 'text-embedding-ada-002',
            'source_key': 'sourceFile',
        },
    }
    for section, values in overrides.items():
        config[section] = dict(config.get(section, {}), **values)
    return config


def match(doc_id, score, content=None, **metadata):
    payload = {'content': content if content is not None else f"passage {doc_id}"}
    payload.update(metadata)
    return {'id': doc_id, 'score': score, 'metadata': payload}


class FakeEmbeddings:
    """embeddings.create() returning fixed or derived vectors."""

    def __init__(self, vectors=None, dimension=8):
        self.vectors = vectors or {}
        self.dimension = dimension
        self.calls = []

    def vector_for(self, text):
        if text in self.vectors:
            return list(self.vectors[text])
        vector = [0.0] * self.dimension
        vector[len(text) % self.dimension] = 1.0
        return vector

    def create(self, input, model):
        self.calls.append({'input': input, 'model': model})
        texts = input if isinstance(input, list) else [input]
        data = [
            SimpleNamespace(embedding=self.vector_for(text), index=i)
            for i, text in enumerate(texts)
        ]
        # Reversed on purpose; callers must sort by index
        return SimpleNamespace(data=list(reversed(data)))


class FakeCompletions:
    """chat.completions.create() answering through a callable or a fixed string."""

    def __init__(self, reply="fake answer"):
        self.reply = reply
        self.calls = []

    def create(self, model, messages, **kwargs):
        self.calls.append({'model': model, 'messages': messages, **kwargs})
        content = self.reply(messages) if callable(self.reply) else self.reply
        message = SimpleNamespace(content=content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


class FakeOpenAI:
    def __init__(self, reply="fake answer", vectors=None):
        self.embeddings = FakeEmbeddings(vectors)
        self.chat = SimpleNamespace(completions=FakeCompletions(reply))


class FakeStore:
    """
    VectorStore stand-in.

    Unfiltered queries return `vector_matches`; filtered queries look the
    keyword up in `keyword_matches`. Keywords in `failing` raise.
    """

    def __init__(self, vector_matches=None, keyword_matches=None, failing=(), points=10):
        self.vector_matches = vector_matches or []
        self.keyword_matches = keyword_matches or {}
        self.failing = set(failing)
        self.points = points
        self.calls = []
        self.closed = False
        self._lock = threading.Lock()

    def query(self, vector, top_k, include_metadata=True, filter=None):
        keyword = filter.should[0].match.text if filter is not None else None
        with self._lock:
            self.calls.append({'vector': list(vector), 'top_k': top_k, 'keyword': keyword})

        if keyword is None:
            return {'matches': list(self.vector_matches[:top_k])}
        if keyword in self.failing:
            raise ConnectionError(f"store unavailable for {keyword}")
        return {'matches': list(self.keyword_matches.get(keyword, [])[:top_k])}

    def keyword_calls(self):
        return [c for c in self.calls if c['keyword'] is not None]

    def check_connection(self):
        return self.points

    def close(self):
        self.closed = True


def rerank_or_answer(rerank_reply, answer="final answer"):
    """Chat reply function: score lists for rerank prompts, `answer` otherwise."""
    def reply(messages):
        if 'CANDIDATE PASSAGES' in messages[-1]['content']:
            return rerank_reply
        return answer
    return reply


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def openai_client():
    return FakeOpenAI()


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def providers(openai_client, store):
    return Providers(embedder=openai_client, chat=openai_client, store=store)
