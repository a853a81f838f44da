# =============================================================================
# Evaluation Module
# =============================================================================
# Replays a labeled question set through the pipeline and scores each answer:
#   - response time around the pipeline call
#   - relevance: cosine similarity between answer and expected answer embeddings
#   - source overlap between cited and expected source files
#   - concept coverage judged by a chat model
# then aggregates run metrics and writes a CSV of results plus metrics.json.

import json
import logging
import re
import statistics
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional

import numpy as np
import pandas as pd

from hybrid_rag.conversation import USER, ConversationTurn
from hybrid_rag.embedding import get_embeddings
from hybrid_rag.errors import EvaluationStateError, JudgeOutputError
from hybrid_rag.pipeline import ask

log = logging.getLogger(__name__)

RESULTS_FILENAME = 'evaluation_results.csv'
METRICS_FILENAME = 'metrics.json'

RESULT_COLUMNS = [
    'questionId', 'question', 'systemAnswer', 'expectedAnswer', 'references',
    'responseTime', 'relevanceScore', 'sourceOverlap', 'conceptCoverage',
]


@dataclass
class EvaluationQuestion:
    id: str
    question: str
    expected_answer: Optional[str] = None
    source_files: List[str] = field(default_factory=list)
    concepts: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, item):
        metadata = item.get('metadata') or {}
        return cls(
            id=str(item['id']),
            question=item['question'],
            expected_answer=item.get('expectedAnswer') or None,
            source_files=list(metadata.get('sourceFiles') or []),
            concepts=list(metadata.get('concepts') or []),
        )


@dataclass
class EvaluationResult:
    question_id: str
    question: str
    system_answer: str
    expected_answer: Optional[str]
    references: List[str]
    response_time_ms: float
    relevance_score: Optional[float] = None
    source_overlap: Optional[float] = None
    concept_coverage: Optional[float] = None

    def to_row(self):
        return {
            'questionId': self.question_id,
            'question': self.question,
            'systemAnswer': self.system_answer,
            'expectedAnswer': self.expected_answer,
            'references': json.dumps(self.references, ensure_ascii=False),
            'responseTime': self.response_time_ms,
            'relevanceScore': self.relevance_score,
            'sourceOverlap': self.source_overlap,
            'conceptCoverage': self.concept_coverage,
        }


@dataclass
class EvaluationMetrics:
    total_questions: int
    evaluated_questions: int
    failed_questions: int
    average_response_time: Optional[float]
    average_relevance_score: Optional[float]
    coverage: Optional[float]
    source_accuracy: Optional[float]
    concept_accuracy: Optional[float]

    def to_dict(self):
        return {
            'totalQuestions': self.total_questions,
            'evaluatedQuestions': self.evaluated_questions,
            'failedQuestions': self.failed_questions,
            'averageResponseTime': self.average_response_time,
            'averageRelevanceScore': self.average_relevance_score,
            'coverage': self.coverage,
            'sourceAccuracy': self.source_accuracy,
            'conceptAccuracy': self.concept_accuracy,
        }


class EvaluationState(Enum):
    IDLE = 'idle'
    LOADED = 'loaded'
    RUNNING = 'running'
    AGGREGATED = 'aggregated'
    PERSISTED = 'persisted'


def load_questions(path) -> List[EvaluationQuestion]:
    """
    Read a question set: a JSON array of EvaluationQuestion objects.

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the file is not a JSON array
    """
    questions_path = Path(path)

    with open(questions_path, 'r', encoding='utf-8') as f:
        data = json.load(f)

    if not isinstance(data, list):
        raise ValueError(f"Expected a JSON array of questions in {questions_path}")

    return [EvaluationQuestion.from_dict(item) for item in data]


# =============================================================================
# Scorers
# =============================================================================

def cosine_similarity(vec1, vec2):
    """
    Cosine similarity of two vectors; 0.0 if either has zero magnitude.

    Raises:
        ValueError: If the vectors differ in length
    """
    a = np.asarray(vec1, dtype=float)
    b = np.asarray(vec2, dtype=float)
    if a.shape != b.shape:
        raise ValueError(f"Vector sizes differ: {a.shape} vs {b.shape}")

    magnitude = np.linalg.norm(a) * np.linalg.norm(b)
    if magnitude == 0:
        return 0.0
    return float(np.dot(a, b) / magnitude)


def calculate_relevance_score(system_answer, expected_answer, embedder, model):
    """Embed both answers in one call and compare them."""
    vec1, vec2 = get_embeddings([system_answer, expected_answer], embedder, model)
    return cosine_similarity(vec1, vec2)


def calculate_source_overlap(system_sources, expected_sources):
    """
    |system ∩ expected| / max(|system|, |expected|), over distinct sources.

    Without expected sources there is nothing to penalize, so the overlap is 1.
    """
    expected = set(expected_sources)
    if not expected:
        return 1.0

    system = set(system_sources)
    return len(system & expected) / max(len(system), len(expected))


JUDGE_SYSTEM_PROMPT = """You are an evaluator. Given a list of expected concepts and an answer,
determine how many of the concepts are meaningfully covered in the answer.
Respond with a number between 0 and 1 representing the coverage ratio."""

_LEADING_NUMBER = re.compile(r'^\s*([-+]?(?:\d+\.?\d*|\.\d+))')


def parse_judge_score(content):
    """
    Read the coverage ratio from the judge's reply.

    The reply must start with a number; trailing text is ignored. The value
    is clamped into [0, 1].

    Raises:
        JudgeOutputError: If the reply is empty or does not start with a number
    """
    if not content or not content.strip():
        raise JudgeOutputError("Concept judge returned an empty response")

    match = _LEADING_NUMBER.match(content)
    if not match:
        raise JudgeOutputError(f"Concept judge returned a non-numeric response: {content[:100]!r}")

    return max(0.0, min(1.0, float(match.group(1))))


def calculate_concept_coverage(answer, concepts, client, config):
    """
    Ask the judge model what fraction of `concepts` the answer covers.

    Returns 1.0 without calling the model when there are no concepts.
    """
    if not concepts:
        return 1.0

    model = config.get('evaluation', {}).get('judge_model', 'gpt-4o')

    response = client.chat.completions.create(
        model=model,
        messages=[
            {"role": "system", "content": JUDGE_SYSTEM_PROMPT},
            {"role": "user", "content": f"Expected concepts: {', '.join(concepts)}\nAnswer: {answer}"},
        ],
        temperature=0,
    )

    return parse_judge_score(response.choices[0].message.content)


def document_sources(documents, source_key='sourceFile'):
    """Distinct source names of the given documents, in order; ids stand in when unset."""
    sources = []
    for document in documents:
        source = document.metadata.get(source_key) or str(document.id)
        if source not in sources:
            sources.append(source)
    return sources


def _mean(values):
    values = [v for v in values if v is not None]
    return statistics.fmean(values) if values else None


def aggregate_metrics(results, total_questions, failed_questions=0):
    """
    Summarize per-question results.

    Failed questions are absent from `results` and so from every mean.
    The relevance mean only covers questions that had an expected answer;
    it is None when none did.

    Args:
        results: EvaluationResult list of successfully evaluated questions
        total_questions: Size of the question set
        failed_questions: Number of questions that raised

    Returns:
        EvaluationMetrics
    """
    evaluated = len(results)
    return EvaluationMetrics(
        total_questions=total_questions,
        evaluated_questions=evaluated,
        failed_questions=failed_questions,
        average_response_time=_mean([r.response_time_ms for r in results]),
        average_relevance_score=_mean([r.relevance_score for r in results]),
        coverage=(sum(1 for r in results if r.references) / evaluated) if evaluated else None,
        source_accuracy=_mean([r.source_overlap for r in results]),
        concept_accuracy=_mean([r.concept_coverage for r in results]),
    )


def pipeline_responder(config, providers, logger=None):
    """
    Build the question -> (answer, context documents) callable the harness times.

    Each question is asked as a fresh single-turn conversation.
    """
    def respond(question):
        conversation = [ConversationTurn(role=USER, content=question)]
        state = ask(conversation, config, providers=providers, logger=logger)
        return state.answer, state.context_documents

    return respond


# =============================================================================
# Harness
# =============================================================================

class RAGEvaluator:
    """
    Runs a question set through the pipeline, one question at a time.

    Steps must be called in order: load -> run -> aggregate -> persist.
    """

    def __init__(self, config, providers, responder=None, logger=None):
        self.config = config
        self.providers = providers
        self.logger = logger or log
        self.responder = responder or pipeline_responder(config, providers, self.logger)
        self.state = EvaluationState.IDLE
        self.questions: List[EvaluationQuestion] = []
        self.results: List[EvaluationResult] = []
        self.failures: List[str] = []
        self.metrics: Optional[EvaluationMetrics] = None

    def _transition(self, expected, new_state):
        if self.state is not expected:
            raise EvaluationStateError(
                f"Cannot move to {new_state.value} from {self.state.value} "
                f"(expected {expected.value})"
            )
        self.state = new_state

    def load(self, questions):
        """
        Accept the question set and check the vector store is reachable.

        Raises:
            EvaluationStateError: If the set is empty or load was already called
        """
        if not questions:
            raise EvaluationStateError("No evaluation questions to load")
        if self.state is not EvaluationState.IDLE:
            raise EvaluationStateError(f"Cannot load questions in state {self.state.value}")

        points = self.providers.store.check_connection()
        self.logger.info(f"Vector store reachable ({points} points)")

        self.questions = list(questions)
        self._transition(EvaluationState.IDLE, EvaluationState.LOADED)
        self.logger.info(f"Loaded {len(self.questions)} evaluation questions")

    def evaluate_question(self, question):
        """Ask one question, time it and score the answer."""
        evaluation_config = self.config.get('evaluation', {})

        start = time.perf_counter()
        answer, documents = self.responder(question.question)
        response_time_ms = (time.perf_counter() - start) * 1000

        references = document_sources(documents, evaluation_config.get('source_key', 'sourceFile'))

        relevance_score = None
        if question.expected_answer:
            relevance_score = calculate_relevance_score(
                answer,
                question.expected_answer,
                self.providers.embedder,
                evaluation_config.get('relevance_model', self.config['embedding']['model']),
            )

        return EvaluationResult(
            question_id=question.id,
            question=question.question,
            system_answer=answer,
            expected_answer=question.expected_answer,
            references=references,
            response_time_ms=response_time_ms,
            relevance_score=relevance_score,
            source_overlap=calculate_source_overlap(references, question.source_files),
            concept_coverage=calculate_concept_coverage(
                answer, question.concepts, self.providers.chat, self.config
            ),
        )

    def run(self):
        """
        Evaluate every loaded question sequentially.

        A question that raises is logged, recorded in `failures` and left out
        of the results; the run continues with the next one.

        Returns:
            list: EvaluationResult for each question that succeeded
        """
        self._transition(EvaluationState.LOADED, EvaluationState.RUNNING)
        total = len(self.questions)

        for i, question in enumerate(self.questions, 1):
            self.logger.info(f"[{i}/{total}] Evaluating question: {question.id}")
            try:
                result = self.evaluate_question(question)
            except Exception:
                self.logger.exception(f"Question {question.id} failed; excluded from metrics")
                self.failures.append(question.id)
                continue
            self.results.append(result)

        self.logger.info(
            f"Evaluated {len(self.results)}/{total} questions ({len(self.failures)} failed)"
        )
        return self.results

    def aggregate(self):
        """Compute run metrics from the collected results."""
        self._transition(EvaluationState.RUNNING, EvaluationState.AGGREGATED)
        self.metrics = aggregate_metrics(self.results, len(self.questions), len(self.failures))
        return self.metrics

    def persist(self, output_dir):
        """
        Write evaluation_results.csv and metrics.json into `output_dir`.

        Returns:
            tuple: (results_path, metrics_path)
        """
        self._transition(EvaluationState.AGGREGATED, EvaluationState.PERSISTED)

        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)

        results_path = output_dir / RESULTS_FILENAME
        df = pd.DataFrame([r.to_row() for r in self.results], columns=RESULT_COLUMNS)
        df.to_csv(results_path, index=False, encoding='utf-8')

        metrics_path = output_dir / METRICS_FILENAME
        data = {
            'timestamp': datetime.now().isoformat(),
            'metrics': self.metrics.to_dict(),
            'failedQuestionIds': self.failures,
            'config': {
                'embedding_model': self.config.get('embedding', {}).get('model'),
                'retrieval_mode': self.config.get('retrieval', {}).get('mode'),
                'reranking_enabled': self.config.get('reranking', {}).get('enabled', False),
                'response_model': self.config.get('response', {}).get('model'),
            },
        }
        with open(metrics_path, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, ensure_ascii=False)

        self.logger.info(f"Saved results to: {results_path}")
        self.logger.info(f"Saved metrics to: {metrics_path}")
        return results_path, metrics_path

    def evaluate(self, questions, output_dir):
        """Run every step: load, run, aggregate and persist."""
        self.load(questions)
        self.run()
        metrics = self.aggregate()
        self.persist(output_dir)
        return metrics
