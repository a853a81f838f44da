import pytest

from conftest import FakeOpenAI, make_config
from hybrid_rag.reranking import (
    build_rerank_prompt,
    cross_encoder_relevance,
    parse_rerank_scores,
    rerank_documents,
    rerank_with_details,
)
from hybrid_rag.retrieval import Document


def docs(n):
    return [Document(id=f"d{i}", content=f"passage {i}") for i in range(n)]


def test_parse_scores_positionally():
    assert parse_rerank_scores("90, 10, 55", 3) == [90, 10, 55]


def test_parse_non_numeric_tokens_become_zero():
    assert parse_rerank_scores("90, high, 55", 3) == [90, 0, 55]


def test_parse_missing_positions_default_to_zero():
    assert parse_rerank_scores("70", 3) == [70, 0, 0]


def test_parse_out_of_range_becomes_zero():
    assert parse_rerank_scores("150, -5, 100, 0", 4) == [0, 0, 100, 0]


def test_parse_ignores_extra_scores():
    assert parse_rerank_scores("1, 2, 3, 4", 2) == [1, 2]


def test_parse_rounds_decimals_and_rejects_nan():
    assert parse_rerank_scores("72.6, nan, inf", 3) == [73, 0, 0]


def test_parse_empty_reply():
    assert parse_rerank_scores("", 2) == [0, 0]
    assert parse_rerank_scores(None, 1) == [0]


def test_prompt_numbers_candidates_and_truncates():
    long_doc = Document(id='long', content='x' * 1500 + 'TAIL')
    prompt = build_rerank_prompt("question?", [Document(id='a', content='first'), long_doc])

    assert "[1] first" in prompt
    assert "[2] " + 'x' * 1000 in prompt
    assert 'x' * 1001 not in prompt
    assert 'TAIL' not in prompt
    assert "exactly 2 scores" in prompt
    assert "80-100" in prompt


def test_rerank_keeps_every_document_and_sorts():
    client = FakeOpenAI(reply="20, not-a-number, 95, 400")
    ranked = rerank_documents("q", docs(4), client, make_config())

    assert len(ranked) == 4
    assert [r.document.id for r in ranked] == ['d2', 'd0', 'd1', 'd3']
    assert [r.relevance for r in ranked] == [95, 20, 0, 0]
    for r in ranked:
        assert isinstance(r.relevance, int)
        assert 0 <= r.relevance <= 100


def test_rerank_ties_keep_input_order():
    client = FakeOpenAI(reply="50, 50, 80, 50")
    ranked = rerank_documents("q", docs(4), client, make_config())
    assert [r.document.id for r in ranked] == ['d2', 'd0', 'd1', 'd3']


def test_rerank_short_reply_still_returns_all():
    client = FakeOpenAI(reply="10")
    ranked = rerank_documents("q", docs(5), client, make_config())
    assert len(ranked) == 5


def test_rerank_uses_temperature_zero_and_configured_model():
    client = FakeOpenAI(reply="1, 2")
    rerank_documents("q", docs(2), client, make_config(reranking={'model': 'judge-model'}))

    call = client.chat.completions.calls[0]
    assert call['model'] == 'judge-model'
    assert call['temperature'] == 0


def test_rerank_empty_candidates_skips_model():
    client = FakeOpenAI()
    assert rerank_documents("q", [], client, make_config()) == []
    assert client.chat.completions.calls == []


def test_rerank_provider_error_propagates():
    class Broken:
        def create(self, **kwargs):
            raise TimeoutError("slow")

    client = FakeOpenAI()
    client.chat.completions = Broken()
    with pytest.raises(TimeoutError):
        rerank_documents("q", docs(2), client, make_config())


def test_cross_encoder_backend():
    class FakeCrossEncoder:
        def predict(self, pairs):
            return [-4.0, 0.9, 3.0]

    config = make_config(reranking={'backend': 'cross_encoder'})
    ranked = rerank_documents("q", docs(3), None, config, cross_encoder=FakeCrossEncoder())

    assert [r.document.id for r in ranked] == ['d2', 'd1', 'd0']
    assert [r.relevance for r in ranked] == [95, 90, 2]


def test_cross_encoder_relevance_range():
    assert cross_encoder_relevance(0.5) == 50
    assert cross_encoder_relevance(0.0) == 0
    assert cross_encoder_relevance(float('nan')) == 0
    assert 0 <= cross_encoder_relevance(-50.0) <= 100


def test_unknown_backend_rejected():
    with pytest.raises(ValueError):
        rerank_documents("q", docs(1), FakeOpenAI(), make_config(reranking={'backend': 'bm25'}))


def test_rerank_with_details_reports_moves():
    client = FakeOpenAI(reply="10, 90")
    ranked, details = rerank_with_details("q", docs(2), client, make_config())

    assert details['original_order'] == ['d0', 'd1']
    assert details['new_order'] == ['d1', 'd0']
    assert details['rank_changes'][0] == {'id': 'd1', 'old_rank': 2, 'new_rank': 1, 'change': 1}
