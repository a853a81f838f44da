import pytest

from conftest import FakeOpenAI, FakeStore, make_config, match, rerank_or_answer
from hybrid_rag.conversation import ASSISTANT, USER, ConversationTurn
from hybrid_rag.errors import PipelineError
from hybrid_rag.pipeline import Providers, answer, ask, build_stages, run_pipeline

QUESTION = "What year was X founded?"


def founded_store():
    return FakeStore(
        vector_matches=[
            match(1, 0.9, content="X is a company.", sourceFile="x.md"),
            match(2, 0.7, content="X was founded in 1999.", sourceFile="history.md"),
        ],
        keyword_matches={
            'founded?': [
                match(2, 0.8, content="X was founded in 1999.", sourceFile="history.md"),
                match(3, 0.6, content="Founders often...", sourceFile="misc.md"),
            ],
        },
    )


def providers_for(store, reply):
    client = FakeOpenAI(reply=reply)
    return Providers(embedder=client, chat=client, store=store), client


def test_stage_lists_follow_config():
    names = lambda config: [s.name for s in build_stages(config)]

    assert names(make_config()) == ['augment', 'hybrid_retrieval', 'fusion', 'rerank', 'compose', 'generate']
    assert names(make_config(reranking={'enabled': False})) == [
        'augment', 'hybrid_retrieval', 'fusion', 'compose', 'generate'
    ]
    assert names(make_config(retrieval={'mode': 'simple'})) == ['augment', 'vector_retrieval', 'compose', 'generate']
    assert [s.name for s in build_stages(make_config(), generate=False)][-1] == 'rerank'


def test_unknown_mode_rejected():
    with pytest.raises(ValueError):
        build_stages(make_config(retrieval={'mode': 'bm25'}))


def test_fusion_order_is_only_a_hint_for_reranking():
    providers, client = providers_for(founded_store(), rerank_or_answer("10, 90, 50"))
    conversation = [ConversationTurn(role=USER, content=QUESTION)]

    state = run_pipeline(conversation, make_config(), providers)

    assert [c.id for c in state.fused] == [2, 1, 3]
    assert [c.fused_score for c in state.fused] == pytest.approx([0.74, 0.54, 0.24])
    assert [r.document.id for r in state.ranked] == [1, 3, 2]
    assert [d.id for d in state.context_documents] == [1, 3, 2]
    assert state.answer == "final answer"


def test_generation_prompt_uses_clean_question_and_context():
    providers, client = providers_for(founded_store(), rerank_or_answer("90, 10, 5"))
    conversation = [ConversationTurn(role=USER, content=QUESTION)]

    run_pipeline(conversation, make_config(), providers)

    prompt = client.chat.completions.calls[-1]['messages'][0]['content']
    assert f"Question: {QUESTION}" in prompt
    assert "Current question" not in prompt
    assert "X was founded in 1999.\n\nX is a company." in prompt


def test_only_top_three_reach_generation():
    store = FakeStore(vector_matches=[match(i, 1.0 - i / 20) for i in range(15)])
    providers, client = providers_for(store, rerank_or_answer(", ".join(["50"] * 15)))

    config = make_config(retrieval={'hybrid_top_k': 15})

    state = run_pipeline([ConversationTurn(role=USER, content="q")], config, providers)

    assert len(state.ranked) == 15
    assert len(state.context_documents) == 3


def test_history_window_in_generation_prompt():
    conversation = []
    for i in range(1, 10):
        role = USER if i % 2 else ASSISTANT
        conversation.append(ConversationTurn(role=role, content=f"message-{i:02d}"))
    conversation.append(ConversationTurn(role=USER, content="message-10"))

    providers, client = providers_for(FakeStore(), "reply")
    state = run_pipeline(conversation, make_config(retrieval={'mode': 'simple'}), providers)

    prompt = client.chat.completions.calls[-1]['messages'][0]['content']
    for i in range(1, 7):
        assert f"message-{i:02d}" not in prompt
        assert f"message-{i:02d}" not in state.query
    assert "message-07" in prompt


def test_simple_mode_skips_keywords_and_reranking():
    store = founded_store()
    providers, client = providers_for(store, "simple answer")

    state = run_pipeline([ConversationTurn(role=USER, content=QUESTION)], make_config(retrieval={'mode': 'simple'}), providers)

    assert store.keyword_calls() == []
    assert state.ranked is None
    assert [d.id for d in state.context_documents] == [1, 2]
    assert store.calls[0]['top_k'] == 3
    assert len(client.chat.completions.calls) == 1


def test_hybrid_without_reranking_uses_fused_order():
    providers, client = providers_for(founded_store(), "no rerank")

    state = run_pipeline(
        [ConversationTurn(role=USER, content=QUESTION)],
        make_config(reranking={'enabled': False}),
        providers,
    )

    assert [d.id for d in state.context_documents] == [2, 1, 3]
    assert len(client.chat.completions.calls) == 1


def test_answer_appends_assistant_turn():
    providers, _ = providers_for(founded_store(), rerank_or_answer("1, 2, 3", answer="It was 1999."))
    conversation = [ConversationTurn(role=USER, content=QUESTION)]

    updated = answer(conversation, make_config(), providers=providers)

    assert len(updated) == 2
    assert updated[0] is conversation[0]
    assert updated[-1].role == ASSISTANT
    assert updated[-1].content == "It was 1999."
    assert updated[-1].id != conversation[0].id
    assert len(conversation) == 1


def test_stage_failure_becomes_opaque_pipeline_error():
    store = FakeStore(failing={'founded?'})
    providers, _ = providers_for(store, "unused")

    with pytest.raises(PipelineError) as excinfo:
        answer([ConversationTurn(role=USER, content=QUESTION)], make_config(), providers=providers)

    assert str(excinfo.value) == "Failed to generate response"
    assert isinstance(excinfo.value.__cause__, ConnectionError)


def test_last_turn_must_be_user():
    providers, _ = providers_for(FakeStore(), "unused")
    conversation = [
        ConversationTurn(role=USER, content="q"),
        ConversationTurn(role=ASSISTANT, content="a"),
    ]
    with pytest.raises(PipelineError):
        ask(conversation, make_config(), providers=providers)


def test_injected_providers_are_not_closed():
    store = founded_store()
    providers, _ = providers_for(store, rerank_or_answer("1, 2, 3"))

    ask([ConversationTurn(role=USER, content=QUESTION)], make_config(), providers=providers)

    assert store.closed is False


def test_created_providers_are_closed(monkeypatch):
    store = founded_store()
    client = FakeOpenAI(reply=rerank_or_answer("1, 2, 3"))
    monkeypatch.setattr(
        'hybrid_rag.pipeline.create_providers',
        lambda config, secrets: Providers(embedder=client, chat=client, store=store),
    )

    ask([ConversationTurn(role=USER, content=QUESTION)], make_config(), secrets={'openai_api_key': 'x'})

    assert store.closed is True


def test_keyword_queries_come_from_conversation_text_only():
    store = founded_store()
    providers, _ = providers_for(store, rerank_or_answer("10, 20, 30, 40"))
    conversation = [
        ConversationTurn(role=USER, content="Tell me about Acme"),
        ConversationTurn(role=ASSISTANT, content="Acme is a company."),
        ConversationTurn(role=USER, content="When was it founded?"),
    ]

    run_pipeline(conversation, make_config(), providers)

    expected = " ".join(turn.content for turn in conversation).lower().split()
    assert sorted(c['keyword'] for c in store.keyword_calls()) == sorted(expected)


def test_prompt_labels_do_not_pull_in_documents():
    faq = match('faq', 0.9, content="Question: how do I reset my password?")
    store = FakeStore(
        vector_matches=[match('acme', 0.8, content="Acme was founded in 1999.")],
        keyword_matches={
            'question:': [faq],
            'current': [faq],
            'user:': [faq],
            'acme': [match('acme', 0.7, content="Acme was founded in 1999.")],
        },
    )
    providers, _ = providers_for(store, "answer")

    state = run_pipeline(
        [ConversationTurn(role=USER, content="acme founded")],
        make_config(reranking={'enabled': False}),
        providers,
    )

    assert sorted(c['keyword'] for c in store.keyword_calls()) == ['acme', 'founded']
    assert [d.id for d in state.context_documents] == ['acme']
