# =============================================================================
# Response Generation Module
# =============================================================================
# This module turns the best retrieved passages into a prompt and asks the
# completion model for an answer. Generation is greedy (temperature 0) so
# evaluation runs are reproducible.

from hybrid_rag.run_tracker import log_message

MAX_CONTEXT_DOCUMENTS = 3


# =============================================================================
# Prompt template - the model must stay inside the supplied context
# =============================================================================
ANSWER_PROMPT = """You are a helpful assistant answering questions about the articles on this site.

Previous conversation:
{history}

Context:
{context}

Question: {question}

Instructions:
- Answer using only the information in the context above.
- Stay consistent with what was said earlier in the conversation.
- If the context does not contain enough information to answer, say so explicitly instead of guessing.
- Stay on topic and do not answer unrelated questions.

Answer:"""


def select_context_documents(documents, limit=MAX_CONTEXT_DOCUMENTS):
    """
    Pick the documents that go into the prompt.

    Accepts RankedDocuments (hybrid pipeline) or plain Documents (simple
    pipeline, straight from vector search). Never returns more than `limit`.

    Args:
        documents: Ranked or plain documents, best first
        limit: Maximum number of documents to keep (capped at 3)

    Returns:
        list: At most `limit` Documents
    """
    limit = max(0, min(limit, MAX_CONTEXT_DOCUMENTS))
    return [getattr(d, 'document', d) for d in documents[:limit]]


def format_context(documents):
    """
    Join document texts into one context block, separated by blank lines.

    Args:
        documents: Documents selected for the prompt

    Returns:
        str: The context block ("" when there are no documents)
    """
    return "\n\n".join(document.content for document in documents)


def compose_prompt(history, context, question):
    """
    Fill the answer template.

    Args:
        history: "role: content" lines of the retained conversation window
        context: Joined passage text
        question: The clean current question (not the augmented query)

    Returns:
        str: The complete prompt
    """
    return ANSWER_PROMPT.format(history=history, context=context, question=question)


def generate_answer(prompt, client, config, logger=None):
    """
    Send the prompt to the completion model and return its text verbatim.

    One non-streaming call, prompt as the only message, temperature 0
    regardless of configuration. Provider errors propagate.

    Args:
        prompt: Output of compose_prompt()
        client: OpenAI client
        config: Configuration dictionary with response settings
        logger: Optional logger for tracking progress

    Returns:
        str: The model's answer
    """
    model = config.get('response', {}).get('model', 'gpt-4o-mini')

    log_message(f"Generating response using {model} (temp=0)...", logger)

    response = client.chat.completions.create(
        model=model,
        messages=[{"role": "user", "content": prompt}],
        temperature=0,
    )

    answer = response.choices[0].message.content or ""

    log_message("Response generated successfully", logger)
    return answer
