# =============================================================================
# Conversation Module
# =============================================================================
# Conversation turns and the bounded history window. Retrieval sees one
# augmented query string; generation sees the same window as separate
# "history" and "question" fields.

import uuid
from dataclasses import dataclass, field
from typing import List

HISTORY_TURNS = 4

USER = 'user'
ASSISTANT = 'assistant'


def new_turn_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class ConversationTurn:
    role: str
    content: str
    id: str = field(default_factory=new_turn_id)

    def __post_init__(self):
        if self.role not in (USER, ASSISTANT):
            raise ValueError(f"Unknown conversation role: {self.role!r}")


def recent_history(turns: List[ConversationTurn], window: int = HISTORY_TURNS) -> List[ConversationTurn]:
    """
    Return the last `window` turns in chronological order.

    Args:
        turns: The full conversation, oldest first
        window: How many turns to keep

    Returns:
        list: At most `window` turns
    """
    if window <= 0:
        return []
    return list(turns[-window:])


def format_history(turns: List[ConversationTurn], window: int = HISTORY_TURNS) -> str:
    """
    Render the history window as "role: content" lines.

    Example:
        user: Who wrote the article on caching?
        assistant: It was written by ...
    """
    return "\n".join(f"{turn.role}: {turn.content}" for turn in recent_history(turns, window))


def current_question(turns: List[ConversationTurn]) -> str:
    """
    The clean question, i.e. the content of the last turn.

    Raises:
        ValueError: If the conversation is empty
    """
    if not turns:
        raise ValueError("Conversation is empty; nothing to answer")
    return turns[-1].content


def augment_query(turns: List[ConversationTurn], window: int = HISTORY_TURNS) -> str:
    """
    Fold the history window into one retrieval query.

    The contents of the last `window` turns are joined in order, so the
    current question comes last and pronouns in a follow-up ("when was it
    founded?") still sit next to the entities mentioned earlier. Roles and
    other labels are left out; every word of the query is conversation text
    and becomes a keyword for keyword search. Only retrieval uses this string.

    Args:
        turns: The full conversation, oldest first; the last turn is the question
        window: How many turns to include

    Returns:
        str: The augmented query
    """
    if not turns:
        raise ValueError("Conversation is empty; nothing to answer")
    # The current question is always part of the query
    window = max(window, 1)
    return "\n".join(turn.content for turn in recent_history(turns, window))
