import asyncio

from core.domain import ChatMessage, MessageRole, RetrievalResult
from services.context import ContextService, trim_to_token_budget
from services.prompts import (
    STATIC_SUGGESTIONS,
    SYSTEM_PROMPT,
    build_chat_prompt,
    extract_topics,
    get_suggested_questions,
)

from conftest import FakeChatRepository, make_chunk


def _message(content, role=MessageRole.USER, session_id="s"):
    return ChatMessage(user_id="u", session_id=session_id, role=role, content=content)


def test_trim_keeps_newest_messages_within_budget() -> None:
    messages = [_message("a" * 40), _message("b" * 40), _message("c" * 40)]  # 10 tokens each

    kept = trim_to_token_budget(messages, token_budget=25, max_turns=5)

    assert [m.content[0] for m in kept] == ["b", "c"]


def test_trim_caps_turns_regardless_of_budget() -> None:
    messages = [_message(str(i)) for i in range(6)]

    kept = trim_to_token_budget(messages, token_budget=10_000, max_turns=3)

    assert [m.content for m in kept] == ["3", "4", "5"]


def test_trim_stops_at_first_message_over_budget() -> None:
    messages = [_message("short"), _message("x" * 400), _message("tail")]

    kept = trim_to_token_budget(messages, token_budget=20, max_turns=3)

    assert [m.content for m in kept] == ["tail"]


def test_context_service_excludes_current_message() -> None:
    repository = FakeChatRepository()

    async def scenario():
        await repository.add_message(_message("earlier question"))
        await repository.add_message(_message("earlier answer", role=MessageRole.ASSISTANT))
        current = await repository.add_message(_message("current question"))
        service = ContextService(repository, max_messages=6, token_budget=4000, max_turns=3)
        return await service.get_conversation_context("s", exclude_id=current.id)

    context = asyncio.run(scenario())

    assert [m.content for m in context] == ["earlier question", "earlier answer"]


def test_build_chat_prompt_sections() -> None:
    results = [
        RetrievalResult(chunk=make_chunk("Leave is 20 days.", pages=[2, 3]), combined_score=0.8),
        RetrievalResult(chunk=make_chunk("Carry over 5 days.", chunk_id=2, pages=[4]), combined_score=0.5),
    ]
    history = [_message("Hi"), _message("Hello!", role=MessageRole.ASSISTANT)]

    prompt = build_chat_prompt(results, "How much leave?", history)

    assert prompt.system_prompt == SYSTEM_PROMPT
    assert prompt.has_context is True
    text = prompt.user_prompt
    assert text.index("Previous Conversation:") < text.index("Available Document Context:")
    assert text.index("Available Document Context:") < text.index("User Question: How much leave?")
    assert "User: Hi\nAssistant: Hello!" in text
    assert "DOCUMENT 1:\nSource: policy.pdf\nPages: 2, 3\nContent: Leave is 20 days." in text
    assert "Citation 1: [Source: policy.pdf, Pages 2-3]" in text
    assert "Citation 2: [Source: policy.pdf, Page 4]" in text
    assert prompt.context_metadata == {"chunk_count": 2, "sources": ["policy.pdf"], "pages": [2, 3, 4]}


def test_build_chat_prompt_without_history_or_results() -> None:
    bare = build_chat_prompt([], "question")
    assert bare.has_context is False
    assert bare.user_prompt == "question"

    results = [RetrievalResult(chunk=make_chunk("text"), combined_score=0.5)]
    assert "Previous Conversation:" not in build_chat_prompt(results, "question").user_prompt


def test_extract_topics_orders_by_frequency_then_first_seen() -> None:
    topics = extract_topics(["Leave policy: annual leave, sick leave.", "Policy review and annual budget."])

    assert topics[:3] == ["leave", "policy", "annual"]
    assert "and" not in topics


def test_suggested_questions_are_capped_at_five() -> None:
    questions = get_suggested_questions("leave", ["leave policy annual leave sick leave holiday"])

    assert len(questions) == 5
    assert questions[0] == "Tell me more about leave"
    assert questions[1] == "What are the key points about leave?"


def test_suggested_questions_fall_back_to_static_set() -> None:
    assert get_suggested_questions("leave", []) == STATIC_SUGGESTIONS
