# services/prompts.py
"""Prompt templates, context formatting and suggested follow-up questions"""
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from config import settings
from core.domain import ChatMessage, MessageRole, RetrievalResult

logger = logging.getLogger(settings.LOGGER_NAME)

SYSTEM_PROMPT = """You are PageCite, a document assistant. Help users find information from uploaded documents.

CORE PRINCIPLES:
1. ACCURACY: Only use information from provided chunks
2. TRANSPARENCY: Cite sources using [Source: filename.pdf, Page X]
3. HELPFULNESS: Be concise and direct
4. HONESTY: State when information isn't found

RESPONSE GUIDELINES:
- Start with direct answer
- Use bullet points for complex info
- Include citations after factual statements
- Never invent information
- If insufficient docs: "Based on available documents, I cannot find specific information about [topic]."

CONTEXT:
You have access to document chunks that may contain the answer. Use only the information from these chunks."""

FALLBACK_RESPONSE = """I apologize, but I couldn't find specific information about your query in the available documents.

Here are some suggestions:
1. Try rephrasing your question with different keywords
2. Check if the topic might be covered under a different term
3. Verify that the relevant documents have been uploaded

If you believe the information should be available, please:
- Check the document upload status
- Try searching for related terms
- Contact your administrator if needed

Is there anything else I can help you with?"""

STATIC_SUGGESTIONS = [
    "What documents are available for search?",
    "How can I upload new documents?",
    "Can you help me refine my search query?",
]

GENERAL_SUGGESTIONS = [
    "Can you summarize the key findings?",
    "What other documents might be relevant?",
]

MAX_SUGGESTIONS = 5
MAX_TOPICS = 5

_NON_WORD = re.compile(r"[^\w\s]")


@dataclass
class ChatPrompt:
    system_prompt: str
    user_prompt: str
    has_context: bool
    context_metadata: Dict[str, Any] = field(default_factory=dict)


def _chunk_citation(result: RetrievalResult, index: int) -> str:
    pages = result.page_references
    if not pages:
        page_text = "Page unknown"
    elif len(pages) > 1:
        page_text = f"Pages {min(pages)}-{max(pages)}"
    else:
        page_text = f"Page {pages[0]}"
    return f"Citation {index + 1}: [Source: {result.source}, {page_text}]"


def format_context(results: Sequence[RetrievalResult]) -> str:
    sections = []
    for index, result in enumerate(results):
        pages = ", ".join(str(p) for p in result.page_references)
        sections.append(
            f"DOCUMENT {index + 1}:\n"
            f"Source: {result.source}\n"
            f"Pages: {pages}\n"
            f"Content: {result.chunk.content}\n\n"
            f"{_chunk_citation(result, index)}"
        )
    return "\n---\n".join(sections)


def format_conversation_history(messages: Sequence[ChatMessage]) -> str:
    return "\n".join(
        f"{'User' if msg.role == MessageRole.USER else 'Assistant'}: {msg.content}"
        for msg in messages
    )


def build_chat_prompt(
    results: Sequence[RetrievalResult],
    query: str,
    previous_messages: Optional[Sequence[ChatMessage]] = None,
) -> ChatPrompt:
    """
    Assemble the generation prompt.

    previous_messages must already be trimmed to the context budget; they are
    rendered in the order given.
    """
    if not results:
        return ChatPrompt(system_prompt=SYSTEM_PROMPT, user_prompt=query, has_context=False)

    prompt = ""
    history = format_conversation_history(previous_messages or [])
    if history:
        prompt += f"Previous Conversation:\n{history}\n\n"

    prompt += f"Available Document Context:\n{format_context(results)}\n\n"
    prompt += f"User Question: {query}\n\n"
    prompt += ("Please provide a comprehensive answer based on the documents above. "
               "Include citations for each factual statement.")

    pages = sorted({p for r in results for p in r.page_references})
    return ChatPrompt(
        system_prompt=SYSTEM_PROMPT,
        user_prompt=prompt,
        has_context=True,
        context_metadata={
            "chunk_count": len(results),
            "sources": list(dict.fromkeys(r.source for r in results)),
            "pages": pages,
        },
    )


def extract_topics(contents: Sequence[str], limit: int = MAX_TOPICS) -> List[str]:
    """Most frequent words longer than 3 chars; ties keep first-seen order."""
    counts: Dict[str, int] = {}
    for content in contents:
        if not content:
            continue
        for word in _NON_WORD.sub(" ", content.lower()).split():
            if len(word) > 3:
                counts[word] = counts.get(word, 0) + 1
    # dict preserves insertion order and sorted() is stable
    ranked = sorted(counts.items(), key=lambda item: -item[1])
    return [word for word, _ in ranked[:limit]]


def get_suggested_questions(query: Optional[str], contents: Sequence[str]) -> List[str]:
    """
    Up to 5 follow-up prompts derived from chunk contents.

    Falls back to STATIC_SUGGESTIONS when there is nothing to work with or
    topic extraction fails.
    """
    if not contents:
        return list(STATIC_SUGGESTIONS)

    try:
        topics = extract_topics(contents)
    except Exception as e:
        logger.warning(f"[SUGGEST] Topic extraction failed for '{(query or '')[:50]}': {e}")
        return list(STATIC_SUGGESTIONS)

    suggestions: List[str] = []
    for topic in topics:
        suggestions.append(f"Tell me more about {topic}")
        suggestions.append(f"What are the key points about {topic}?")
    suggestions.extend(GENERAL_SUGGESTIONS)
    return suggestions[:MAX_SUGGESTIONS]
