# services/chat_service.py
"""Chat orchestration: retrieval, generation, citations and persistence per turn"""
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from config import settings
from core.domain import ChatMessage, ChatState, EventType, MessageRole, RetrievalResult, SearchOptions
from core.exceptions import ChatStateError, PersistenceError, ValidationError
from core.interfaces import IChatRepository, IGenerationClient
from services.async_processor import BackgroundTaskRunner
from services.citations import CitationFormatter
from services.context import ContextService
from services.prompts import FALLBACK_RESPONSE, STATIC_SUGGESTIONS, build_chat_prompt, get_suggested_questions
from services.retrieval import RetrievalEngine
from services.streaming import ChannelClosed, EventChannel
from utils.common import estimate_tokens, is_valid_session_id, make_preview, new_session_id

logger = logging.getLogger(settings.LOGGER_NAME)

GENERIC_ERROR_MESSAGE = "An error occurred while processing your request"

_CHAT_TRANSITIONS = {
    ChatState.STARTED: {ChatState.SEARCHING, ChatState.ERROR},
    ChatState.SEARCHING: {ChatState.GENERATING, ChatState.COMPLETED, ChatState.ERROR},
    ChatState.GENERATING: {ChatState.COMPLETED, ChatState.ERROR},
    ChatState.COMPLETED: set(),
    ChatState.ERROR: set(),
}


class ChatTurn:
    """Per-request state machine. Illegal transitions raise ChatStateError."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        self.state = ChatState.STARTED

    def transition(self, new_state: ChatState) -> None:
        if new_state not in _CHAT_TRANSITIONS[self.state]:
            raise ChatStateError(f"Cannot move chat turn from {self.state.value} to {new_state.value}")
        logger.debug(f"[CHAT] {self.session_id}: {self.state.value} -> {new_state.value}")
        self.state = new_state


def _chunk_snapshot(results: Sequence[RetrievalResult]) -> List[Dict[str, Any]]:
    return [
        {
            "chunk_id": r.chunk.chunk_id,
            "file_id": r.chunk.file_id,
            "text": r.chunk.content[:settings.SNIPPET_LENGTH],
            "source": r.source,
            "score": r.combined_score,
            "pages": r.page_references,
        }
        for r in results
    ]


class ChatService:
    """
    Runs chat turns and serves session history.

    A turn persists the user message, retrieves chunks, streams the
    generated answer through an EventChannel and persists the assistant
    message. The turn runs as a background task so a disconnecting client
    only cancels the channel, not the bookkeeping.
    """

    def __init__(
        self,
        retrieval: RetrievalEngine,
        repository: IChatRepository,
        generator: IGenerationClient,
        context_service: Optional[ContextService] = None,
        citation_formatter: Optional[CitationFormatter] = None,
        top_k: int = settings.CHAT_TOP_K,
        min_score: float = settings.SEARCH_MIN_SCORE,
    ):
        self.retrieval = retrieval
        self.repository = repository
        self.generator = generator
        self.context_service = context_service or ContextService(repository)
        self.citations = citation_formatter or CitationFormatter()
        self.top_k = top_k
        self.min_score = min_score

    # ============= Session gate =============

    async def prepare_session(self, session_id: Optional[str], user_id: str) -> str:
        """
        Validate a caller-supplied session id, or mint one.

        Raises:
            ValidationError: malformed id, or a session owned by another user
        """
        if session_id is None or session_id == "":
            return new_session_id()
        if not is_valid_session_id(session_id):
            raise ValidationError("Invalid session ID format")
        owner = await self.repository.get_session_owner(session_id)
        if owner is not None and owner != user_id:
            raise ValidationError("Session does not belong to this user")
        return session_id

    def _search_options(self, options: Optional[SearchOptions]) -> SearchOptions:
        if options is None:
            return SearchOptions(limit=self.top_k, min_score=self.min_score)
        return options

    # ============= Turn =============

    async def start_chat(
        self,
        runner: BackgroundTaskRunner,
        query: str,
        user_id: str,
        session_id: Optional[str] = None,
        options: Optional[SearchOptions] = None,
    ) -> Tuple[str, EventChannel]:
        """Validate, then schedule the turn. Nothing is persisted if validation fails."""
        if not query or not query.strip():
            raise ValidationError("Query must be a non-empty string")
        session_id = await self.prepare_session(session_id, user_id)
        channel = EventChannel()
        runner.submit_task(
            self.run_turn(channel, query.strip(), user_id, session_id, options),
            name=f"chat-{session_id}",
        )
        return session_id, channel

    async def run_turn(
        self,
        channel: EventChannel,
        query: str,
        user_id: str,
        session_id: str,
        options: Optional[SearchOptions] = None,
    ) -> ChatState:
        """Drive one turn, writing ordered events to channel. Always closes channel."""
        turn = ChatTurn(session_id)
        start_time = time.time()
        search_options = self._search_options(options)
        buffer: List[str] = []
        results: List[RetrievalResult] = []
        answer: Optional[str] = None
        summary: Dict[str, Any] = {}
        assistant_saved = False

        try:
            user_message = await self.repository.add_message(ChatMessage(
                user_id=user_id, session_id=session_id, role=MessageRole.USER, content=query,
            ))
            await channel.send(EventType.START, {
                "session_id": session_id,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            })

            turn.transition(ChatState.SEARCHING)
            await channel.send(EventType.STATUS, {"message": "Searching documents..."})
            result_set = await self.retrieval.search(query, search_options)
            results = list(result_set)
            await channel.send(EventType.SEARCH_RESULTS, {
                "chunks_found": len(results),
                "degraded": result_set.degraded,
                "chunks": [
                    {
                        "chunk_id": r.chunk.chunk_id,
                        "file_name": r.source,
                        "relevance_score": r.combined_score,
                        "preview": make_preview(r.chunk.content, settings.PREVIEW_LENGTH),
                    }
                    for r in results
                ],
            })

            if not results:
                answer = FALLBACK_RESPONSE
                await channel.send(EventType.CONTENT, {"content": FALLBACK_RESPONSE, "final": True})
                persisted = await self._save_assistant(
                    user_id, session_id, FALLBACK_RESPONSE, [],
                    {"response_time": self._elapsed_ms(start_time), "degraded": result_set.degraded},
                )
                assistant_saved = True
                turn.transition(ChatState.COMPLETED)
                await channel.send(EventType.COMPLETE, {
                    "response_time": self._elapsed_ms(start_time),
                    "total_tokens": estimate_tokens(FALLBACK_RESPONSE),
                    "persisted": persisted,
                })
                return turn.state

            turn.transition(ChatState.GENERATING)
            await channel.send(EventType.STATUS, {"message": "Generating response..."})

            history = await self.context_service.get_conversation_context(
                session_id, exclude_id=user_message.id
            )
            prompt = build_chat_prompt(results, query, history)

            stream = self.generator.stream(prompt.user_prompt, prompt.system_prompt)
            try:
                async for increment in stream:
                    buffer.append(increment)
                    await channel.send(EventType.CONTENT, {
                        "content": increment,
                        "partial": "".join(buffer),
                    })
            finally:
                aclose = getattr(stream, "aclose", None)
                if aclose is not None:
                    await aclose()

            citations = self.citations.format(results)
            summary = self.citations.citation_summary(citations)
            answer = self.citations.add_citations_to_response("".join(buffer), citations)

            await channel.send(EventType.CONTENT, {"content": answer, "final": True})
            await channel.send(EventType.CITATIONS, {
                "citations": self.citations.citation_metadata(results),
                "summary": summary,
            })

            persisted = await self._save_assistant(user_id, session_id, answer, results, {
                "response_time": self._elapsed_ms(start_time),
                "model": self.generator.model_id,
                "tokens": estimate_tokens(answer),
                "citations": summary,
                "degraded": result_set.degraded,
                "index_used": result_set.index_used,
            })
            assistant_saved = True
            turn.transition(ChatState.COMPLETED)
            await channel.send(EventType.COMPLETE, {
                "response_time": self._elapsed_ms(start_time),
                "total_tokens": estimate_tokens(answer),
                "persisted": persisted,
            })
            logger.info(
                f"[CHAT] {session_id}: answered with {len(results)} chunks, "
                f"{len(citations)} citations in {self._elapsed_ms(start_time)}ms"
            )

        except ChannelClosed:
            logger.info(f"[CHAT] {session_id}: client disconnected in state {turn.state.value}")
            if answer is not None and not assistant_saved:
                # Generation finished; only the trailing events were lost
                await self._save_assistant(user_id, session_id, answer, results, {
                    "response_time": self._elapsed_ms(start_time),
                    "model": self.generator.model_id,
                    "tokens": estimate_tokens(answer),
                    "citations": summary,
                    "incomplete": False,
                })
                turn.transition(ChatState.COMPLETED)
            elif buffer and not assistant_saved:
                await self._save_assistant(user_id, session_id, "".join(buffer), results, {
                    "response_time": self._elapsed_ms(start_time),
                    "model": self.generator.model_id,
                    "incomplete": True,
                })
            self._fail(turn)

        except Exception as e:
            logger.error(f"[CHAT] {session_id}: turn failed in state {turn.state.value}: {e}", exc_info=True)
            self._fail(turn)
            try:
                await channel.send(EventType.ERROR, {"message": GENERIC_ERROR_MESSAGE})
            except ChannelClosed:
                pass

        finally:
            channel.close()

        return turn.state

    @staticmethod
    def _fail(turn: ChatTurn) -> None:
        if turn.state not in (ChatState.COMPLETED, ChatState.ERROR):
            turn.transition(ChatState.ERROR)

    @staticmethod
    def _elapsed_ms(start_time: float) -> int:
        return int((time.time() - start_time) * 1000)

    async def _save_assistant(
        self,
        user_id: str,
        session_id: str,
        content: str,
        results: Sequence[RetrievalResult],
        metadata: Dict[str, Any],
    ) -> bool:
        """Persist the assistant turn. A failure is logged and reported, not raised."""
        metadata.setdefault("incomplete", False)
        try:
            await self.repository.add_message(ChatMessage(
                user_id=user_id,
                session_id=session_id,
                role=MessageRole.ASSISTANT,
                content=content,
                chunks=_chunk_snapshot(results),
                metadata=metadata,
            ))
            return True
        except PersistenceError as e:
            logger.error(
                f"[CHAT] {session_id}: answer delivered but assistant message NOT persisted: {e}"
            )
            return False

    # ============= Sessions =============

    @staticmethod
    def _require_session_id(session_id: str) -> None:
        if not is_valid_session_id(session_id):
            raise ValidationError("Invalid session ID format")

    async def get_history(
        self,
        user_id: str,
        session_id: str,
        limit: int = 20,
        before: Optional[datetime] = None,
        include_context: bool = True,
    ) -> Dict[str, Any]:
        self._require_session_id(session_id)
        if not 1 <= limit <= 100:
            raise ValidationError("Limit must be between 1 and 100")
        if before is not None and before.tzinfo is not None:
            before = before.astimezone(timezone.utc).replace(tzinfo=None)

        messages, has_more, next_cursor = await self.repository.get_history(
            user_id, session_id, limit=limit, before=before
        )
        return {
            "session_id": session_id,
            "messages": [m.to_dict(include_context=include_context) for m in messages],
            "has_more": has_more,
            "next_cursor": next_cursor.isoformat() if next_cursor else None,
        }

    async def list_sessions(self, user_id: str, limit: int = 20, offset: int = 0) -> List[Dict[str, Any]]:
        if not 1 <= limit <= 100 or offset < 0:
            raise ValidationError("Invalid pagination parameters")
        return await self.repository.list_sessions(user_id, limit=limit, offset=offset)

    async def delete_session(self, user_id: str, session_id: str) -> int:
        self._require_session_id(session_id)
        return await self.repository.delete_session(user_id, session_id)

    async def delete_all_sessions(self, user_id: str) -> int:
        return await self.repository.delete_user_sessions(user_id)

    async def get_session_stats(self, user_id: str, session_id: str) -> Dict[str, Any]:
        self._require_session_id(session_id)
        return await self.repository.get_session_stats(user_id, session_id)

    async def suggest_questions(
        self,
        user_id: str,
        session_id: str,
        chunks: Optional[Sequence[Union[str, Dict[str, Any]]]] = None,
    ) -> List[str]:
        """
        Follow-up questions for a session.

        Uses the supplied chunks, or the chunk snapshot of the latest
        assistant message. Never raises past validation.
        """
        self._require_session_id(session_id)
        try:
            if chunks is None:
                latest = await self.repository.get_latest_assistant_message(user_id, session_id)
                chunks = latest.chunks if latest else []
            contents = [
                c if isinstance(c, str) else (c.get("text") or c.get("content") or "")
                for c in chunks
            ]
            return get_suggested_questions(None, [c for c in contents if c])
        except Exception as e:
            logger.warning(f"[SUGGEST] {session_id}: falling back to static suggestions: {e}")
            return list(STATIC_SUGGESTIONS)
