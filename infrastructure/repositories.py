# infrastructure/repositories.py
"""Database repository implementations"""
import logging
from datetime import datetime
from typing import Any, AsyncContextManager, Callable, Dict, List, Optional, Tuple

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from core.domain import ChatMessage, MessageRole
from core.exceptions import PersistenceError
from core.interfaces import IChatRepository
from database.session import ChatMessageEntity, get_session, utcnow

logger = logging.getLogger(settings.LOGGER_NAME)

SessionFactory = Callable[[], AsyncContextManager[AsyncSession]]


class SQLChatRepository(IChatRepository):
    """
    Chat messages in SQL. Each operation opens its own session from
    session_factory, so one repository can be shared by request handlers and
    detached chat tasks.
    """

    def __init__(self, session_factory: SessionFactory = get_session):
        self._session_factory = session_factory

    def _to_domain(self, entity: ChatMessageEntity) -> ChatMessage:
        """Converts an SQLAlchemy entity to a domain model."""
        return ChatMessage(
            id=entity.id,  # type: ignore
            user_id=entity.user_id,  # type: ignore
            session_id=entity.session_id,  # type: ignore
            role=MessageRole(entity.role),
            content=entity.content,  # type: ignore
            chunks=list(entity.chunks or []),
            metadata=dict(entity.meta or {}),
            created_at=entity.created_at,  # type: ignore
        )

    async def add_message(self, message: ChatMessage) -> ChatMessage:
        entity = ChatMessageEntity(
            user_id=message.user_id,
            session_id=message.session_id,
            role=message.role.value,
            content=message.content,
            chunks=message.chunks or [],
            meta=message.metadata or {},
            created_at=message.created_at or utcnow(),
        )
        try:
            async with self._session_factory() as session:
                session.add(entity)
                await session.commit()
                await session.refresh(entity)
        except SQLAlchemyError as e:
            logger.error(f"[DB] Failed to save {message.role.value} message for {message.session_id}: {e}")
            raise PersistenceError("Failed to save message") from e
        return self._to_domain(entity)

    async def get_session_owner(self, session_id: str) -> Optional[str]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ChatMessageEntity.user_id)
                .where(ChatMessageEntity.session_id == session_id)
                .order_by(ChatMessageEntity.created_at.asc(), ChatMessageEntity.id.asc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def get_recent_messages(
        self,
        session_id: str,
        limit: int,
        exclude_id: Optional[int] = None
    ) -> List[ChatMessage]:
        query = select(ChatMessageEntity).where(ChatMessageEntity.session_id == session_id)
        if exclude_id is not None:
            query = query.where(ChatMessageEntity.id != exclude_id)
        query = query.order_by(
            ChatMessageEntity.created_at.desc(), ChatMessageEntity.id.desc()
        ).limit(limit)

        async with self._session_factory() as session:
            result = await session.execute(query)
            rows = list(result.scalars().all())
        rows.reverse()
        return [self._to_domain(row) for row in rows]

    async def get_history(
        self,
        user_id: str,
        session_id: str,
        limit: int = 20,
        before: Optional[datetime] = None
    ) -> Tuple[List[ChatMessage], bool, Optional[datetime]]:
        """Fetch one extra row to know whether an older page exists."""
        query = select(ChatMessageEntity).where(
            ChatMessageEntity.user_id == user_id,
            ChatMessageEntity.session_id == session_id,
        )
        if before is not None:
            query = query.where(ChatMessageEntity.created_at < before)
        query = query.order_by(
            ChatMessageEntity.created_at.desc(), ChatMessageEntity.id.desc()
        ).limit(limit + 1)

        async with self._session_factory() as session:
            result = await session.execute(query)
            rows = list(result.scalars().all())

        has_more = len(rows) > limit
        page = rows[:limit]
        next_cursor = page[-1].created_at if has_more and page else None
        page.reverse()  # chronological
        return [self._to_domain(row) for row in page], has_more, next_cursor

    async def get_latest_assistant_message(self, user_id: str, session_id: str) -> Optional[ChatMessage]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ChatMessageEntity)
                .where(
                    ChatMessageEntity.user_id == user_id,
                    ChatMessageEntity.session_id == session_id,
                    ChatMessageEntity.role == MessageRole.ASSISTANT.value,
                )
                .order_by(ChatMessageEntity.created_at.desc(), ChatMessageEntity.id.desc())
                .limit(1)
            )
            entity = result.scalar_one_or_none()
        return self._to_domain(entity) if entity else None

    async def list_sessions(self, user_id: str, limit: int = 20, offset: int = 0) -> List[Dict[str, Any]]:
        """Sessions of a user, most recently active first, with last-message preview."""
        summary = (
            select(
                ChatMessageEntity.session_id.label("session_id"),
                func.count(ChatMessageEntity.id).label("message_count"),
                func.max(ChatMessageEntity.created_at).label("last_message_time"),
                func.min(ChatMessageEntity.created_at).label("created_at"),
            )
            .where(ChatMessageEntity.user_id == user_id)
            .group_by(ChatMessageEntity.session_id)
            .order_by(func.max(ChatMessageEntity.created_at).desc())
            .offset(offset)
            .limit(limit)
        )

        sessions: List[Dict[str, Any]] = []
        async with self._session_factory() as session:
            rows = (await session.execute(summary)).all()
            for row in rows:
                last = await session.execute(
                    select(ChatMessageEntity.content, ChatMessageEntity.role)
                    .where(
                        ChatMessageEntity.user_id == user_id,
                        ChatMessageEntity.session_id == row.session_id,
                    )
                    .order_by(ChatMessageEntity.created_at.desc(), ChatMessageEntity.id.desc())
                    .limit(1)
                )
                content, role = last.one()
                sessions.append({
                    "session_id": row.session_id,
                    "last_message": content[:settings.PREVIEW_LENGTH],
                    "last_message_role": role,
                    "last_message_time": row.last_message_time,
                    "created_at": row.created_at,
                    "message_count": row.message_count,
                })
        return sessions

    async def delete_session(self, user_id: str, session_id: str) -> int:
        return await self._delete(
            delete(ChatMessageEntity).where(
                ChatMessageEntity.user_id == user_id,
                ChatMessageEntity.session_id == session_id,
            ),
            f"session {session_id}",
        )

    async def delete_user_sessions(self, user_id: str) -> int:
        return await self._delete(
            delete(ChatMessageEntity).where(ChatMessageEntity.user_id == user_id),
            f"all sessions of {user_id}",
        )

    async def _delete(self, statement, label: str) -> int:
        try:
            async with self._session_factory() as session:
                result = await session.execute(statement)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"[DB] Failed to delete {label}: {e}")
            raise PersistenceError("Failed to delete chat history") from e
        logger.info(f"[DB] Deleted {result.rowcount} messages ({label})")
        return result.rowcount or 0

    async def get_session_stats(self, user_id: str, session_id: str) -> Dict[str, Any]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ChatMessageEntity)
                .where(
                    ChatMessageEntity.user_id == user_id,
                    ChatMessageEntity.session_id == session_id,
                )
                .order_by(ChatMessageEntity.created_at.asc(), ChatMessageEntity.id.asc())
            )
            rows = list(result.scalars().all())

        assistant = [r for r in rows if r.role == MessageRole.ASSISTANT.value]
        response_times = [
            (r.meta or {}).get("response_time") for r in assistant
            if isinstance((r.meta or {}).get("response_time"), (int, float))
        ]
        return {
            "session_id": session_id,
            "total_messages": len(rows),
            "user_messages": len(rows) - len(assistant),
            "assistant_messages": len(assistant),
            "total_chunks": sum(len(r.chunks or []) for r in assistant),
            "avg_response_time": (sum(response_times) / len(response_times)) if response_times else 0,
            "first_message": rows[0].created_at if rows else None,
            "last_message": rows[-1].created_at if rows else None,
        }
