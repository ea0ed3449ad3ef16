from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ragrelay.domain.models import ChatMessage, Conversation
from ragrelay.persistence.guards import tenant_predicate


async def get_or_create_conversation(
    session: AsyncSession,
    *,
    conversation_id: str,
    tenant_id: str,
    user_email: str | None,
) -> Conversation | None:
    # Returns None when the id is already owned by another tenant.
    existing = await session.get(Conversation, conversation_id)
    if existing is not None:
        if existing.tenant_id != tenant_id:
            return None
        return existing
    conversation = Conversation(id=conversation_id, tenant_id=tenant_id, user_email=user_email)
    session.add(conversation)
    await session.flush()
    return conversation


async def get_conversation(
    session: AsyncSession, tenant_id: str, conversation_id: str
) -> Conversation | None:
    result = await session.execute(
        select(Conversation).where(
            Conversation.id == conversation_id,
            tenant_predicate(Conversation, tenant_id),
        )
    )
    return result.scalar_one_or_none()


async def add_message(
    session: AsyncSession,
    *,
    message_id: str,
    conversation_id: str,
    tenant_id: str,
    role: str,
    content: str,
    status: str,
    reply_to_id: str | None = None,
    sources: list[Any] | None = None,
    processing_time_ms: int | None = None,
) -> ChatMessage:
    message = ChatMessage(
        id=message_id,
        conversation_id=conversation_id,
        tenant_id=tenant_id,
        role=role,
        content=content,
        status=status,
        reply_to_id=reply_to_id,
        sources_json=sources,
        processing_time_ms=processing_time_ms,
        # Stamp in Python so ordering keeps sub-second precision on every backend.
        created_at=datetime.now(timezone.utc),
    )
    session.add(message)
    return message


async def get_message_by_id(session: AsyncSession, message_id: str) -> ChatMessage | None:
    # Callback handlers resolve the owner first; tenant checks are enforced by callers.
    return await session.get(ChatMessage, message_id)


async def get_reply(session: AsyncSession, message_id: str) -> ChatMessage | None:
    result = await session.execute(select(ChatMessage).where(ChatMessage.reply_to_id == message_id))
    return result.scalar_one_or_none()


async def list_messages(
    session: AsyncSession, tenant_id: str, conversation_id: str
) -> list[ChatMessage]:
    result = await session.execute(
        select(ChatMessage)
        .where(
            ChatMessage.conversation_id == conversation_id,
            tenant_predicate(ChatMessage, tenant_id),
        )
        .order_by(ChatMessage.created_at, ChatMessage.id)
    )
    return list(result.scalars().all())


@dataclass(frozen=True)
class ConversationSummary:
    conversation_id: str
    user_email: str | None
    created_at: datetime | None
    last_message_at: datetime | None
    last_user_message: str | None
    message_count: int


async def list_recent_conversations(
    session: AsyncSession,
    tenant_id: str,
    *,
    user_email: str | None = None,
    limit: int = 10,
    offset: int = 0,
) -> list[ConversationSummary]:
    # Most recently active first; a conversation is as recent as its newest message.
    stats = (
        select(
            ChatMessage.conversation_id.label("conversation_id"),
            func.count(ChatMessage.id).label("message_count"),
            func.max(ChatMessage.created_at).label("last_message_at"),
        )
        .where(tenant_predicate(ChatMessage, tenant_id))
        .group_by(ChatMessage.conversation_id)
        .subquery()
    )
    stmt = (
        select(Conversation, stats.c.message_count, stats.c.last_message_at)
        .join(stats, stats.c.conversation_id == Conversation.id)
        .where(tenant_predicate(Conversation, tenant_id))
    )
    if user_email:
        stmt = stmt.where(Conversation.user_email == user_email)
    result = await session.execute(
        stmt.order_by(stats.c.last_message_at.desc(), Conversation.id)
        .limit(max(1, limit))
        .offset(max(0, offset))
    )
    rows = result.all()
    if not rows:
        return []

    conversation_ids = [row[0].id for row in rows]
    questions = await session.execute(
        select(ChatMessage.conversation_id, ChatMessage.content)
        .where(
            ChatMessage.conversation_id.in_(conversation_ids),
            ChatMessage.role == "user",
            tenant_predicate(ChatMessage, tenant_id),
        )
        .order_by(ChatMessage.created_at, ChatMessage.id)
    )
    # Ascending order, so the last write per conversation is its newest question.
    last_question = {conversation_id: content for conversation_id, content in questions.all()}
    return [
        ConversationSummary(
            conversation_id=conversation.id,
            user_email=conversation.user_email,
            created_at=conversation.created_at,
            last_message_at=last_message_at,
            last_user_message=last_question.get(conversation.id),
            message_count=int(message_count or 0),
        )
        for conversation, message_count, last_message_at in rows
    ]
