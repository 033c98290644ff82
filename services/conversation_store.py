"""Conversation memory: durable, tenant-scoped message history.

``ConversationMemoryStore`` implements the conversation semantics (lazy
creation, capped history, title derivation, listing) on top of a small
``DocumentStore`` interface with two backends:

- ``InMemoryDocumentStore`` for tests and single-instance deployments.
- ``RedisDocumentStore`` for multi-worker deployments.

The get-or-create path is race safe: ``insert`` is insert-if-absent and a
``DuplicateConversationError`` simply means another request won the race.
Concurrent appends to the same conversation are last-write-wins.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Iterator

from pydantic_ai.messages import (
    ModelMessage,
    ModelRequest,
    ModelResponse,
    TextPart as ModelTextPart,
    UserPromptPart,
)

from errors.exceptions import DuplicateConversationError, PersistenceError
from models.conversation import (
    DEFAULT_TITLE,
    Conversation,
    ConversationContext,
    ConversationSummary,
    Message,
    ToolResultPart,
    derive_title,
    generate_conversation_id,
    preview,
    utc_now,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_MESSAGES = 1000
MAX_REPLAY_CHARS = 6000


# ── Document store interface ─────────────────────────────────


class DocumentStore(ABC):
    """Tenant-scoped persistence for conversation documents."""

    @abstractmethod
    async def get(self, tenant_id: str, conversation_id: str) -> Conversation | None:
        ...

    @abstractmethod
    async def insert(self, conversation: Conversation) -> None:
        """Insert if absent.  Raises ``DuplicateConversationError`` otherwise."""
        ...

    @abstractmethod
    async def update(self, conversation: Conversation) -> None:
        """Write the whole document back (last write wins)."""
        ...

    @abstractmethod
    async def latest_for_user(self, tenant_id: str, user_id: str) -> Conversation | None:
        ...

    @abstractmethod
    async def list_for_user(
        self, tenant_id: str, user_id: str, limit: int = 20
    ) -> list[Conversation]:
        """Most recently updated first."""
        ...

    @abstractmethod
    async def delete(self, tenant_id: str, conversation_id: str) -> bool:
        ...

    async def close(self) -> None:
        return None


class InMemoryDocumentStore(DocumentStore):
    """Dict-backed store guarded by an ``asyncio.Lock``.

    Documents are stored as copies so callers can't mutate stored state.
    """

    def __init__(self) -> None:
        self._docs: dict[tuple[str, str], Conversation] = {}
        self._lock = asyncio.Lock()

    async def get(self, tenant_id: str, conversation_id: str) -> Conversation | None:
        doc = self._docs.get((tenant_id, conversation_id))
        return doc.model_copy(deep=True) if doc else None

    async def insert(self, conversation: Conversation) -> None:
        key = (conversation.tenant_id, conversation.id)
        async with self._lock:
            if key in self._docs:
                raise DuplicateConversationError(conversation.id)
            self._docs[key] = conversation.model_copy(deep=True)

    async def update(self, conversation: Conversation) -> None:
        async with self._lock:
            self._docs[(conversation.tenant_id, conversation.id)] = conversation.model_copy(deep=True)

    async def latest_for_user(self, tenant_id: str, user_id: str) -> Conversation | None:
        docs = await self.list_for_user(tenant_id, user_id, limit=1)
        return docs[0] if docs else None

    async def list_for_user(
        self, tenant_id: str, user_id: str, limit: int = 20
    ) -> list[Conversation]:
        owned = [
            doc for (tenant, _), doc in self._docs.items()
            if tenant == tenant_id and doc.user_id == user_id
        ]
        owned.sort(key=lambda d: d.updated_at, reverse=True)
        return [doc.model_copy(deep=True) for doc in owned[:limit]]

    async def delete(self, tenant_id: str, conversation_id: str) -> bool:
        async with self._lock:
            return self._docs.pop((tenant_id, conversation_id), None) is not None

    @property
    def size(self) -> int:
        return len(self._docs)


class RedisDocumentStore(DocumentStore):
    """Redis-backed store.

    Each conversation is a JSON string under ``conv:{tenant}:{id}``; a
    sorted set per tenant+user, scored by ``updated_at``, indexes them.
    """

    _KEY_PREFIX = "conv:"
    _INDEX_PREFIX = "conv-index:"

    def __init__(self, redis_url: str):
        import redis.asyncio as aioredis

        self._redis = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=10,
            socket_timeout=10,
        )

    def _key(self, tenant_id: str, conversation_id: str) -> str:
        return f"{self._KEY_PREFIX}{tenant_id}:{conversation_id}"

    def _index(self, tenant_id: str, user_id: str) -> str:
        return f"{self._INDEX_PREFIX}{tenant_id}:{user_id}"

    async def get(self, tenant_id: str, conversation_id: str) -> Conversation | None:
        data = await self._redis.get(self._key(tenant_id, conversation_id))
        if data is None:
            return None
        return Conversation.model_validate_json(data)

    async def insert(self, conversation: Conversation) -> None:
        created = await self._redis.set(
            self._key(conversation.tenant_id, conversation.id),
            conversation.model_dump_json(by_alias=True),
            nx=True,
        )
        if not created:
            raise DuplicateConversationError(conversation.id)
        await self._redis.zadd(
            self._index(conversation.tenant_id, conversation.user_id),
            {conversation.id: conversation.updated_at.timestamp()},
        )

    async def update(self, conversation: Conversation) -> None:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.set(
                self._key(conversation.tenant_id, conversation.id),
                conversation.model_dump_json(by_alias=True),
            )
            pipe.zadd(
                self._index(conversation.tenant_id, conversation.user_id),
                {conversation.id: conversation.updated_at.timestamp()},
            )
            await pipe.execute()

    async def latest_for_user(self, tenant_id: str, user_id: str) -> Conversation | None:
        docs = await self.list_for_user(tenant_id, user_id, limit=1)
        return docs[0] if docs else None

    async def list_for_user(
        self, tenant_id: str, user_id: str, limit: int = 20
    ) -> list[Conversation]:
        ids = await self._redis.zrevrange(self._index(tenant_id, user_id), 0, limit - 1)
        if not ids:
            return []
        payloads = await self._redis.mget([self._key(tenant_id, cid) for cid in ids])
        return [Conversation.model_validate_json(p) for p in payloads if p is not None]

    async def delete(self, tenant_id: str, conversation_id: str) -> bool:
        doc = await self.get(tenant_id, conversation_id)
        if doc is None:
            return False
        await self._redis.delete(self._key(tenant_id, conversation_id))
        await self._redis.zrem(self._index(tenant_id, doc.user_id), conversation_id)
        return True

    async def close(self) -> None:
        """Close the Redis connection pool."""
        await self._redis.aclose()

    async def ping(self) -> bool:
        """Check Redis connectivity."""
        return bool(await self._redis.ping())


def create_document_store(store_type: str, redis_url: str = "") -> DocumentStore:
    if store_type == "redis" and redis_url:
        logger.info("Initialized RedisDocumentStore")
        return RedisDocumentStore(redis_url)
    logger.info("Initialized InMemoryDocumentStore")
    return InMemoryDocumentStore()


# ── Memory store ─────────────────────────────────────────────


@contextmanager
def _store_errors(action: str) -> Iterator[None]:
    try:
        yield
    except PersistenceError:
        raise
    except Exception as exc:
        raise PersistenceError(f"Conversation {action} failed: {exc}") from exc


class ConversationMemoryStore:
    """Conversation semantics over a :class:`DocumentStore`."""

    def __init__(self, documents: DocumentStore, max_messages: int = DEFAULT_MAX_MESSAGES):
        self._documents = documents
        self._max_messages = max_messages

    @property
    def documents(self) -> DocumentStore:
        return self._documents

    async def get_or_create(self, context: ConversationContext) -> str:
        """Return the conversation id for *context*, creating the row if needed.

        Explicit id: created on first use.  No id: the caller's most recently
        updated conversation, else a brand-new one.
        """
        with _store_errors("get_or_create"):
            if context.conversation_id:
                existing = await self._documents.get(context.tenant_id, context.conversation_id)
                if existing is None:
                    await self._insert(context, context.conversation_id)
                return context.conversation_id

            latest = await self._documents.latest_for_user(context.tenant_id, context.user_id)
            if latest is not None:
                return latest.id
            conversation_id = generate_conversation_id()
            await self._insert(context, conversation_id)
            return conversation_id

    async def _insert(self, context: ConversationContext, conversation_id: str) -> Conversation | None:
        conversation = Conversation(
            id=conversation_id,
            tenant_id=context.tenant_id,
            user_id=context.user_id,
            school_id=context.school_id,
        )
        try:
            await self._documents.insert(conversation)
        except DuplicateConversationError:
            logger.debug("Conversation %s created concurrently", conversation_id)
            return None
        logger.info("Created conversation %s for tenant=%s", conversation_id, context.tenant_id)
        return conversation

    async def append(self, context: ConversationContext, messages: list[Message]) -> str:
        """Append *messages*, keep the most recent ``max_messages``, return the id."""
        conversation_id = await self.get_or_create(context)
        with _store_errors("append"):
            conversation = await self._documents.get(context.tenant_id, conversation_id)
            if conversation is None:
                conversation = Conversation(
                    id=conversation_id,
                    tenant_id=context.tenant_id,
                    user_id=context.user_id,
                    school_id=context.school_id,
                )

            was_empty = not conversation.messages
            combined = conversation.messages + list(messages)
            if len(combined) > self._max_messages:
                combined = combined[-self._max_messages:]
            conversation.messages = combined
            conversation.updated_at = utc_now()
            if was_empty and conversation.title == DEFAULT_TITLE:
                conversation.title = derive_title(combined) or DEFAULT_TITLE

            await self._documents.update(conversation)
        logger.debug(
            "Appended %d messages to %s (total=%d)",
            len(messages), conversation_id, len(conversation.messages),
        )
        return conversation_id

    async def read(self, context: ConversationContext, limit: int | None = None) -> list[Message]:
        """Stored messages (oldest first); empty when the conversation is missing."""
        if not context.conversation_id:
            return []
        with _store_errors("read"):
            conversation = await self._documents.get(context.tenant_id, context.conversation_id)
        if conversation is None:
            return []
        if limit is not None:
            return conversation.messages[-limit:] if limit > 0 else []
        return conversation.messages

    async def clear(self, context: ConversationContext) -> None:
        """Empty the message list but keep the row."""
        if not context.conversation_id:
            return
        with _store_errors("clear"):
            conversation = await self._documents.get(context.tenant_id, context.conversation_id)
            if conversation is None:
                return
            conversation.messages = []
            conversation.updated_at = utc_now()
            await self._documents.update(conversation)

    async def list_conversations(
        self, tenant_id: str, user_id: str, limit: int = 20
    ) -> list[ConversationSummary]:
        with _store_errors("list"):
            docs = await self._documents.list_for_user(tenant_id, user_id, limit)
        return [
            ConversationSummary(
                id=doc.id,
                title=doc.title,
                created_at=doc.created_at,
                updated_at=doc.updated_at,
                message_count=len(doc.messages),
                last_message=preview(doc.messages),
            )
            for doc in docs
        ]

    async def _owned(self, tenant_id: str, user_id: str, conversation_id: str) -> Conversation | None:
        doc = await self._documents.get(tenant_id, conversation_id)
        if doc is None or doc.user_id != user_id:
            return None
        return doc

    async def get_history(
        self, tenant_id: str, user_id: str, conversation_id: str
    ) -> list[Message] | None:
        """Messages of a conversation the user owns, or None."""
        with _store_errors("get_history"):
            doc = await self._owned(tenant_id, user_id, conversation_id)
        return doc.messages if doc else None

    async def delete_conversation(self, tenant_id: str, user_id: str, conversation_id: str) -> bool:
        with _store_errors("delete"):
            doc = await self._owned(tenant_id, user_id, conversation_id)
            if doc is None:
                return False
            deleted = await self._documents.delete(tenant_id, conversation_id)
        if deleted:
            logger.info("Deleted conversation %s", conversation_id)
        return deleted


# ── Model replay ─────────────────────────────────────────────


def _tools_summary(message: Message, results: dict[str, ToolResultPart]) -> str:
    entries = []
    for call in message.tool_call_parts():
        args = json.dumps(call.input, ensure_ascii=False, default=str)
        if len(args) > 120:
            args = args[:117] + "..."
        result = results.get(call.tool_call_id)
        status = "pending" if result is None else ("error" if result.is_error else "ok")
        entries.append(f"{call.tool_name}({args}) → {status}")
    return ", ".join(entries)


def to_model_messages(messages: list[Message]) -> list[ModelMessage]:
    """Replay stored messages as text-only PydanticAI messages.

    Assistant turns that used tools get a ``[Tools used: ...]`` prefix so
    the model knows what was already called without replaying raw output.
    A call answered in a later message (after approval) counts as answered.
    """
    results = {r.tool_call_id: r for m in messages for r in m.tool_result_parts()}
    replay: list[ModelMessage] = []
    for message in messages:
        text = message.text()[:MAX_REPLAY_CHARS]
        if message.role == "user":
            if text:
                replay.append(ModelRequest(parts=[UserPromptPart(content=text)]))
        elif message.role == "assistant":
            summary = _tools_summary(message, results)
            if summary:
                text = f"[Tools used: {summary}]\n{text}".rstrip()
            if text:
                replay.append(ModelResponse(parts=[ModelTextPart(content=text)]))
    return replay
