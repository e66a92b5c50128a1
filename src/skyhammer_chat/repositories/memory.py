"""In-memory repository implementation."""

import asyncio
from typing import Dict, List, Optional, Sequence

import structlog

from ..domain.models import (
    Conversation,
    ConversationSummary,
    FileReference,
    Message,
    Role,
    utcnow,
)
from .base import ConversationRepository

logger = structlog.get_logger()


class InMemoryRepository(ConversationRepository):
    """Repository keeping all state in process memory.

    Every mutation builds a new state snapshot, hands it to ``_commit`` and only
    then swaps it in, so readers never observe a change whose commit failed.
    All mutations share one lock, which makes this the single logical writer.
    Subclasses add durability by overriding ``_load`` and ``_commit``.
    """

    def __init__(self, default_instruction: str):
        super().__init__(default_instruction)
        self._conversations: Dict[str, Conversation] = {}
        self._instruction: Optional[str] = None
        self._write_lock = asyncio.Lock()
        self._loaded = False

    async def _load(self) -> None:
        """Populate state from durable storage."""

    async def _commit(
        self, conversations: Dict[str, Conversation], instruction: Optional[str]
    ) -> None:
        """Persist a complete state snapshot. Raises StorageIOError on failure."""

    async def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        async with self._write_lock:
            if not self._loaded:
                await self._load()
                self._loaded = True

    async def _mutate(
        self,
        conversation_id: str,
        update,
        instruction: Optional[str] = None,
        set_instruction: bool = False,
    ) -> Optional[Conversation]:
        """Apply ``update`` to one conversation and commit the new snapshot.

        ``update`` receives the current record (or None) and returns the new
        record, or None to delete it. Returns the stored record.
        """
        await self._ensure_loaded()
        async with self._write_lock:
            staged = dict(self._conversations)
            current = staged.get(conversation_id)
            updated = update(current)
            if updated is None:
                staged.pop(conversation_id, None)
            else:
                staged[conversation_id] = updated
            next_instruction = instruction if set_instruction else self._instruction
            await self._commit(staged, next_instruction)
            self._conversations = staged
            self._instruction = next_instruction
            return updated

    async def get_messages(self, conversation_id: str) -> List[Message]:
        await self._ensure_loaded()
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            return []
        return list(conversation.messages)

    async def append_messages(self, conversation_id: str, messages: Sequence[Message]) -> None:
        messages = list(messages)

        def update(current: Optional[Conversation]) -> Conversation:
            now = utcnow()
            if current is None:
                return Conversation(
                    id=conversation_id, created=now, last_updated=now, messages=messages
                )
            return current.model_copy(
                update={"messages": [*current.messages, *messages], "last_updated": now}
            )

        await self._mutate(conversation_id, update)
        logger.info(
            "messages_added",
            conversation_id=conversation_id,
            roles=[m.role.value for m in messages],
        )

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        await self._ensure_loaded()
        return self._conversations.get(conversation_id)

    async def list_conversations(
        self, limit: Optional[int] = None, offset: int = 0
    ) -> List[ConversationSummary]:
        await self._ensure_loaded()
        conversations = sorted(
            self._conversations.values(), key=lambda c: c.last_updated, reverse=True
        )
        end = None if limit is None else offset + limit
        return [c.summary() for c in conversations[offset:end]]

    async def create_conversation(
        self,
        conversation_id: str,
        name: str,
        first_message: str,
        attachment: Optional[FileReference] = None,
        replies: Sequence[Message] = (),
    ) -> Conversation:
        messages = [Message(role=Role.USER, content=first_message, file=attachment), *replies]

        def update(current: Optional[Conversation]) -> Conversation:
            now = utcnow()
            if current is None:
                return Conversation(
                    id=conversation_id,
                    name=name,
                    created=now,
                    last_updated=now,
                    messages=messages,
                )
            # Someone appended under this id first; keep their messages
            return current.model_copy(
                update={
                    "name": current.name or name,
                    "messages": [*current.messages, *messages],
                    "last_updated": now,
                }
            )

        conversation = await self._mutate(conversation_id, update)
        logger.info("conversation_created", conversation_id=conversation_id, name=name)
        return conversation

    async def rename_conversation(self, conversation_id: str, name: str) -> None:
        def update(current: Optional[Conversation]) -> Optional[Conversation]:
            if current is None:
                return None
            return current.model_copy(update={"name": name, "last_updated": utcnow()})

        await self._ensure_loaded()
        if conversation_id not in self._conversations:
            logger.warning("conversation_not_found", conversation_id=conversation_id)
            return
        await self._mutate(conversation_id, update)

    async def delete_conversation(self, conversation_id: str) -> None:
        await self._ensure_loaded()
        if conversation_id not in self._conversations:
            return
        await self._mutate(conversation_id, lambda current: None)
        logger.info("conversation_deleted", conversation_id=conversation_id)

    async def clear_messages(self, conversation_id: str) -> None:
        def update(current: Optional[Conversation]) -> Optional[Conversation]:
            if current is None:
                return None
            return current.model_copy(update={"messages": [], "last_updated": utcnow()})

        await self._ensure_loaded()
        if conversation_id not in self._conversations:
            return
        await self._mutate(conversation_id, update)

    async def _read_instruction(self) -> Optional[str]:
        await self._ensure_loaded()
        return self._instruction

    async def get_instruction(self) -> str:
        return await self.instruction_cache.get(self._read_instruction)

    async def set_instruction(self, text: str) -> None:
        await self._ensure_loaded()
        async with self._write_lock:
            await self._commit(self._conversations, text)
            self._instruction = text
            self.instruction_cache.replace(text)
        logger.info("instruction_updated", length=len(text))
