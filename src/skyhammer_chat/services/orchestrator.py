"""Conversation orchestrator.

Drives one exchange (user message in, model response out) through its states::

    received -> context_building -> attachment_processing? -> generating
             -> persisting -> complete

with ``failed`` reachable from every non-terminal state. Nothing is persisted
for a failed exchange, and every failed or completed exchange publishes exactly
one terminal event to live listeners.
"""

import asyncio
from typing import List, Optional
from weakref import WeakValueDictionary

import structlog

from ..domain.errors import ChatError
from ..domain.models import (
    ContentPart,
    ExchangeResult,
    ExchangeState,
    Message,
    Role,
    Upload,
    new_id,
)
from ..metrics import EXCHANGES
from ..repositories.base import ConversationRepository
from .attachments import AttachmentTransformService, owned_upload
from .broadcaster import StreamBroadcaster
from .context import assemble_context, clean_title, title_prompt
from .llm import ModelGateway

logger = structlog.get_logger()


class Exchange:
    """Bookkeeping for one in-flight exchange."""

    def __init__(self, exchange_id: str, conversation_id: str):
        self.id = exchange_id
        self.conversation_id = conversation_id
        self.is_new = False
        self.state = ExchangeState.RECEIVED
        self.terminal_published = False
        self.history: List[ExchangeState] = [ExchangeState.RECEIVED]
        self.log = logger.bind(exchange_id=exchange_id, conversation_id=conversation_id)
        self.log.info("exchange_state", state=self.state.value)

    def advance(self, state: ExchangeState) -> None:
        self.state = state
        self.history.append(state)
        self.log.info("exchange_state", state=state.value)


class ConversationOrchestrator:
    """Coordinates store, attachment pipeline, model and broadcaster per exchange."""

    def __init__(
        self,
        repository: ConversationRepository,
        gateway: ModelGateway,
        attachments: AttachmentTransformService,
        broadcaster: StreamBroadcaster,
    ):
        self.repository = repository
        self.gateway = gateway
        self.attachments = attachments
        self.broadcaster = broadcaster
        self._persist_locks: "WeakValueDictionary[str, asyncio.Lock]" = WeakValueDictionary()

    async def submit_exchange(
        self,
        text: str,
        conversation_id: Optional[str] = None,
        upload: Optional[Upload] = None,
        exchange_id: Optional[str] = None,
    ) -> ExchangeResult:
        """Run one exchange to completion.

        Streamed chunks go to listeners subscribed to ``exchange_id``. The
        uploaded file, if any, is deleted before this returns or raises.
        A cancelled exchange fails like any other, terminal event included.
        """
        async with owned_upload(upload):
            exchange = Exchange(exchange_id or new_id(), conversation_id or new_id())
            try:
                result = await self._run(exchange, text, upload)
            except (Exception, asyncio.CancelledError) as e:
                await self._fail(exchange, e)
                raise
        EXCHANGES.labels(outcome="complete").inc()
        return result

    async def _run(self, exchange: Exchange, text: str, upload: Optional[Upload]) -> ExchangeResult:
        existing = await self.repository.get_conversation(exchange.conversation_id)
        exchange.is_new = existing is None
        exchange.log.info("exchange_received", is_new=exchange.is_new, has_attachment=upload is not None)

        exchange.advance(ExchangeState.CONTEXT_BUILDING)
        instruction = await self.repository.get_instruction()
        history = await self.repository.get_messages(exchange.conversation_id)

        part: Optional[ContentPart] = None
        if upload is not None:
            exchange.advance(ExchangeState.ATTACHMENT_PROCESSING)
            part = await self.attachments.transform(upload)

        contents = assemble_context(instruction, history, text, part)

        exchange.advance(ExchangeState.GENERATING)
        response = await self._generate(exchange, contents)

        exchange.advance(ExchangeState.PERSISTING)
        name = await self._persist(exchange, text, upload, response)

        exchange.advance(ExchangeState.COMPLETE)
        conversations = await self.repository.list_conversations()
        return ExchangeResult(
            exchange_id=exchange.id,
            conversation_id=exchange.conversation_id,
            conversation_name=name,
            response=response,
            conversations=conversations,
        )

    async def _generate(self, exchange: Exchange, contents) -> str:
        fragments: List[str] = []
        async for chunk in self.gateway.generate_streaming(contents):
            if chunk.done:
                continue
            fragments.append(chunk.text)
            await self.broadcaster.publish(exchange.id, chunk.text)
        await self.broadcaster.publish(exchange.id, "", done=True)
        exchange.terminal_published = True
        response = "".join(fragments)
        exchange.log.info("generation_complete", response_length=len(response))
        return response

    async def _persist(
        self, exchange: Exchange, text: str, upload: Optional[Upload], response: str
    ) -> Optional[str]:
        user_message = Message(
            role=Role.USER, content=text, file=upload.reference() if upload else None
        )
        model_message = Message(role=Role.MODEL, content=response)

        lock = self._persist_locks.get(exchange.conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._persist_locks[exchange.conversation_id] = lock

        async with lock:
            conversation = await self.repository.get_conversation(exchange.conversation_id)
            if conversation is None:
                name = await self.derive_title(text)
                await self.repository.create_conversation(
                    exchange.conversation_id,
                    name,
                    text,
                    user_message.file,
                    replies=[model_message],
                )
                return name
            await self.repository.append_messages(
                exchange.conversation_id, [user_message, model_message]
            )
            return conversation.name

    async def derive_title(self, message: str) -> str:
        """Short conversation title; falls back to the message's first words."""
        try:
            raw = await self.gateway.generate_once(title_prompt(message))
        except ChatError as e:
            logger.warning("title_generation_failed", error=str(e))
            raw = ""
        return clean_title(raw, fallback=message)

    async def _fail(self, exchange: Exchange, error: BaseException) -> None:
        failed_in = exchange.state
        exchange.advance(ExchangeState.FAILED)
        EXCHANGES.labels(outcome="failed").inc()
        exchange.log.error(
            "exchange_failed",
            failed_in=failed_in.value,
            error_type=type(error).__name__,
            error=str(error),
        )
        if exchange.terminal_published:
            return
        user_message = (
            error.user_message
            if isinstance(error, ChatError)
            else ChatError.user_message
        )
        exchange.terminal_published = True
        await self.broadcaster.publish(exchange.id, user_message, done=True, error=True)
