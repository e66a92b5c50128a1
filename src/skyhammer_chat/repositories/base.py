"""Base repository interface."""

from abc import ABC, abstractmethod
from typing import Awaitable, Callable, List, Optional, Sequence

from ..domain.models import Conversation, ConversationSummary, FileReference, Message


class InstructionCache:
    """Read-through cache of the assistant instruction.

    The owning repository calls ``replace`` only after the durable write has
    succeeded, so a failed write leaves the previous value cached.
    """

    def __init__(self, default: str):
        self.default = default
        self._value: Optional[str] = None
        self._loaded = False

    async def get(self, load: Callable[[], Awaitable[Optional[str]]]) -> str:
        if not self._loaded:
            self._value = await load()
            self._loaded = True
        return self._value or self.default

    def replace(self, value: str) -> None:
        self._value = value
        self._loaded = True

    def invalidate(self) -> None:
        self._value = None
        self._loaded = False


class ConversationRepository(ABC):
    """Abstract base class for conversation stores."""

    def __init__(self, default_instruction: str):
        self.instruction_cache = InstructionCache(default_instruction)

    @abstractmethod
    async def get_messages(self, conversation_id: str) -> List[Message]:
        """Messages of a conversation in append order; empty for an unknown id."""
        pass

    async def append_message(self, conversation_id: str, message: Message) -> None:
        """Append a message, creating the conversation if it does not exist."""
        await self.append_messages(conversation_id, [message])

    @abstractmethod
    async def append_messages(self, conversation_id: str, messages: Sequence[Message]) -> None:
        """Append several messages as one write, in the given order."""
        pass

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        """Retrieve a conversation by ID."""
        pass

    @abstractmethod
    async def list_conversations(
        self, limit: Optional[int] = None, offset: int = 0
    ) -> List[ConversationSummary]:
        """List conversations, most recently updated first."""
        pass

    @abstractmethod
    async def create_conversation(
        self,
        conversation_id: str,
        name: str,
        first_message: str,
        attachment: Optional[FileReference] = None,
        replies: Sequence[Message] = (),
    ) -> Conversation:
        """Create a named conversation whose first entry is a user message.

        ``replies`` are appended after the first message in the same write.
        """
        pass

    @abstractmethod
    async def rename_conversation(self, conversation_id: str, name: str) -> None:
        pass

    @abstractmethod
    async def delete_conversation(self, conversation_id: str) -> None:
        """Delete a conversation. Unknown ids are ignored."""
        pass

    @abstractmethod
    async def clear_messages(self, conversation_id: str) -> None:
        pass

    @abstractmethod
    async def get_instruction(self) -> str:
        """The global assistant instruction, falling back to the default."""
        pass

    @abstractmethod
    async def set_instruction(self, text: str) -> None:
        pass
