"""Repository persisted as a single JSON document on disk.

Layout::

    {"conversations": [{"id", "name", "created", "lastUpdated",
                        "messages": [{"role", "content", "file"}]}],
     "systemInstruction": "..."}
"""

import asyncio
import json
import os
import tempfile
from pathlib import Path
from typing import Dict, Optional

import structlog

from ..domain.errors import StorageIOError
from ..domain.models import Conversation
from .memory import InMemoryRepository

logger = structlog.get_logger()


class JsonFileRepository(InMemoryRepository):
    """Durable repository: every mutation rewrites the document atomically."""

    def __init__(self, path: str, default_instruction: str):
        super().__init__(default_instruction)
        self.path = Path(path)

    async def _load(self) -> None:
        # pydantic's ValidationError is a ValueError
        try:
            document = await asyncio.to_thread(self._read_document)
            conversations = {}
            for raw in document.get("conversations", []):
                conversation = Conversation.model_validate(raw)
                conversations[conversation.id] = conversation
        except (OSError, ValueError, AttributeError) as e:
            logger.error("store_read_failed", path=str(self.path), error=str(e))
            raise StorageIOError(f"Could not read {self.path}: {e}") from e

        self._conversations = conversations
        self._instruction = document.get("systemInstruction") or None
        logger.info(
            "store_loaded", path=str(self.path), conversations=len(conversations)
        )

    def _read_document(self) -> dict:
        if not self.path.exists():
            return {"conversations": [], "systemInstruction": ""}
        with self.path.open("r", encoding="utf-8") as handle:
            return json.load(handle)

    async def _commit(
        self, conversations: Dict[str, Conversation], instruction: Optional[str]
    ) -> None:
        document = {
            "conversations": [
                c.model_dump(mode="json", by_alias=True) for c in conversations.values()
            ],
            "systemInstruction": instruction or "",
        }
        try:
            await asyncio.to_thread(self._write_document, document)
        except OSError as e:
            logger.error("store_write_failed", path=str(self.path), error=str(e))
            raise StorageIOError(f"Could not write {self.path}: {e}") from e

    def _write_document(self, document: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(document, handle, indent=2)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
