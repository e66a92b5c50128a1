"""Model invocation gateway backed by Google's Gemini models."""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import google.generativeai as genai
import structlog
from google.api_core import exceptions

from ..config import Settings
from ..domain.errors import InvalidContent, ModelError, RateLimited
from ..domain.models import (
    BlobPart,
    ContentPart,
    RemoteFilePart,
    StreamChunk,
    TextPart,
    Turn,
)

logger = structlog.get_logger()


class ModelGateway(ABC):
    """Abstract capability wrapping a remote generative model.

    Implementations do not retry; callers decide what to do with
    ``RateLimited``, ``ModelError`` and ``InvalidContent``.
    """

    @abstractmethod
    def generate_streaming(self, contents: Sequence[Turn]) -> AsyncIterator[StreamChunk]:
        """Stream output fragments. The final chunk always has ``done=True``."""

    @abstractmethod
    async def generate_once(self, contents: Sequence[Turn]) -> str:
        """Generate a complete response in one call."""

    @abstractmethod
    async def upload_file(self, path: str, mime_type: str) -> RemoteFilePart:
        """Upload a file out of band and wait until it can be referenced."""

    async def delete_file(self, handle: str) -> None:
        """Release a previously uploaded file. Optional for implementations."""


def to_gemini_parts(part: ContentPart) -> List[Dict[str, Any]]:
    """Convert one content part into Gemini request parts."""
    if isinstance(part, TextPart):
        return [{"text": part.text}]
    if isinstance(part, BlobPart):
        converted = [{"inline_data": {"mime_type": part.mime_type, "data": part.data}}]
    elif isinstance(part, RemoteFilePart):
        converted = [{"file_data": {"mime_type": part.mime_type, "file_uri": part.uri}}]
    else:
        raise InvalidContent(f"Unsupported content part: {type(part).__name__}")
    if part.extracted_text:
        converted.append({"text": part.extracted_text})
    return converted


def to_gemini_contents(contents: Sequence[Turn]) -> List[Dict[str, Any]]:
    return [
        {
            "role": turn.role.value,
            "parts": [p for part in turn.parts for p in to_gemini_parts(part)],
        }
        for turn in contents
    ]


def translate_error(error: Exception) -> Exception:
    """Map provider exceptions onto the gateway's error taxonomy."""
    if isinstance(error, exceptions.ResourceExhausted):
        return RateLimited(str(error))
    if isinstance(error, (exceptions.InvalidArgument, ValueError, TypeError)):
        return InvalidContent(str(error))
    return ModelError(str(error))


class GeminiGateway(ModelGateway):
    """Gateway using the google-generativeai SDK with bounded concurrency."""

    def __init__(self, settings: Settings):
        genai.configure(api_key=settings.gemini_api_key)
        self.settings = settings
        self.model = genai.GenerativeModel(
            settings.gemini_model,
            generation_config=settings.generation.model_dump(),
            safety_settings=settings.safety_settings,
        )
        self._semaphore = asyncio.Semaphore(settings.max_concurrent_generations)
        logger.info(
            "llm_service_init",
            model=settings.gemini_model,
            max_concurrent=settings.max_concurrent_generations,
        )

    async def generate_streaming(self, contents: Sequence[Turn]) -> AsyncIterator[StreamChunk]:
        payload = to_gemini_contents(contents)
        async with self._semaphore:
            try:
                response = await self.model.generate_content_async(payload, stream=True)
                async for chunk in response:
                    text = _chunk_text(chunk)
                    if text:
                        yield StreamChunk(text=text)
            except Exception as e:
                logger.error("stream_generation_error", error=str(e))
                raise translate_error(e) from e
        yield StreamChunk(done=True)

    async def generate_once(self, contents: Sequence[Turn]) -> str:
        payload = to_gemini_contents(contents)
        async with self._semaphore:
            try:
                response = await self.model.generate_content_async(payload)
                return response.text
            except Exception as e:
                logger.error("response_generation_error", error=str(e))
                raise translate_error(e) from e

    async def upload_file(self, path: str, mime_type: str) -> RemoteFilePart:
        try:
            uploaded = await asyncio.to_thread(genai.upload_file, path=path, mime_type=mime_type)
        except Exception as e:
            logger.error("file_upload_error", path=path, error=str(e))
            raise translate_error(e) from e

        try:
            remote = await asyncio.wait_for(
                self._wait_until_processed(uploaded.name),
                timeout=self.settings.file_processing_timeout,
            )
        except asyncio.TimeoutError:
            logger.error("file_processing_timeout", handle=uploaded.name)
            raise ModelError(f"Remote processing of {path} timed out")

        logger.info("file_uploaded", handle=remote.name, mime_type=mime_type)
        return RemoteFilePart(handle=remote.name, uri=remote.uri, mime_type=mime_type)

    async def _wait_until_processed(self, name: str):
        remote = await asyncio.to_thread(genai.get_file, name)
        while _state_name(remote) == "PROCESSING":
            await asyncio.sleep(self.settings.file_poll_interval)
            remote = await asyncio.to_thread(genai.get_file, name)
        if _state_name(remote) == "FAILED":
            raise ModelError(f"Remote processing of {name} failed")
        return remote

    async def delete_file(self, handle: str) -> None:
        try:
            await asyncio.to_thread(genai.delete_file, handle)
        except exceptions.GoogleAPIError as e:
            logger.warning("file_delete_error", handle=handle, error=str(e))


def _chunk_text(chunk) -> str:
    # .text raises ValueError when a chunk carries no text parts
    try:
        return chunk.text
    except ValueError:
        return ""


def _state_name(remote) -> Optional[str]:
    state = getattr(remote, "state", None)
    return getattr(state, "name", None)
