"""Conversion of uploaded files into model-consumable content parts.

Policy by media type:

- ``image/*``: inline bytes plus OCR text. OCR failure only loses the text.
- ``audio/*`` and ``video/*``: the audio track is extracted and transcribed by
  the job queue; the media goes inline, or by remote reference when it is too
  large. Any failure here fails the exchange.
- text-like types: decoded and passed as plain text.
- anything else: inline bytes.
"""

import asyncio
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

import structlog

from ..domain.errors import AttachmentProcessingError, JobFailedError
from ..domain.models import AttachmentJob, BlobPart, ContentPart, TextPart, Upload
from .job_queue import TranscriptionJobQueue
from .llm import ModelGateway
from .ocr import TesseractTextExtractor
from .transcoding import FfmpegAudioExtractor, TranscodingError

logger = structlog.get_logger()

TEXT_LIKE_TYPES = {
    "application/json",
    "application/xml",
    "application/javascript",
    "application/x-yaml",
    "application/yaml",
    "application/x-sh",
    "application/sql",
}


def is_text_like(mime_type: str) -> bool:
    return mime_type.startswith("text/") or mime_type in TEXT_LIKE_TYPES


def remove_file(path: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.error("file_delete_failed", path=path, error=str(e))


@asynccontextmanager
async def owned_upload(upload: Optional[Upload]) -> AsyncIterator[Optional[Upload]]:
    """Scope during which the caller owns ``upload``; the file is deleted on exit."""
    try:
        yield upload
    finally:
        if upload is not None:
            await asyncio.to_thread(remove_file, upload.path)
            logger.debug("upload_removed", path=upload.path)


class AttachmentTransformService:
    """Turns one uploaded file into one content part."""

    def __init__(
        self,
        job_queue: TranscriptionJobQueue,
        gateway: ModelGateway,
        text_extractor: Optional[TesseractTextExtractor] = None,
        audio_extractor: Optional[FfmpegAudioExtractor] = None,
        inline_limit_bytes: int = 20 * 1024 * 1024,
        transcription_timeout: Optional[float] = None,
    ):
        self.job_queue = job_queue
        self.gateway = gateway
        self.text_extractor = text_extractor or TesseractTextExtractor()
        self.audio_extractor = audio_extractor or FfmpegAudioExtractor()
        self.inline_limit_bytes = inline_limit_bytes
        self.transcription_timeout = transcription_timeout

    async def transform(self, upload: Upload) -> ContentPart:
        mime_type = upload.mime_type.lower()
        try:
            if mime_type.startswith("image/"):
                return await self._image(upload)
            if mime_type.startswith(("audio/", "video/")):
                return await self._media(upload)
            data = await asyncio.to_thread(Path(upload.path).read_bytes)
            if is_text_like(mime_type):
                try:
                    return TextPart(text=data.decode("utf-8"))
                except UnicodeDecodeError:
                    logger.warning("text_decode_failed", path=upload.path, mime_type=mime_type)
            return BlobPart(data=data, mime_type=upload.mime_type)
        except AttachmentProcessingError:
            raise
        except Exception as e:
            logger.error("attachment_transform_failed", path=upload.path, error=str(e))
            raise AttachmentProcessingError(upload.path, str(e)) from e

    async def _image(self, upload: Upload) -> BlobPart:
        data = await asyncio.to_thread(Path(upload.path).read_bytes)
        try:
            text = await self.text_extractor.extract(upload.path)
        except Exception as e:
            logger.warning("ocr_failed", path=upload.path, error=str(e))
            text = ""
        return BlobPart(data=data, mime_type=upload.mime_type, extracted_text=text)

    async def _media(self, upload: Upload) -> ContentPart:
        transcript = await self.transcribe(upload)
        size = await asyncio.to_thread(os.path.getsize, upload.path)
        if size <= self.inline_limit_bytes:
            data = await asyncio.to_thread(Path(upload.path).read_bytes)
            return BlobPart(data=data, mime_type=upload.mime_type, extracted_text=transcript)
        remote = await self.gateway.upload_file(upload.path, upload.mime_type)
        return remote.model_copy(update={"extracted_text": transcript})

    async def transcribe(self, upload: Upload) -> str:
        """Extract the audio track, queue a transcription job and wait for it.

        Once queued, the audio file belongs to the job queue, which deletes it
        when the job finishes.
        """
        try:
            audio_path = await self.audio_extractor.extract_audio(upload.path)
        except TranscodingError as e:
            raise AttachmentProcessingError(upload.path, str(e)) from e

        try:
            handle = await self.job_queue.enqueue(
                AttachmentJob(source_path=audio_path, mime_type="audio/mpeg")
            )
        except OSError as e:
            remove_file(audio_path)
            raise AttachmentProcessingError(upload.path, f"Could not queue transcription: {e}") from e

        try:
            return await handle.wait(timeout=self.transcription_timeout)
        except JobFailedError as e:
            raise AttachmentProcessingError(upload.path, e.error) from e
        except asyncio.TimeoutError as e:
            raise AttachmentProcessingError(upload.path, "Transcription timed out") from e
