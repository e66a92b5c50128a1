"""Shared fakes and fixtures."""

import os
from typing import List, Optional, Sequence

import pytest

from skyhammer_chat.domain.models import RemoteFilePart, StreamChunk, Turn, Upload
from skyhammer_chat.repositories.memory import InMemoryRepository
from skyhammer_chat.services.attachments import AttachmentTransformService
from skyhammer_chat.services.broadcaster import StreamBroadcaster
from skyhammer_chat.services.job_queue import TranscriptionJobQueue
from skyhammer_chat.services.llm import ModelGateway
from skyhammer_chat.services.orchestrator import ConversationOrchestrator
from skyhammer_chat.services.transcoding import TranscodingError

DEFAULT_INSTRUCTION = "You are a test assistant."


class FakeGateway(ModelGateway):
    """Scripted model: streams ``chunks`` and answers titles with ``title``."""

    def __init__(
        self,
        chunks: Sequence[str] = ("Hello", " there", "!"),
        title: str = "Friendly Greeting Chat",
        stream_error: Optional[Exception] = None,
        fail_after: int = 0,
        once_error: Optional[Exception] = None,
    ):
        self.chunks = list(chunks)
        self.title = title
        self.stream_error = stream_error
        self.fail_after = fail_after
        self.once_error = once_error
        self.stream_calls: List[List[Turn]] = []
        self.once_calls: List[List[Turn]] = []
        self.uploads: List[str] = []
        self.deleted: List[str] = []

    async def generate_streaming(self, contents):
        self.stream_calls.append(list(contents))
        for index, text in enumerate(self.chunks):
            if self.stream_error is not None and index == self.fail_after:
                raise self.stream_error
            yield StreamChunk(text=text)
        if self.stream_error is not None and self.fail_after >= len(self.chunks):
            raise self.stream_error
        yield StreamChunk(done=True)

    async def generate_once(self, contents):
        self.once_calls.append(list(contents))
        if self.once_error is not None:
            raise self.once_error
        return self.title

    async def upload_file(self, path, mime_type):
        self.uploads.append(path)
        handle = f"files/{len(self.uploads)}"
        return RemoteFilePart(handle=handle, uri=f"https://example.test/{handle}", mime_type=mime_type)

    async def delete_file(self, handle):
        self.deleted.append(handle)


class FakeTextExtractor:
    def __init__(self, text: str = "", error: Optional[Exception] = None):
        self.text = text
        self.error = error

    async def extract(self, path: str) -> str:
        if self.error is not None:
            raise self.error
        return self.text


class FakeAudioExtractor:
    """Writes a stand-in ``.mp3`` next to the source, like ffmpeg would."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.outputs: List[str] = []

    async def extract_audio(self, source_path: str) -> str:
        if self.fail:
            raise TranscodingError("ffmpeg exited with 1")
        target = f"{source_path}.mp3"
        with open(target, "wb") as handle:
            handle.write(b"ID3 audio")
        self.outputs.append(target)
        return target


def make_transcriber(transcript: str = "spoken words", error: Optional[Exception] = None):
    async def transcribe(audio_path: str) -> str:
        if error is not None:
            raise error
        return transcript

    return transcribe


def write_upload(directory, name: str, mime_type: str, data: bytes = b"payload") -> Upload:
    path = os.path.join(str(directory), name)
    with open(path, "wb") as handle:
        handle.write(data)
    return Upload(path=path, original_name=name, mime_type=mime_type)


def build_orchestrator(
    gateway: Optional[FakeGateway] = None,
    repository: Optional[InMemoryRepository] = None,
    job_queue: Optional[TranscriptionJobQueue] = None,
    text_extractor: Optional[FakeTextExtractor] = None,
    audio_extractor: Optional[FakeAudioExtractor] = None,
    broadcaster: Optional[StreamBroadcaster] = None,
) -> ConversationOrchestrator:
    gateway = gateway or FakeGateway()
    job_queue = job_queue or TranscriptionJobQueue(make_transcriber(), workers=1)
    attachments = AttachmentTransformService(
        job_queue,
        gateway,
        text_extractor=text_extractor or FakeTextExtractor("scanned text"),
        audio_extractor=audio_extractor or FakeAudioExtractor(),
    )
    return ConversationOrchestrator(
        repository or InMemoryRepository(DEFAULT_INSTRUCTION),
        gateway,
        attachments,
        broadcaster or StreamBroadcaster(),
    )


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository(DEFAULT_INSTRUCTION)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def broadcaster() -> StreamBroadcaster:
    return StreamBroadcaster()
