"""Speech-to-text for audio attachments, performed by the generative model."""

import structlog

from ..domain.models import Role, TextPart, Turn
from .llm import ModelGateway

logger = structlog.get_logger()

TRANSCRIBE_PROMPT = (
    "Transcribe the speech in this audio verbatim. "
    "Respond with only the transcript, no additional text."
)


class GeminiTranscriber:
    """Uploads an audio file to the model provider and asks for a transcript."""

    def __init__(self, gateway: ModelGateway, mime_type: str = "audio/mpeg"):
        self.gateway = gateway
        self.mime_type = mime_type

    async def __call__(self, audio_path: str) -> str:
        remote = await self.gateway.upload_file(audio_path, self.mime_type)
        try:
            transcript = await self.gateway.generate_once(
                [Turn(role=Role.USER, parts=[remote, TextPart(text=TRANSCRIBE_PROMPT)])]
            )
        finally:
            await self.gateway.delete_file(remote.handle)
        logger.info("audio_transcribed", path=audio_path, characters=len(transcript))
        return transcript.strip()
