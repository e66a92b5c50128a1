"""Audio extraction from audio/video attachments using the ffmpeg binary."""

import asyncio
import os

import structlog

logger = structlog.get_logger()


class TranscodingError(Exception):
    """ffmpeg could not produce an audio-only stream."""


class FfmpegAudioExtractor:
    """Strips the video stream and re-encodes the audio as mp3."""

    def __init__(self, binary: str = "ffmpeg"):
        self.binary = binary

    async def extract_audio(self, source_path: str) -> str:
        """Write ``<source>.mp3`` next to the source and return its path."""
        target = f"{source_path}.mp3"
        try:
            process = await asyncio.create_subprocess_exec(
                self.binary, "-y", "-i", source_path, "-vn", target,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise TranscodingError(f"Could not start {self.binary}: {e}") from e

        _, stderr = await process.communicate()
        if process.returncode != 0:
            if os.path.exists(target):
                os.unlink(target)
            detail = stderr.decode("utf-8", errors="replace")[-500:]
            logger.error("audio_extraction_failed", path=source_path, error=detail)
            raise TranscodingError(f"ffmpeg exited with {process.returncode}: {detail}")

        logger.info("audio_extracted", source=source_path, target=target)
        return target
