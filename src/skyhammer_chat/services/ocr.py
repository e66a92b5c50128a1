"""Optical character recognition for image attachments."""

import asyncio

import pytesseract
import structlog
from PIL import Image

logger = structlog.get_logger()


class TesseractTextExtractor:
    """Extracts text from images with Tesseract. Runs off the event loop."""

    def __init__(self, lang: str = "eng"):
        self.lang = lang

    async def extract(self, path: str) -> str:
        return await asyncio.to_thread(self._extract, path)

    def _extract(self, path: str) -> str:
        with Image.open(path) as image:
            text = pytesseract.image_to_string(image, lang=self.lang)
        logger.debug("ocr_complete", path=path, characters=len(text))
        return text.strip()
