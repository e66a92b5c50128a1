"""Error taxonomy of the message pipeline."""

from typing import Optional


class ChatError(Exception):
    """Base class for errors raised while handling an exchange."""

    user_message = "An error occurred while processing your request."

    def __init__(self, message: str = "", *, user_message: Optional[str] = None):
        super().__init__(message or self.user_message)
        if user_message is not None:
            self.user_message = user_message


class AttachmentProcessingError(ChatError):
    """An attachment could not be converted into model content."""

    user_message = "The attached file could not be processed."

    def __init__(self, path: str, message: str = ""):
        super().__init__(message or f"Failed to process attachment {path}")
        self.path = path


class JobFailedError(ChatError):
    """A transcription job reached the failed state."""

    def __init__(self, job_id: str, error: str):
        super().__init__(f"Job {job_id} failed: {error}")
        self.job_id = job_id
        self.error = error


class RateLimited(ChatError):
    """The model provider's quota is exhausted. Retry later."""

    user_message = "The AI service is busy right now. Please try again in a moment."

    def __init__(self, message: str = "", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class ModelError(ChatError):
    """Any other failure reported by the model provider."""


class InvalidContent(ChatError):
    """The model provider rejected a content part."""

    user_message = "The request contained content the AI service cannot accept."


class StorageIOError(ChatError):
    """A durable write to the conversation store failed."""

    user_message = "Your conversation could not be saved."
