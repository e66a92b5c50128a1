"""Runtime settings loaded from the environment (and an optional .env file)."""

import os
from typing import Dict, List

from dotenv import load_dotenv
from pydantic import BaseModel, Field

DEFAULT_SYSTEM_INSTRUCTION = (
    "You are a helpful AI assistant named Skyhammer AI. Your goal is to provide "
    "information, complete tasks, and engage in conversation. You have a wide range "
    "of knowledge on various topics including science, technology, history, culture, "
    "and current events. You can assist with analysis, question answering, coding, "
    "creative writing, and general discussion. Always strive to give accurate and "
    "helpful responses while being respectful and ethical. If you're unsure about "
    "something, it's okay to say so. Try to tailor your language and tone to what "
    "seems most appropriate for each user and conversation."
)

HARM_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)


class GenerationSettings(BaseModel):
    """Sampling parameters passed with every generation call."""

    temperature: float = 0.9
    max_output_tokens: int = 2048
    top_k: int = 40
    top_p: float = 0.95


class Settings(BaseModel):
    """Application settings."""

    gemini_api_key: str = ""
    gemini_model: str = "gemini-1.5-flash"
    db_path: str = "data/db.json"
    job_journal_path: str = "data/jobs.json"
    upload_dir: str = "uploads"
    default_system_instruction: str = DEFAULT_SYSTEM_INSTRUCTION

    max_concurrent_generations: int = 10
    transcription_workers: int = 2
    job_retention: int = 100
    transcription_timeout: float = 300.0
    file_processing_timeout: float = 300.0
    file_poll_interval: float = 2.0
    inline_limit_bytes: int = 20 * 1024 * 1024

    rate_limit: int = 100
    rate_window: int = 15 * 60
    log_level: str = "INFO"

    generation: GenerationSettings = Field(default_factory=GenerationSettings)
    safety_settings: List[Dict[str, str]] = Field(
        default_factory=lambda: [
            {"category": category, "threshold": "BLOCK_NONE"} for category in HARM_CATEGORIES
        ]
    )


def load_settings(env_file: str = ".env") -> Settings:
    """Build settings from environment variables, loading ``env_file`` first if present."""
    load_dotenv(env_file)
    env = os.environ
    values = {
        "gemini_api_key": env.get("GEMINI_API_KEY") or env.get("GOOGLE_AI_API_KEY"),
        "gemini_model": env.get("GEMINI_MODEL"),
        "db_path": env.get("DB_PATH"),
        "job_journal_path": env.get("JOB_JOURNAL_PATH"),
        "upload_dir": env.get("UPLOAD_DIR"),
        "default_system_instruction": env.get("DEFAULT_SYSTEM_INSTRUCTION"),
        "max_concurrent_generations": env.get("MAX_CONCURRENT_GENERATIONS"),
        "transcription_workers": env.get("TRANSCRIPTION_WORKERS"),
        "job_retention": env.get("JOB_RETENTION"),
        "transcription_timeout": env.get("TRANSCRIPTION_TIMEOUT"),
        "file_processing_timeout": env.get("FILE_PROCESSING_TIMEOUT"),
        "file_poll_interval": env.get("FILE_POLL_INTERVAL"),
        "inline_limit_bytes": env.get("INLINE_LIMIT_BYTES"),
        "rate_limit": env.get("RATE_LIMIT"),
        "rate_window": env.get("RATE_WINDOW"),
        "log_level": env.get("LOG_LEVEL"),
    }
    # Unset variables fall back to the model defaults
    return Settings(**{key: value for key, value in values.items() if value})
