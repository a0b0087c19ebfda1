import logging
import os

from dotenv import load_dotenv

load_dotenv()


def _bool_env(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


class Settings:
    """Process configuration, read from the environment on construction."""

    def __init__(self):
        # --- Database ---
        self.DATABASE_URL = os.environ.get("DATABASE_URL")
        self.DATABASE_PUBLIC_URL = os.environ.get("DATABASE_PUBLIC_URL")

        # --- Redis / Celery ---
        self.REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")
        self.WORKER_CONCURRENCY = int(os.environ.get("WORKER_CONCURRENCY", "5"))
        self.BROKER_VISIBILITY_TIMEOUT = int(os.environ.get("BROKER_VISIBILITY_TIMEOUT", "43200"))
        self.JOB_MAX_RETRIES = int(os.environ.get("JOB_MAX_RETRIES", "3"))
        self.JOB_BACKOFF_SECONDS = float(os.environ.get("JOB_BACKOFF_SECONDS", "2"))
        self.JOB_IDEMPOTENCY_TTL = int(os.environ.get("JOB_IDEMPOTENCY_TTL", "86400"))

        # --- Telegram ---
        self.TELEGRAM_BOT_TOKEN = os.environ.get("TELEGRAM_BOT_TOKEN")
        self.TELEGRAM_API_BASE = os.environ.get("TELEGRAM_API_BASE", "https://api.telegram.org")
        self.TELEGRAM_TIMEOUT = float(os.environ.get("TELEGRAM_TIMEOUT", "15"))

        # --- Providers ---
        self.DEFAULT_PROVIDER = os.environ.get("DEFAULT_PROVIDER", "openai")
        self.PROVIDER_TIMEOUT = float(os.environ.get("PROVIDER_TIMEOUT", "30"))
        self.PROVIDER_MAX_ATTEMPTS = int(os.environ.get("PROVIDER_MAX_ATTEMPTS", "2"))
        self.PROVIDER_TEMPERATURE = float(os.environ.get("PROVIDER_TEMPERATURE", "0.7"))
        self.PROVIDER_MAX_TOKENS = int(os.environ.get("PROVIDER_MAX_TOKENS", "4000"))

        self.OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY")
        self.OPENAI_BASE_URL = os.environ.get("OPENAI_BASE_URL")
        self.OPENAI_MODEL = os.environ.get("OPENAI_MODEL", "gpt-4o-mini")
        self.OPENAI_VISION_MODEL = os.environ.get("OPENAI_VISION_MODEL", self.OPENAI_MODEL)
        self.OPENAI_TRANSCRIBE_MODEL = os.environ.get("OPENAI_TRANSCRIBE_MODEL", "whisper-1")
        self.OPENAI_TRANSCRIBE_LANGUAGE = os.environ.get("OPENAI_TRANSCRIBE_LANGUAGE") or None

        self.GEMINI_API_KEY = os.environ.get("GEMINI_API_KEY")
        self.GEMINI_MODEL = os.environ.get("GEMINI_MODEL", "gemini-2.0-flash")
        self.GEMINI_VISION_MODEL = os.environ.get("GEMINI_VISION_MODEL", self.GEMINI_MODEL)

        self.DEEPSEEK_API_KEY = os.environ.get("DEEPSEEK_API_KEY")
        self.DEEPSEEK_BASE_URL = os.environ.get("DEEPSEEK_BASE_URL", "https://api.deepseek.com/v1")
        self.DEEPSEEK_MODEL = os.environ.get("DEEPSEEK_MODEL", "deepseek-chat")
        self.DEEPSEEK_VISION_MODEL = os.environ.get("DEEPSEEK_VISION_MODEL", "deepseek-vl-chat")

        # Ollama has no credentials; an empty base URL disables it.
        self.OLLAMA_BASE_URL = os.environ.get("OLLAMA_BASE_URL", "")
        self.OLLAMA_CHAT_MODEL = os.environ.get("OLLAMA_CHAT_MODEL", "qwen2.5:14b-instruct")
        self.OLLAMA_VISION_MODEL = os.environ.get("OLLAMA_VISION_MODEL", "llava:7b")

        # --- Reminders & summaries ---
        self.DEFAULT_TIMEZONE = os.environ.get("DEFAULT_TIMEZONE", "Europe/Berlin")
        self.SUMMARY_MAX_CHARS = int(os.environ.get("SUMMARY_MAX_CHARS", "12000"))
        self.AUTO_SUMMARY_ENABLED = _bool_env("AUTO_SUMMARY_ENABLED", True)
        self.AUTO_SUMMARY_HOUR = int(os.environ.get("AUTO_SUMMARY_HOUR", "3"))
        self.AUTO_SUMMARY_MINUTE = int(os.environ.get("AUTO_SUMMARY_MINUTE", "30"))
        self.REARM_GRACE_SECONDS = int(os.environ.get("REARM_GRACE_SECONDS", "300"))

        # --- Logging ---
        self.LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()


settings = Settings()


def configure_logging(level: str | None = None) -> None:
    """Install a root handler once per process."""
    logging.basicConfig(
        level=level or settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
