"""
Configuration module for chatdesk.

This module centralizes all configuration settings for the chat session
manager, loading values from environment variables with sensible defaults.
"""
import os
import logging
from typing import Dict

from dotenv import load_dotenv

from chatdesk.utils.feature_flags import init_feature_flags

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)

# API Keys and Authentication
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")

if not OPENAI_API_KEY:
    logger.warning("OPENAI_API_KEY not set - provider requests will not work")

# Storage
DATABASE_URL = os.getenv("CHATDESK_DB_URL", "sqlite:///./chat_history.sqlite")

# Model settings
DEFAULT_MODEL = os.getenv("CHATDESK_DEFAULT_MODEL", "gpt-3.5-turbo")

# Hard context size per model (prompt + completion tokens).
MODEL_CONTEXT_LIMITS: Dict[str, int] = {
    "gpt-3.5-turbo": 4097,
    "gpt-3.5-turbo-16k": 16385,
    "gpt-4": 8192,
    "gpt-4-32k": 32768,
    "gpt-4o": 128000,
    "gpt-4o-mini": 128000,
}
DEFAULT_CONTEXT_LIMIT = int(os.getenv("CHATDESK_DEFAULT_CONTEXT_LIMIT", "4097"))

# Tokens held back for the completion when the request carries no max_tokens.
CONTEXT_RESERVE = int(os.getenv("CHATDESK_CONTEXT_RESERVE", "410"))

# Search settings
SEARCH_THRESHOLD = float(os.getenv("CHATDESK_SEARCH_THRESHOLD", "0.05"))
HIGHLIGHT_RUN_LENGTH = int(os.getenv("CHATDESK_HIGHLIGHT_RUN_LENGTH", "6"))

# Persistence retry after a successful provider call
STORAGE_RETRY_ATTEMPTS = int(os.getenv("CHATDESK_STORAGE_RETRY_ATTEMPTS", "3"))
STORAGE_RETRY_DELAY = float(os.getenv("CHATDESK_STORAGE_RETRY_DELAY", "0.2"))

LOG_LEVEL = os.getenv("CHATDESK_LOG_LEVEL", "INFO").upper()


def context_limit_for(model: str) -> int:
    """Return the hard context size for ``model``."""
    return MODEL_CONTEXT_LIMITS.get(model, DEFAULT_CONTEXT_LIMIT)


def setup_logging() -> None:
    """Configure root logging for entry points (backend, CLI)."""
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )


# Initialize feature flags
init_feature_flags()
