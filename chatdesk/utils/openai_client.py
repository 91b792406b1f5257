"""OpenAI client factory for chatdesk."""

import os
from typing import Optional

import openai
from dotenv import load_dotenv

# Load environment variables from .env file (for local development)
load_dotenv()


def get_openai_client(api_key: Optional[str] = None) -> openai.OpenAI:
    """Initialize and return an OpenAI client with proper API key configuration.

    An explicit ``api_key`` wins; otherwise the ``OPENAI_API_KEY`` environment
    variable (or ``.env`` entry) is used.

    Returns:
        openai.OpenAI: Configured OpenAI client

    Raises:
        ValueError: If no API key is found
    """
    api_key = api_key or os.getenv("OPENAI_API_KEY")

    if not api_key:
        raise ValueError(
            "OpenAI API key not found. Please set OPENAI_API_KEY in your "
            "environment or in a .env file next to the application."
        )

    return openai.OpenAI(api_key=api_key)
