"""
LLM client wiring (Groq or OpenAI, both via the OpenAI SDK).

Provides:
- Client construction for the configured provider
- Startup model validation for Groq
"""

from typing import Any, Optional

import structlog
from openai import APIConnectionError, APIStatusError, AsyncOpenAI, NotFoundError

from src.caller.config import get_config

logger = structlog.get_logger(__name__)

GROQ_BASE_URL = "https://api.groq.com/openai/v1"


def create_llm_client(config: Optional[Any] = None) -> AsyncOpenAI:
    """AsyncOpenAI client pointed at the configured provider."""
    if config is None:
        config = get_config()

    if config.llm_provider == "openai":
        return AsyncOpenAI(api_key=config.openai_api_key)

    # Use OpenAI client with Groq base URL
    return AsyncOpenAI(api_key=config.groq_api_key, base_url=GROQ_BASE_URL)


def model_name(config: Optional[Any] = None) -> str:
    if config is None:
        config = get_config()
    return config.openai_model if config.llm_provider == "openai" else config.groq_model


async def validate_groq_model(client: AsyncOpenAI, model: str) -> None:
    """
    Fail fast when the configured Groq model is not served.

    Raises:
        SystemExit: unknown model, rejected key, or Groq unreachable
    """
    logger.info("Validating Groq model", model=model)
    try:
        await client.models.retrieve(model)
    except NotFoundError:
        logger.error("Groq model not found", requested_model=model)
        raise SystemExit(f"GROQ_MODEL '{model}' not found. Please update GROQ_MODEL in your .env file.")
    except APIStatusError as e:
        logger.error("Failed to fetch Groq model", status_code=e.status_code)
        raise SystemExit(f"Failed to validate Groq model (status {e.status_code}). Check your GROQ_API_KEY.")
    except APIConnectionError as e:
        logger.error("Failed to connect to Groq API", error=str(e))
        raise SystemExit(f"Failed to connect to Groq API: {e}")
    logger.info("Groq model validated successfully", model=model)


async def initialize_llm(config: Optional[Any] = None) -> None:
    """Validate the LLM configuration at startup."""
    if config is None:
        config = get_config()

    if config.llm_provider == "groq":
        await validate_groq_model(create_llm_client(config), config.groq_model)
    else:
        logger.info("Skipping model validation", provider=config.llm_provider, model=model_name(config))
