"""LLM client for forced tool calls."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

from litellm import acompletion
from litellm.exceptions import (
    APIConnectionError,
    InternalServerError,
    RateLimitError,
    ServiceUnavailableError,
    Timeout,
)

from finquery.config import settings
from finquery.errors import TransportFailure

logger = logging.getLogger(__name__)

# Failures worth one more attempt; anything else is surfaced immediately
RETRYABLE_ERRORS = (
    APIConnectionError,
    InternalServerError,
    RateLimitError,
    ServiceUnavailableError,
    ConnectionError,
)
TIMEOUT_ERRORS = (Timeout, TimeoutError, asyncio.TimeoutError)


class LLMTimeout(Exception):
    """Raised when every attempt at the model call timed out."""

    pass


@dataclass(frozen=True)
class ToolCall:
    """A tool invocation returned by the model."""

    name: str
    arguments: str  # Raw JSON text as produced by the model
    input_tokens: int = 0
    output_tokens: int = 0


def _get_model_name() -> str:
    """Get the appropriate model name based on provider."""
    if settings.llm_provider == "openai":
        return settings.openai_model
    elif settings.llm_provider == "anthropic":
        return f"anthropic/{settings.anthropic_model}"
    else:
        return f"ollama/{settings.ollama_model}"


def _get_api_base() -> Optional[str]:
    """Get the API base URL for Ollama."""
    if settings.llm_provider == "ollama":
        return settings.ollama_host
    return None


def _get_api_key() -> Optional[str]:
    if settings.llm_provider == "openai":
        return settings.openai_api_key
    if settings.llm_provider == "anthropic":
        return settings.anthropic_api_key
    return None


def _first_tool_call(response: Any) -> ToolCall | None:
    """Pull the first tool call and token usage out of a completion response."""
    choices = getattr(response, "choices", None) or []
    if not choices:
        return None

    tool_calls = getattr(choices[0].message, "tool_calls", None) or []
    if not tool_calls:
        return None

    function = tool_calls[0].function
    usage = getattr(response, "usage", None)
    return ToolCall(
        name=function.name or "",
        arguments=function.arguments or "",
        input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
        output_tokens=getattr(usage, "completion_tokens", 0) or 0,
    )


async def llm_call_tool(
    system_prompt: str,
    user_message: str,
    tool: dict[str, Any],
    timeout: float | None = None,
    retry_backoff: float | None = None,
    max_attempts: int = 2,
) -> ToolCall | None:
    """
    Call the LLM with a single tool and force it to be selected.

    Transient transport failures are retried with exponential backoff; a
    well-formed response is never retried, even if it lacks a tool call.

    Args:
        system_prompt: System instructions
        user_message: The user's text
        tool: OpenAI-style function definition ({"name", "description", "parameters"})
        timeout: Per-attempt timeout in seconds
        retry_backoff: Base delay between attempts in seconds
        max_attempts: Total number of attempts (1 + retries)

    Returns:
        The first tool call in the response, or None if the model returned none

    Raises:
        LLMTimeout: If every attempt timed out
        TransportFailure: If the provider could not be reached or rejected the call
    """
    timeout = settings.llm_timeout_seconds if timeout is None else timeout
    retry_backoff = settings.llm_retry_backoff_seconds if retry_backoff is None else retry_backoff

    for attempt in range(max_attempts):
        try:
            response = await acompletion(
                model=_get_model_name(),
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_message},
                ],
                tools=[{"type": "function", "function": tool}],
                tool_choice={"type": "function", "function": {"name": tool["name"]}},
                api_base=_get_api_base(),
                api_key=_get_api_key(),
                temperature=0,
                max_tokens=settings.llm_max_tokens,
                timeout=timeout,
            )
            return _first_tool_call(response)

        except TIMEOUT_ERRORS as e:
            logger.warning(f"LLM timeout (attempt {attempt + 1}/{max_attempts}): {e}")
            if attempt == max_attempts - 1:
                raise LLMTimeout(f"LLM call timed out after {max_attempts} attempts") from e

        except RETRYABLE_ERRORS as e:
            logger.warning(f"LLM transport error (attempt {attempt + 1}/{max_attempts}): {e}")
            if attempt == max_attempts - 1:
                raise TransportFailure() from e

        except Exception as e:
            logger.error(f"LLM call failed: {e}")
            raise TransportFailure() from e

        wait_time = retry_backoff * (2**attempt)
        logger.info(f"Retrying in {wait_time}s...")
        await asyncio.sleep(wait_time)

    # Should never reach here
    raise TransportFailure()
