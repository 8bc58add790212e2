import logging
from typing import Any

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import HumanMessage

from app.core.config import settings
from app.domain.imports.errors import AIMappingError

logger = logging.getLogger(__name__)


def _response_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    # Content blocks: [{"type": "text", "text": ...}, ...]
    parts = []
    for block in content or []:
        if isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
        elif isinstance(block, str):
            parts.append(block)
    return "".join(parts)


def invoke_text_model(prompt: str) -> str:
    """
    Send a single prompt to the configured Anthropic model and return its text.

    Raises:
        AIMappingError: if no API key is configured or the call fails
    """
    if not settings.anthropic_api_key:
        raise AIMappingError("ANTHROPIC_API_KEY is not configured")

    llm = ChatAnthropic(
        model=settings.llm_model,
        api_key=settings.anthropic_api_key,
        temperature=0,
        max_tokens=settings.llm_max_tokens,
        timeout=settings.llm_api_timeout,
    )

    try:
        response = llm.invoke([HumanMessage(content=prompt)])
    except Exception as e:
        logger.warning(f"Text model call failed: {e}")
        raise AIMappingError(f"Text model call failed: {e}") from e

    return _response_text(response.content)
