import logging
from typing import Dict, List, Optional

import httpx

from .settings.config import settings

logger = logging.getLogger(__name__)


class LLMError(RuntimeError):
    pass


async def generate_chat(messages: List[Dict[str, str]], model: Optional[str] = None,
                        temperature: Optional[float] = None) -> str:
    """
    Send chat messages to Ollama /api/chat and return the assistant text.
    """
    if not messages:
        raise LLMError("No messages to send.")

    payload = {
        "model": model or settings.OLLAMA_MODEL,
        "messages": messages,
        "stream": False,
        "options": {"temperature": 0.7 if temperature is None else temperature},
    }
    url = f"{settings.OLLAMA_BASE_URL.rstrip('/')}/api/chat"

    try:
        async with httpx.AsyncClient(timeout=settings.LLM_TIMEOUT_SECONDS) as client:
            r = await client.post(url, json=payload)
            r.raise_for_status()
            data = r.json()
    except Exception as e:
        raise LLMError(f"Ollama request failed: {e}") from e

    out = ((data or {}).get("message") or {}).get("content", "")
    if not out or not out.strip():
        raise LLMError("Empty response from Ollama.")
    logger.debug("Ollama returned %d chars for model %s", len(out), payload["model"])
    return out
