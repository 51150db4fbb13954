"""
Hollon Orchestrator - LLM Client
================================

Chat model factory for the language-model decision oracle.

Provider packages come from the ``llm`` extra and are imported only when the
provider is selected. ``anthropic`` uses ChatAnthropic; ``openai``,
``openrouter`` and ``local`` (Ollama) all go through ChatOpenAI with a
different endpoint and key.
"""

import logging
import os
from typing import Any, Dict, Optional

from .config import ModelConfig

logger = logging.getLogger(__name__)

DEFAULT_MODEL = ModelConfig(provider="anthropic", model_name="claude-3-5-sonnet-20241022", temperature=0.3)

# provider -> (api key env var, base url) for OpenAI-compatible endpoints
OPENAI_COMPATIBLE = {
    "openai": ("OPENAI_API_KEY", None),
    "openrouter": ("OPENROUTER_API_KEY", "https://openrouter.ai/api/v1"),
    "local": (None, os.getenv("OLLAMA_BASE_URL", "http://localhost:11434/v1")),
}


def get_llm(model_config: Optional[ModelConfig] = None, timeout: float = 60.0):
    """Return a LangChain chat model (anything with ``ainvoke``) for the configured provider."""
    model_config = model_config or DEFAULT_MODEL
    provider = model_config.provider.lower()

    # the client retries 429s on its own
    common: Dict[str, Any] = {
        "model": model_config.model_name,
        "temperature": model_config.temperature,
        "max_retries": 3,
        "timeout": timeout,
    }

    if provider == "anthropic":
        from langchain_anthropic import ChatAnthropic
        return ChatAnthropic(
            api_key=os.getenv("ANTHROPIC_API_KEY"),
            max_tokens=model_config.max_tokens or 4096,
            **common,
        )

    if provider not in OPENAI_COMPATIBLE:
        raise ValueError(f"Unsupported LLM provider: {provider}")

    from langchain_openai import ChatOpenAI
    key_env, base_url = OPENAI_COMPATIBLE[provider]
    if provider == "local":
        # slow local models; Ollama ignores the key but the client requires one
        common.update(max_retries=1, timeout=max(timeout, 120.0))
    logger.debug(f"Creating {provider} chat model {model_config.model_name}")
    return ChatOpenAI(
        api_key=os.getenv(key_env) if key_env else "ollama",
        base_url=base_url,
        max_tokens=model_config.max_tokens,
        **common,
    )
