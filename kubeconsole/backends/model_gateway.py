# kubeconsole/backends/model_gateway.py

import logging
from typing import Any, Dict

from langchain_core.runnables import Runnable
from langchain_google_genai import ChatGoogleGenerativeAI

from kubeconsole.boot.env_vars import EnvConfig

_log = logging.getLogger(__name__)


def build_llm(agent_cfg: Dict[str, Any], env: EnvConfig) -> Runnable:
    """
    Build the primary Gemini chat model with a fallback.
    Returns a Runnable that encapsulates the fallback chain.
    """
    _log.info("Creating Gemini client(s) with fallback configuration.")
    try:
        api_key = env.require_google_api_key()

        primary_model = agent_cfg.get("llm_model", "gemini-2.5-flash")
        fallback_model = agent_cfg.get("fallback_llm_model", "gemini-2.0-flash")
        temperature = agent_cfg.get("temperature", 0)
        timeout = float(agent_cfg.get("model_timeout_seconds", 60))
        max_retries = int(agent_cfg.get("max_retries", 5))

        primary = ChatGoogleGenerativeAI(
            model=primary_model,
            temperature=temperature,
            api_key=api_key,
            timeout=timeout,
            max_retries=max_retries,
        )
        backup = ChatGoogleGenerativeAI(
            model=fallback_model,
            temperature=temperature,
            api_key=api_key,
            timeout=timeout,
            max_retries=max_retries,
        )

        _log.info("Gemini models initialized: primary=%s, fallback=%s", primary_model, fallback_model)
        return primary.with_fallbacks([backup])

    except Exception as exc:
        _log.error("Failed to set up LLM backend: %s", exc, exc_info=True)
        raise
