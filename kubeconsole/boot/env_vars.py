# kubeconsole/boot/env_vars.py

import os
import logging
from typing import Optional

_log = logging.getLogger(__name__)


class EnvConfig:
    """
    Environment variable accessor.

    - `google_api_key` is required only when the real Gemini backend is built.
    - `infra_api_token` is an optional bearer token for the infrastructure API.
    """

    def __init__(self) -> None:
        self.google_api_key: Optional[str] = os.getenv("GOOGLE_API_KEY") or None
        self.infra_api_token: Optional[str] = os.getenv("INFRA_API_TOKEN") or None
        if self.infra_api_token:
            _log.info("INFRA_API_TOKEN detected and loaded.")

    def require_google_api_key(self) -> str:
        """
        Return GOOGLE_API_KEY or raise if it is missing.
        """
        if not self.google_api_key:
            _log.error("Required env var GOOGLE_API_KEY is not set.")
            raise ValueError("Missing GOOGLE_API_KEY. Set it in your environment or .env file.")
        _log.info("GOOGLE_API_KEY detected and loaded.")
        return self.google_api_key
