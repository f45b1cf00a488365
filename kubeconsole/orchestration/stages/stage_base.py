# kubeconsole/orchestration/stages/stage_base.py

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from kubeconsole.orchestration.events import Emit
from kubeconsole.orchestration.session_state import ConversationState, Node

_log = logging.getLogger(__name__)

_INSTRUCTIONS_DIR = Path(__file__).resolve().parents[1] / "instructions"


class BaseNode(ABC):
    """
    Abstract base for orchestration stages.

    - Holds the chat model handed in by the application context
    - Loads its system prompt from the packaged instructions folder
    """

    node: Node

    def __init__(self, llm: Any, model_timeout: float = 60.0) -> None:
        _log.info("Stage bootstrap: %s", type(self).__name__)
        self.llm = llm
        self.model_timeout = model_timeout

    def _load_prompt(self, template_name: str) -> str:
        """
        Load a prompt template by name from the instructions folder shipped
        next to the stages package.

        Raises:
            FileNotFoundError: no template with that name is installed.
        """
        path = _INSTRUCTIONS_DIR / template_name
        _log.debug("Loading prompt template: %s", path)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            _log.error("Prompt not found: %s", path)
            raise

    @abstractmethod
    async def __call__(self, state: ConversationState, emit: Emit) -> ConversationState:
        """
        Process the conversation state and return the delta to merge.
        Concrete stages must implement this.
        """
        raise NotImplementedError("Stages must implement __call__")
