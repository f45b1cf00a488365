# kubeconsole/orchestration/chat_service.py

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, ToolMessage

from kubeconsole.backends.session_store import ChatSession, SessionStore
from kubeconsole.orchestration.errors import SessionConflict, SessionNotFound, ValidationError
from kubeconsole.orchestration.events import Announcement, Token, TurnFailed
from kubeconsole.orchestration.graph_runtime import CompiledGraph
from kubeconsole.orchestration.session_state import message_text

_log = logging.getLogger(__name__)

TITLE_MAX_CHARS = 50
DEFAULT_TITLE = "Untitled Chat"

_THINKING_TAIL = re.compile(r"^(.*?)\n\n(?:Thinking:|思考过程:|思考：)\s*([\s\S]*)$", re.IGNORECASE | re.DOTALL)
_THINKING_ONLY = re.compile(r"^(?:Thinking:|思考过程:|思考：)\s*([\s\S]*)$", re.IGNORECASE)


@dataclass(frozen=True)
class ChatTurn:
    message: str
    session_id: str
    user_id: str


def parse_turn(payload: Optional[Mapping[str, Any]]) -> ChatTurn:
    """
    Validate a chat-turn submission ({message, sessionId, userId}).

    Raises:
        ValidationError: a field is missing, not a string, or blank.
    """
    payload = payload or {}
    values: Dict[str, str] = {}
    missing: List[str] = []
    for key in ("message", "sessionId", "userId"):
        raw = payload.get(key)
        if not isinstance(raw, str) or not raw.strip():
            missing.append(key)
        else:
            values[key] = raw
    if missing:
        raise ValidationError(f"Missing {'/'.join(missing)}", fields=missing)
    return ChatTurn(
        message=values["message"],
        session_id=values["sessionId"].strip(),
        user_id=values["userId"].strip(),
    )


def format_sse(data: str, event: Optional[str] = None) -> str:
    """
    Frame one Server-Sent Events record. Multi-line data becomes several
    `data:` lines, which clients join back with newlines.
    """
    lines = [f"event: {event}"] if event else []
    lines.extend(f"data: {line}" for line in data.split("\n"))
    return "\n".join(lines) + "\n\n"


def _role(message: BaseMessage) -> str:
    if isinstance(message, HumanMessage):
        return "Human"
    if isinstance(message, AIMessage):
        return "Ai"
    if isinstance(message, ToolMessage):
        return "Tool"
    return "System"


def split_thinking(content: str) -> Dict[str, str]:
    """Separate a trailing 'Thinking:' section from the visible answer."""
    match = _THINKING_TAIL.match(content)
    if match:
        return {"content": match.group(1).strip(), "thinking": match.group(2).strip()}
    match = _THINKING_ONLY.match(content)
    if match:
        return {"content": "", "thinking": match.group(1).strip()}
    return {"content": content, "thinking": ""}


def format_message(message: BaseMessage, index: int) -> Dict[str, Any]:
    parts = split_thinking(message_text(message.content))
    return {
        "id": message.id or f"msg_{index}",
        "role": _role(message),
        "content": parts["content"],
        "name": message.name or "",
        "thinking": parts["thinking"],
    }


class ChatService:
    """
    Glue between the HTTP/CLI surfaces, the session store and the graph.

    - Validates chat turns and creates the session on its first message
    - Renders graph events as SSE text fragments
    - Formats stored transcripts for the history view
    - Exposes the session-management operations
    """

    def __init__(self, graph: CompiledGraph, store: SessionStore) -> None:
        self.graph = graph
        self.store = store

    # ── chat turns ───────────────────────────────────────────────────────────

    async def open_turn(self, payload: Optional[Mapping[str, Any]]) -> ChatTurn:
        """
        Validate the submission and make sure its session exists and belongs
        to the user. Nothing is executed yet.

        Raises:
            ValidationError: malformed submission.
            SessionNotFound: the session is soft-deleted or owned by someone else.
        """
        turn = parse_turn(payload)
        try:
            session = await self.store.get_session(turn.session_id, include_deleted=True)
        except SessionNotFound:
            title = turn.message.strip()[:TITLE_MAX_CHARS] or DEFAULT_TITLE
            try:
                session = await self.store.create_session(turn.session_id, turn.user_id, title)
            except SessionConflict:
                # created by a concurrent first message
                session = await self.store.get_session(turn.session_id, include_deleted=True)

        if session.user_id != turn.user_id:
            _log.warning("User %s tried to post to session %s owned by another user.", turn.user_id, turn.session_id)
            raise SessionNotFound(f"session '{turn.session_id}' not found")
        if session.is_deleted:
            raise SessionNotFound(f"session '{turn.session_id}' was deleted")

        await self.store.touch(turn.session_id)
        return turn

    async def stream_turn(self, turn: ChatTurn) -> AsyncIterator[str]:
        """
        Run the turn and yield SSE records: one `data:` record per text
        fragment, or a final `event: error` record when the turn fails.
        """
        _log.info("Streaming turn for session %s", turn.session_id)
        async for event in self.graph.astream(turn.session_id, turn.message):
            if isinstance(event, Announcement):
                yield format_sse(event.text + "\n\n")
            elif isinstance(event, Token):
                yield format_sse(event.text)
            elif isinstance(event, TurnFailed):
                _log.warning("Turn failed for session %s: %s", turn.session_id, event.message)
                yield format_sse(
                    json.dumps({"error": event.error, "content": "Sorry, something went wrong."}),
                    event="error",
                )

    # ── history ──────────────────────────────────────────────────────────────

    async def get_history(self, session_id: str, user_id: str) -> Dict[str, Any]:
        if not session_id or not user_id:
            raise ValidationError("Missing sessionId or userId", fields=["sessionId", "userId"])
        session = await self.store.get_session(session_id)
        if session.user_id != user_id:
            raise SessionNotFound(f"session '{session_id}' not found")

        checkpoint = await self.store.load_checkpoint(session_id)
        if checkpoint is None:
            return {"messages": [], "total": 0}
        messages = [format_message(m, i) for i, m in enumerate(checkpoint.state.get("messages", []))]
        return {"messages": messages, "total": len(messages)}

    # ── session management ───────────────────────────────────────────────────

    async def list_sessions(self, user_id: str, include_deleted: bool = False) -> List[ChatSession]:
        if not user_id:
            raise ValidationError("Missing userId parameter", fields=["userId"])
        return await self.store.list_sessions(user_id, include_deleted=include_deleted)

    async def create_session(self, session_id: str, user_id: str, title: Optional[str] = None) -> ChatSession:
        if not session_id or not user_id:
            raise ValidationError("Missing sessionId or userId", fields=["sessionId", "userId"])
        clean_title = (title or "").strip()[:TITLE_MAX_CHARS] or DEFAULT_TITLE
        return await self.store.create_session(session_id, user_id, clean_title)

    async def rename_session(self, session_id: str, title: Optional[str]) -> ChatSession:
        if not session_id:
            raise ValidationError("Missing sessionId", fields=["sessionId"])
        clean_title = (title or "").strip()[:TITLE_MAX_CHARS] or DEFAULT_TITLE
        return await self.store.update_title(session_id, clean_title)

    async def delete_session(self, session_id: str, permanent: bool = False) -> bool:
        if not session_id:
            raise ValidationError("Missing sessionId parameter", fields=["sessionId"])
        if permanent:
            return await self.store.purge(session_id)
        return await self.store.soft_delete(session_id)

    async def restore_session(self, session_id: str) -> bool:
        if not session_id:
            raise ValidationError("Missing sessionId", fields=["sessionId"])
        return await self.store.restore(session_id)
