# kubeconsole/backends/session_store.py

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from langgraph.checkpoint.serde.jsonplus import JsonPlusSerializer
from sqlalchemy import (
    Boolean,
    DateTime,
    Integer,
    LargeBinary,
    String,
    UniqueConstraint,
    delete,
    func,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from kubeconsole.orchestration.errors import (
    CheckpointConflict,
    CheckpointError,
    SessionConflict,
    SessionNotFound,
)
from kubeconsole.orchestration.session_state import (
    ConversationState,
    Node,
    snapshot_payload,
    state_from_payload,
)

_log = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Naive UTC timestamp; every datetime column stores UTC without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ──────────────────────────────────────────────────────────────────────────────
# Tables
# ──────────────────────────────────────────────────────────────────────────────

class Base(DeclarativeBase):
    pass


class ChatSessionRecord(Base):
    __tablename__ = "chat_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    title: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class CheckpointRecord(Base):
    __tablename__ = "checkpoints"
    __table_args__ = (UniqueConstraint("session_id", "thread_id", "step", name="uq_checkpoint_step"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    thread_id: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    step: Mapped[int] = mapped_column(Integer, nullable=False)
    # Serializer type tag + payload, as produced by JsonPlusSerializer.dumps_typed
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    blob: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    pending_node: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


# ──────────────────────────────────────────────────────────────────────────────
# Value objects
# ──────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ChatSession:
    id: int
    session_id: str
    user_id: str
    title: Optional[str]
    is_deleted: bool
    created_at: datetime
    updated_at: datetime
    deleted_at: Optional[datetime]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "user_id": self.user_id,
            "title": self.title,
            "is_deleted": self.is_deleted,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "deleted_at": self.deleted_at.isoformat() if self.deleted_at else None,
        }


@dataclass(frozen=True)
class Checkpoint:
    session_id: str
    thread_id: str
    step: int
    state: ConversationState
    pending: Optional[Node]


def _to_session(record: ChatSessionRecord) -> ChatSession:
    return ChatSession(
        id=record.id,
        session_id=record.session_id,
        user_id=record.user_id,
        title=record.title,
        is_deleted=bool(record.is_deleted),
        created_at=record.created_at,
        updated_at=record.updated_at,
        deleted_at=record.deleted_at,
    )


# ──────────────────────────────────────────────────────────────────────────────
# Store
# ──────────────────────────────────────────────────────────────────────────────

class SessionStore:
    """
    Durable chat sessions and per-session conversation checkpoints.

    - Session rows follow a soft-delete lifecycle (delete, restore, purge, cleanup)
    - Checkpoints are append-only snapshots with a per-session step counter
    - At most one checkpoint write per session may be in flight
    """

    def __init__(
        self,
        engine: AsyncEngine,
        clock: Callable[[], datetime] = utcnow,
        serde: Optional[JsonPlusSerializer] = None,
    ) -> None:
        self.engine = engine
        self._clock = clock
        self._serde = serde or JsonPlusSerializer()
        self._sessionmaker = async_sessionmaker(engine, expire_on_commit=False)
        self._write_locks: Dict[str, asyncio.Lock] = {}

    async def initialize(self) -> None:
        """Create tables and indexes when they do not exist."""
        _log.info("Ensuring session/checkpoint tables exist.")
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    # ── sessions ─────────────────────────────────────────────────────────────

    async def create_session(self, session_id: str, user_id: str, title: Optional[str] = None) -> ChatSession:
        now = self._clock()
        record = ChatSessionRecord(
            session_id=session_id,
            user_id=user_id,
            title=title,
            is_deleted=False,
            created_at=now,
            updated_at=now,
        )
        async with self._sessionmaker() as db:
            db.add(record)
            try:
                await db.commit()
            except IntegrityError as exc:
                await db.rollback()
                raise SessionConflict(f"session '{session_id}' already exists") from exc
        _log.info("Created session %s for user %s", session_id, user_id)
        return _to_session(record)

    async def get_session(self, session_id: str, include_deleted: bool = False) -> ChatSession:
        stmt = select(ChatSessionRecord).where(ChatSessionRecord.session_id == session_id)
        if not include_deleted:
            stmt = stmt.where(ChatSessionRecord.is_deleted.is_(False))
        async with self._sessionmaker() as db:
            record = await db.scalar(stmt)
        if record is None:
            raise SessionNotFound(f"session '{session_id}' not found")
        return _to_session(record)

    async def list_sessions(self, user_id: str, include_deleted: bool = False) -> List[ChatSession]:
        stmt = select(ChatSessionRecord).where(ChatSessionRecord.user_id == user_id)
        if not include_deleted:
            stmt = stmt.where(ChatSessionRecord.is_deleted.is_(False))
        stmt = stmt.order_by(ChatSessionRecord.updated_at.desc(), ChatSessionRecord.id.desc())
        async with self._sessionmaker() as db:
            records = (await db.scalars(stmt)).all()
        return [_to_session(r) for r in records]

    async def update_title(self, session_id: str, title: str) -> ChatSession:
        async with self._sessionmaker() as db:
            record = await db.scalar(
                select(ChatSessionRecord).where(
                    ChatSessionRecord.session_id == session_id,
                    ChatSessionRecord.is_deleted.is_(False),
                )
            )
            if record is None:
                raise SessionNotFound(f"session '{session_id}' not found or already deleted")
            record.title = title
            record.updated_at = self._clock()
            await db.commit()
        return _to_session(record)

    async def touch(self, session_id: str) -> None:
        """Bump updated_at so the session sorts first in listings."""
        async with self._sessionmaker() as db:
            await db.execute(
                update(ChatSessionRecord)
                .where(ChatSessionRecord.session_id == session_id)
                .values(updated_at=self._clock())
            )
            await db.commit()

    async def soft_delete(self, session_id: str) -> bool:
        now = self._clock()
        return await self._update_count(
            update(ChatSessionRecord)
            .where(ChatSessionRecord.session_id == session_id, ChatSessionRecord.is_deleted.is_(False))
            .values(is_deleted=True, deleted_at=now, updated_at=now)
        ) > 0

    async def restore(self, session_id: str) -> bool:
        return await self._update_count(
            update(ChatSessionRecord)
            .where(ChatSessionRecord.session_id == session_id, ChatSessionRecord.is_deleted.is_(True))
            .values(is_deleted=False, deleted_at=None, updated_at=self._clock())
        ) > 0

    async def purge(self, session_id: str) -> bool:
        """Hard delete the session row and its checkpoints. Irreversible."""
        async with self._sessionmaker() as db:
            result = await db.execute(delete(ChatSessionRecord).where(ChatSessionRecord.session_id == session_id))
            await db.execute(delete(CheckpointRecord).where(CheckpointRecord.session_id == session_id))
            await db.commit()
        removed = (result.rowcount or 0) > 0
        if removed:
            _log.info("Purged session %s", session_id)
        return removed

    async def cleanup(self, max_age_days: int = 30) -> int:
        """
        Hard-delete soft-deleted sessions whose deleted_at is older than
        `max_age_days`, along with their checkpoints.

        Returns:
            Number of sessions removed.
        """
        cutoff = self._clock() - timedelta(days=max_age_days)
        async with self._sessionmaker() as db:
            expired = (
                await db.scalars(
                    select(ChatSessionRecord.session_id).where(
                        ChatSessionRecord.is_deleted.is_(True),
                        ChatSessionRecord.deleted_at < cutoff,
                    )
                )
            ).all()
            if not expired:
                return 0
            await db.execute(delete(CheckpointRecord).where(CheckpointRecord.session_id.in_(expired)))
            result = await db.execute(delete(ChatSessionRecord).where(ChatSessionRecord.session_id.in_(expired)))
            await db.commit()
        count = result.rowcount or 0
        _log.info("Retention cleanup removed %d session(s) deleted before %s", count, cutoff.isoformat())
        return count

    async def _update_count(self, stmt: Any) -> int:
        async with self._sessionmaker() as db:
            result = await db.execute(stmt)
            await db.commit()
        return result.rowcount or 0

    # ── checkpoints ──────────────────────────────────────────────────────────

    async def save_checkpoint(
        self,
        session_id: str,
        state: ConversationState,
        pending: Optional[Node] = None,
        thread_id: str = "",
    ) -> int:
        """
        Append a snapshot of `state` with the node that runs next.

        Returns:
            The step number assigned to the new checkpoint.

        Raises:
            CheckpointConflict: another write for this session is in flight.
            CheckpointError: the datastore rejected the write.
        """
        lock = self._write_locks.setdefault(session_id, asyncio.Lock())
        if lock.locked():
            raise CheckpointConflict(f"checkpoint write already in flight for session '{session_id}'")

        async with lock:
            try:
                kind, blob = self._serde.dumps_typed(snapshot_payload(state, pending))
                async with self._sessionmaker() as db:
                    latest = await db.scalar(
                        select(func.max(CheckpointRecord.step)).where(
                            CheckpointRecord.session_id == session_id,
                            CheckpointRecord.thread_id == thread_id,
                        )
                    )
                    step = 0 if latest is None else latest + 1
                    db.add(
                        CheckpointRecord(
                            session_id=session_id,
                            thread_id=thread_id,
                            step=step,
                            type=kind,
                            blob=blob,
                            pending_node=pending.value if pending is not None else None,
                            created_at=self._clock(),
                        )
                    )
                    await db.commit()
            except IntegrityError as exc:
                raise CheckpointConflict(f"concurrent checkpoint write for session '{session_id}'") from exc
            except SQLAlchemyError as exc:
                _log.error("Checkpoint write failed for %s: %s", session_id, exc)
                raise CheckpointError(f"checkpoint write failed: {exc}") from exc
            finally:
                self._write_locks.pop(session_id, None)

        _log.debug("Checkpoint %s/%d saved (pending=%s)", session_id, step, pending)
        return step

    async def load_checkpoint(self, session_id: str, thread_id: str = "") -> Optional[Checkpoint]:
        """Latest checkpoint for the session, or None when it has none."""
        try:
            async with self._sessionmaker() as db:
                record = await db.scalar(
                    select(CheckpointRecord)
                    .where(CheckpointRecord.session_id == session_id, CheckpointRecord.thread_id == thread_id)
                    .order_by(CheckpointRecord.step.desc())
                    .limit(1)
                )
        except SQLAlchemyError as exc:
            _log.error("Checkpoint read failed for %s: %s", session_id, exc)
            raise CheckpointError(f"checkpoint read failed: {exc}") from exc

        if record is None:
            return None
        state, pending = state_from_payload(self._serde.loads_typed((record.type, record.blob)))
        return Checkpoint(
            session_id=session_id,
            thread_id=thread_id,
            step=record.step,
            state=state,
            pending=pending,
        )

    async def count_checkpoints(self, session_id: str, thread_id: str = "") -> int:
        async with self._sessionmaker() as db:
            total = await db.scalar(
                select(func.count(CheckpointRecord.id)).where(
                    CheckpointRecord.session_id == session_id, CheckpointRecord.thread_id == thread_id
                )
            )
        return int(total or 0)
