"""Conversation state and SQLite-backed conversation storage."""

import json
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite

from colloquy.config import DEFAULT_SYSTEM_PROMPT, get_config
from colloquy.exceptions import StorageError
from colloquy.llm import Message, to_jsonable, parse_timestamp
from colloquy.logging import get_logger

log = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class Conversation:
    """A dialogue owned by one orchestrator at a time.

    Updates return new values; nothing here mutates in place.
    """

    id: str
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    messages: tuple[Message, ...] = ()
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    metadata: dict[str, Any] = field(default_factory=dict)
    trace_id: str | None = None

    @classmethod
    def new(cls, system_prompt: str | None = None, metadata: dict[str, Any] | None = None) -> "Conversation":
        """Create a fresh conversation with a new id."""
        return cls(
            id=str(uuid.uuid4()),
            system_prompt=system_prompt or DEFAULT_SYSTEM_PROMPT,
            metadata=dict(metadata or {}),
        )

    def with_message(self, message: Message) -> "Conversation":
        """Return a copy with ``message`` appended."""
        return replace(self, messages=(*self.messages, message), updated_at=_utcnow())

    def with_metadata(self, **updates: Any) -> "Conversation":
        """Return a copy with metadata keys updated."""
        return replace(self, metadata={**self.metadata, **updates}, updated_at=_utcnow())

    def with_trace_id(self, trace_id: str | None) -> "Conversation":
        return replace(self, trace_id=trace_id)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "system_prompt": self.system_prompt,
            "messages": [msg.to_dict() for msg in self.messages],
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "metadata": to_jsonable(self.metadata),
            "trace_id": self.trace_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Conversation":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            system_prompt=data.get("system_prompt") or DEFAULT_SYSTEM_PROMPT,
            messages=tuple(Message.from_dict(item) for item in data.get("messages", [])),
            created_at=parse_timestamp(data.get("created_at")),
            updated_at=parse_timestamp(data.get("updated_at")),
            metadata=dict(data.get("metadata") or {}),
            trace_id=data.get("trace_id"),
        )


class ConversationStore(ABC):
    """Persistence collaborator for conversations."""

    @abstractmethod
    async def save(self, conversation: Conversation) -> None:
        pass

    @abstractmethod
    async def load(self, conversation_id: str) -> Conversation | None:
        pass

    @abstractmethod
    async def list_ids(self) -> list[str]:
        pass

    @abstractmethod
    async def delete(self, conversation_id: str) -> bool:
        pass

    async def close(self) -> None:
        return None


class SqliteConversationStore(ConversationStore):
    """Stores conversations in SQLite."""

    def __init__(self, db_path: Path | str | None = None):
        """Initialize the store.

        Args:
            db_path: Optional database path override
        """
        if db_path is None:
            config = get_config()
            self.db_path = Path(config.session.path).expanduser()
        else:
            self.db_path = Path(db_path).expanduser()

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._db: aiosqlite.Connection | None = None

    async def _ensure_db(self) -> aiosqlite.Connection:
        """Ensure database is initialized."""
        if self._db is None:
            self._db = await aiosqlite.connect(str(self.db_path))
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS conversations (
                    id TEXT PRIMARY KEY,
                    system_prompt TEXT NOT NULL,
                    messages TEXT NOT NULL DEFAULT '[]',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    metadata TEXT NOT NULL DEFAULT '{}',
                    trace_id TEXT
                )
            """)
            await self._db.execute(
                "CREATE INDEX IF NOT EXISTS idx_conversations_updated_at ON conversations(updated_at)"
            )
            await self._db.commit()
        return self._db

    async def save(self, conversation: Conversation) -> None:
        """Insert or replace a conversation.

        Args:
            conversation: Conversation to save
        """
        db = await self._ensure_db()
        data = conversation.to_dict()
        try:
            await db.execute("""
                INSERT OR REPLACE INTO conversations
                    (id, system_prompt, messages, created_at, updated_at, metadata, trace_id)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                data["id"],
                data["system_prompt"],
                json.dumps(data["messages"]),
                data["created_at"],
                data["updated_at"],
                json.dumps(data["metadata"]),
                data["trace_id"],
            ))
            await db.commit()
        except (aiosqlite.Error, TypeError, ValueError) as e:
            log.error("Failed to save conversation", conversation_id=conversation.id, error=str(e))
            raise StorageError(f"Failed to save conversation {conversation.id}: {e}") from e
        log.debug(
            "Saved conversation",
            conversation_id=conversation.id,
            message_count=len(conversation.messages),
        )

    async def load(self, conversation_id: str) -> Conversation | None:
        """Get a conversation by ID.

        Args:
            conversation_id: Conversation ID

        Returns:
            Conversation or None if not found
        """
        db = await self._ensure_db()

        async with db.execute(
            """
            SELECT id, system_prompt, messages, created_at, updated_at, metadata, trace_id
            FROM conversations WHERE id = ?
            """,
            (conversation_id,),
        ) as cursor:
            row = await cursor.fetchone()

        if not row:
            return None

        try:
            return Conversation.from_dict({
                "id": row[0],
                "system_prompt": row[1],
                "messages": json.loads(row[2]),
                "created_at": row[3],
                "updated_at": row[4],
                "metadata": json.loads(row[5]),
                "trace_id": row[6],
            })
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            log.error("Failed to decode conversation", conversation_id=conversation_id, error=str(e))
            raise StorageError(f"Conversation {conversation_id} is corrupt: {e}") from e

    async def list_ids(self, limit: int | None = None) -> list[str]:
        """List conversation ids, most recently updated first."""
        db = await self._ensure_db()

        query = "SELECT id FROM conversations ORDER BY updated_at DESC"
        params: tuple[Any, ...] = ()
        if limit is not None:
            query += " LIMIT ?"
            params = (limit,)

        async with db.execute(query, params) as cursor:
            rows = await cursor.fetchall()
        return [row[0] for row in rows]

    async def delete(self, conversation_id: str) -> bool:
        """Delete a conversation.

        Returns:
            True if deleted, False if not found
        """
        db = await self._ensure_db()

        cursor = await db.execute(
            "DELETE FROM conversations WHERE id = ?",
            (conversation_id,),
        )
        await db.commit()

        return cursor.rowcount > 0

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None
