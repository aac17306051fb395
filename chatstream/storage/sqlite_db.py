import aiosqlite
import asyncio
import uuid
from datetime import datetime, timezone

from chatstream.errors import ConversationNotFound


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SQLiteDB:
    """Conversation and message store.

    Every query is scoped by the owner's user id; nothing here can read or
    modify another user's rows.

    All requests share one connection and therefore one transaction, so every
    write-then-commit sequence runs under ``_write_lock``.
    """

    def __init__(self, db_path: str = "db/chat.db"):
        self.db_path = db_path
        self._db = None
        self._write_lock = asyncio.Lock()

    async def initialize(self):
        """Create tables if not exist."""
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA foreign_keys = ON")
        await self._db.executescript("""
            CREATE TABLE IF NOT EXISTS conversations (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                user_id TEXT NOT NULL,
                created_at TIMESTAMP NOT NULL,
                updated_at TIMESTAMP NOT NULL
            );
            CREATE TABLE IF NOT EXISTS messages (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
                user_id TEXT NOT NULL,
                role TEXT NOT NULL CHECK (role IN ('system', 'user', 'assistant')),
                content TEXT NOT NULL,
                created_at TIMESTAMP NOT NULL,
                updated_at TIMESTAMP NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_conversations_user ON conversations(user_id, updated_at);
            CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id, user_id, created_at);
        """)
        await self._db.commit()

    async def close(self):
        if self._db:
            await self._db.close()

    # ------------------------------------------------------------------ #
    # Conversations
    # ------------------------------------------------------------------ #

    async def create_conversation(self, user_id: str, title: str) -> dict:
        conversation_id = uuid.uuid4().hex
        now = _now()
        async with self._write_lock:
            await self._db.execute(
                """
                INSERT INTO conversations (id, title, user_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (conversation_id, title, user_id, now, now),
            )
            await self._db.commit()
        return await self.get_conversation(user_id, conversation_id)

    async def get_conversation(self, user_id: str, conversation_id: str) -> dict | None:
        async with self._db.execute(
            "SELECT * FROM conversations WHERE id = ? AND user_id = ?",
            (conversation_id, user_id),
        ) as cursor:
            row = await cursor.fetchone()
            if row is None:
                return None
            return dict(row)

    async def list_conversations(self, user_id: str) -> list[dict]:
        async with self._db.execute(
            "SELECT * FROM conversations WHERE user_id = ? ORDER BY updated_at DESC",
            (user_id,),
        ) as cursor:
            rows = await cursor.fetchall()
            return [dict(r) for r in rows]

    async def delete_conversation(self, user_id: str, conversation_id: str) -> bool:
        """Delete a conversation and, by cascade, its messages."""
        async with self._write_lock:
            cursor = await self._db.execute(
                "DELETE FROM conversations WHERE id = ? AND user_id = ?",
                (conversation_id, user_id),
            )
            await self._db.commit()
        return cursor.rowcount > 0

    # ------------------------------------------------------------------ #
    # Messages
    # ------------------------------------------------------------------ #

    async def get_messages(self, user_id: str, conversation_id: str) -> list[dict]:
        """All messages of a conversation, oldest first."""
        async with self._db.execute(
            """
            SELECT id, conversation_id, user_id, role, content, created_at, updated_at
            FROM messages
            WHERE user_id = ? AND conversation_id = ?
            ORDER BY created_at ASC, seq ASC
            """,
            (user_id, conversation_id),
        ) as cursor:
            rows = await cursor.fetchall()
            return [dict(r) for r in rows]

    async def get_last_message(self, user_id: str, conversation_id: str) -> dict | None:
        async with self._db.execute(
            """
            SELECT id, conversation_id, user_id, role, content, created_at, updated_at
            FROM messages
            WHERE user_id = ? AND conversation_id = ?
            ORDER BY created_at DESC, seq DESC
            LIMIT 1
            """,
            (user_id, conversation_id),
        ) as cursor:
            row = await cursor.fetchone()
            if row is None:
                return None
            return dict(row)

    async def get_message(self, user_id: str, message_id: str) -> dict | None:
        async with self._db.execute(
            """
            SELECT id, conversation_id, user_id, role, content, created_at, updated_at
            FROM messages WHERE id = ? AND user_id = ?
            """,
            (message_id, user_id),
        ) as cursor:
            row = await cursor.fetchone()
            if row is None:
                return None
            return dict(row)

    async def insert_message(
        self,
        message_id: str,
        role: str,
        content: str,
        user_id: str,
        conversation_id: str,
    ) -> dict:
        """Insert one message into a conversation the user owns.

        The ownership check and the insert are one statement. A rejected
        insert writes nothing, so there is nothing to roll back.

        Raises:
            ConversationNotFound: If the conversation does not belong to the user.
        """
        now = _now()
        async with self._write_lock:
            cursor = await self._db.execute(
                """
                INSERT INTO messages (id, conversation_id, user_id, role, content, created_at, updated_at)
                SELECT ?, ?, ?, ?, ?, ?, ?
                WHERE EXISTS (SELECT 1 FROM conversations WHERE id = ? AND user_id = ?)
                """,
                (message_id, conversation_id, user_id, role, content, now, now,
                 conversation_id, user_id),
            )
            if cursor.rowcount == 0:
                raise ConversationNotFound(f"Conversation {conversation_id} not found")
            await self._db.execute(
                "UPDATE conversations SET updated_at = ? WHERE id = ? AND user_id = ?",
                (now, conversation_id, user_id),
            )
            await self._db.commit()
        return await self.get_message(user_id, message_id)

    async def delete_message(self, user_id: str, message_id: str) -> bool:
        async with self._write_lock:
            cursor = await self._db.execute(
                "DELETE FROM messages WHERE id = ? AND user_id = ?",
                (message_id, user_id),
            )
            await self._db.commit()
        return cursor.rowcount > 0
