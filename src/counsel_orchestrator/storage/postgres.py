"""PostgreSQL-backed storage with automatic table migration."""

from __future__ import annotations

import json
import threading
from datetime import UTC, datetime
from typing import Any

from counsel_orchestrator.storage.models import (
    Conversation,
    ConversationMessage,
    Task,
    TaskStatus,
    ToolExecutionRecord,
)

_TASK_COLUMNS = (
    "task_id",
    "intent",
    "query",
    "source_app",
    "conversation_id",
    "callback_url",
    "status",
    "response_text",
    "tool_execution_count",
    "rounds_used",
    "total_input_tokens",
    "total_output_tokens",
    "finish_reason",
    "error_message",
    "created_at",
    "started_at",
    "completed_at",
)

_CONVERSATION_COLUMNS = (
    "conversation_id",
    "subject",
    "participant_email",
    "status",
    "summary",
    "total_tokens_used",
    "message_count",
    "created_at",
    "updated_at",
)


class PostgresConversationStore:
    """Persist tasks, conversations and tool executions in PostgreSQL."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("COUNSEL_DATABASE_URL is required")
        self.database_url = database_url
        self._lock = threading.Lock()
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()

    def migrate(self) -> None:
        with self._lock, self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS counsel_conversations (
                    conversation_id TEXT PRIMARY KEY,
                    subject TEXT NOT NULL,
                    participant_email TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'active',
                    summary TEXT,
                    total_tokens_used INTEGER NOT NULL DEFAULT 0,
                    message_count INTEGER NOT NULL DEFAULT 0,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS counsel_messages (
                    message_id TEXT PRIMARY KEY,
                    conversation_id TEXT NOT NULL
                        REFERENCES counsel_conversations(conversation_id) ON DELETE CASCADE,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL,
                    email_message_id TEXT,
                    in_reply_to TEXT,
                    intent TEXT,
                    token_count INTEGER NOT NULL DEFAULT 0,
                    created_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS counsel_tool_executions (
                    execution_id TEXT PRIMARY KEY,
                    conversation_id TEXT
                        REFERENCES counsel_conversations(conversation_id) ON DELETE CASCADE,
                    task_id TEXT,
                    tool_name TEXT NOT NULL,
                    tool_input JSONB NOT NULL DEFAULT '{}'::jsonb,
                    tool_output TEXT NOT NULL,
                    is_error BOOLEAN NOT NULL DEFAULT FALSE,
                    duration_ms INTEGER NOT NULL DEFAULT 0,
                    created_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS counsel_tasks (
                    task_id TEXT PRIMARY KEY,
                    intent TEXT NOT NULL,
                    query TEXT NOT NULL,
                    source_app TEXT NOT NULL DEFAULT 'api',
                    conversation_id TEXT
                        REFERENCES counsel_conversations(conversation_id) ON DELETE SET NULL,
                    callback_url TEXT,
                    status TEXT NOT NULL DEFAULT 'queued',
                    response_text TEXT,
                    tool_execution_count INTEGER NOT NULL DEFAULT 0,
                    rounds_used INTEGER NOT NULL DEFAULT 0,
                    total_input_tokens INTEGER NOT NULL DEFAULT 0,
                    total_output_tokens INTEGER NOT NULL DEFAULT 0,
                    finish_reason TEXT,
                    error_message TEXT,
                    created_at TIMESTAMPTZ NOT NULL,
                    started_at TIMESTAMPTZ,
                    completed_at TIMESTAMPTZ
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_counsel_messages_conversation
                ON counsel_messages(conversation_id)
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_counsel_tool_executions_conversation
                ON counsel_tool_executions(conversation_id)
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_counsel_tasks_status
                ON counsel_tasks(status)
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_counsel_tasks_created_at
                ON counsel_tasks(created_at DESC)
                """)
            conn.commit()

    # Tasks

    def create_task(self, task: Task) -> Task:
        row = task.model_dump()
        placeholders = ", ".join(["%s"] * len(_TASK_COLUMNS))
        with self._lock, self._connect() as conn:
            conn.execute(
                f"INSERT INTO counsel_tasks ({', '.join(_TASK_COLUMNS)}) VALUES ({placeholders})",
                tuple(row[column] for column in _TASK_COLUMNS),
            )
            conn.commit()
        created = self.get_task(task.task_id)
        if created is None:
            raise RuntimeError("Failed to load created task")
        return created

    def get_task(self, task_id: str) -> Task | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM counsel_tasks WHERE task_id = %s",
                (task_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    def update_task(self, task_id: str, **changes: Any) -> Task:
        self._update_row("counsel_tasks", "task_id", task_id, _TASK_COLUMNS, changes)
        refreshed = self.get_task(task_id)
        if refreshed is None:
            raise KeyError(f"Task {task_id} does not exist")
        return refreshed

    def list_tasks(self, *, status: TaskStatus | None = None, limit: int = 50) -> list[Task]:
        with self._lock, self._connect() as conn:
            if status is None:
                rows = conn.execute(
                    "SELECT * FROM counsel_tasks ORDER BY created_at DESC LIMIT %s",
                    (limit,),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT *
                    FROM counsel_tasks
                    WHERE status = %s
                    ORDER BY created_at DESC
                    LIMIT %s
                    """,
                    (status, limit),
                ).fetchall()
        return [self._row_to_task(row) for row in rows]

    # Conversations

    def create_conversation(self, conversation: Conversation) -> Conversation:
        row = conversation.model_dump()
        placeholders = ", ".join(["%s"] * len(_CONVERSATION_COLUMNS))
        with self._lock, self._connect() as conn:
            conn.execute(
                f"INSERT INTO counsel_conversations ({', '.join(_CONVERSATION_COLUMNS)}) "
                f"VALUES ({placeholders})",
                tuple(row[column] for column in _CONVERSATION_COLUMNS),
            )
            conn.commit()
        return conversation

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM counsel_conversations WHERE conversation_id = %s",
                (conversation_id,),
            ).fetchone()
        if row is None:
            return None
        return Conversation.model_validate(dict(row))

    def update_conversation(self, conversation_id: str, **changes: Any) -> Conversation:
        payload = {"updated_at": datetime.now(tz=UTC), **changes}
        self._update_row(
            "counsel_conversations",
            "conversation_id",
            conversation_id,
            _CONVERSATION_COLUMNS,
            payload,
        )
        refreshed = self.get_conversation(conversation_id)
        if refreshed is None:
            raise KeyError(f"Conversation {conversation_id} does not exist")
        return refreshed

    # Messages

    def add_message(self, message: ConversationMessage) -> ConversationMessage:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO counsel_messages (
                    message_id,
                    conversation_id,
                    role,
                    content,
                    email_message_id,
                    in_reply_to,
                    intent,
                    token_count,
                    created_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    message.message_id,
                    message.conversation_id,
                    message.role,
                    message.content,
                    message.email_message_id,
                    message.in_reply_to,
                    message.intent,
                    message.token_count,
                    message.created_at,
                ),
            )
            conn.execute(
                """
                UPDATE counsel_conversations
                SET message_count = message_count + 1,
                    total_tokens_used = total_tokens_used + %s,
                    updated_at = %s
                WHERE conversation_id = %s
                """,
                (message.token_count, datetime.now(tz=UTC), message.conversation_id),
            )
            conn.commit()
        return message

    def list_messages(self, conversation_id: str) -> list[ConversationMessage]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM counsel_messages
                WHERE conversation_id = %s
                ORDER BY created_at ASC
                """,
                (conversation_id,),
            ).fetchall()
        return [ConversationMessage.model_validate(dict(row)) for row in rows]

    # Tool executions

    def add_tool_execution(self, record: ToolExecutionRecord) -> ToolExecutionRecord:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO counsel_tool_executions (
                    execution_id,
                    conversation_id,
                    task_id,
                    tool_name,
                    tool_input,
                    tool_output,
                    is_error,
                    duration_ms,
                    created_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    record.execution_id,
                    record.conversation_id,
                    record.task_id,
                    record.tool_name,
                    self._json_wrapper(record.tool_input),
                    record.tool_output,
                    record.is_error,
                    record.duration_ms,
                    record.created_at,
                ),
            )
            conn.commit()
        return record

    def list_tool_executions(
        self,
        conversation_id: str,
        *,
        task_id: str | None = None,
    ) -> list[ToolExecutionRecord]:
        with self._lock, self._connect() as conn:
            if task_id is None:
                rows = conn.execute(
                    """
                    SELECT *
                    FROM counsel_tool_executions
                    WHERE conversation_id = %s
                    ORDER BY created_at ASC
                    """,
                    (conversation_id,),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT *
                    FROM counsel_tool_executions
                    WHERE conversation_id = %s AND task_id = %s
                    ORDER BY created_at ASC
                    """,
                    (conversation_id, task_id),
                ).fetchall()
        return [self._row_to_tool_execution(row) for row in rows]

    def _update_row(
        self,
        table: str,
        key_column: str,
        key: str,
        allowed: tuple[str, ...],
        changes: dict[str, Any],
    ) -> None:
        unknown = set(changes) - set(allowed)
        if unknown:
            raise ValueError(f"Unknown {table} columns: {sorted(unknown)}")
        if not changes:
            return
        assignments = ", ".join(f"{column} = %s" for column in changes)
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE {table} SET {assignments} WHERE {key_column} = %s",
                (*changes.values(), key),
            )
            conn.commit()
        if cursor.rowcount == 0:
            raise KeyError(f"{table} row {key} does not exist")

    def _connect(self) -> Any:
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover
            raise RuntimeError(
                "PostgreSQL storage requires psycopg. "
                'Install with: python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Json

    @staticmethod
    def _parse_json_object(raw: Any) -> dict[str, Any]:
        if raw is None:
            return {}
        parsed = json.loads(raw) if isinstance(raw, str) else raw
        if isinstance(parsed, dict):
            return parsed
        return {}

    @staticmethod
    def _parse_datetime(raw: Any) -> datetime | None:
        if raw is None or isinstance(raw, datetime):
            return raw
        if isinstance(raw, str):
            return datetime.fromisoformat(raw)
        raise TypeError(f"Unsupported datetime value: {type(raw)!r}")

    @classmethod
    def _row_to_task(cls, row: Any) -> Task:
        payload = {column: row[column] for column in _TASK_COLUMNS}
        for column in ("created_at", "started_at", "completed_at"):
            payload[column] = cls._parse_datetime(payload[column])
        return Task.model_validate(payload)

    @classmethod
    def _row_to_tool_execution(cls, row: Any) -> ToolExecutionRecord:
        return ToolExecutionRecord(
            execution_id=str(row["execution_id"]),
            conversation_id=row["conversation_id"],
            task_id=row["task_id"],
            tool_name=row["tool_name"],
            tool_input=cls._parse_json_object(row["tool_input"]),
            tool_output=row["tool_output"],
            is_error=bool(row["is_error"]),
            duration_ms=int(row["duration_ms"]),
            created_at=cls._parse_datetime(row["created_at"]),
        )
