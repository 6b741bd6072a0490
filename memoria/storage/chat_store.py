"""SQLite-backed chat store implementing the message and stream ports.

The chat layer proper lives elsewhere; this store keeps only the fields the
pipeline reads and writes so workers can run end-to-end from the CLI and in
tests.
"""

from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from datetime import datetime
from pathlib import Path

from loguru import logger

from memoria.core.models import (
    ChatMessage,
    ClassificationResult,
    ContextMessage,
    EnrichmentSignals,
    EnrichmentState,
    StoredEmbedding,
    StreamInfo,
    StreamType,
)
from memoria.storage.vectors import deserialize_vector, serialize_vector
from memoria.utils.helpers import ensure_dir, parse_iso, to_iso, utc_now


class SqliteChatStore:
    """Streams, messages, message embeddings and stream annotations."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path.expanduser()
        ensure_dir(self.db_path.parent)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._create_schema()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _create_schema(self) -> None:
        with self._lock:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS streams (
                    id TEXT PRIMARY KEY,
                    workspace_id TEXT NOT NULL,
                    stream_type TEXT NOT NULL,
                    name TEXT NOT NULL DEFAULT '',
                    event_count INTEGER NOT NULL DEFAULT 0,
                    last_activity_at TEXT,
                    last_classified_at TEXT,
                    classification_result TEXT,
                    knowledge_extracted_at TEXT
                )
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    event_id TEXT PRIMARY KEY,
                    text_message_id TEXT NOT NULL UNIQUE,
                    workspace_id TEXT NOT NULL,
                    stream_id TEXT NOT NULL,
                    content TEXT NOT NULL,
                    author_id TEXT,
                    author_name TEXT NOT NULL DEFAULT 'Unknown',
                    agent_id TEXT,
                    created_at TEXT NOT NULL,
                    reaction_count INTEGER NOT NULL DEFAULT 0,
                    reply_count INTEGER NOT NULL DEFAULT 0,
                    enrichment_tier INTEGER NOT NULL DEFAULT 0,
                    enrichment_signals TEXT NOT NULL DEFAULT '{}',
                    contextual_header TEXT,
                    header_generated_at TEXT
                )
                """
            )
            self._conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_messages_stream_created
                ON messages (stream_id, created_at)
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS message_embeddings (
                    text_message_id TEXT PRIMARY KEY,
                    model TEXT NOT NULL,
                    dims INTEGER NOT NULL,
                    vector BLOB NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS stream_annotations (
                    id TEXT PRIMARY KEY,
                    stream_id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    payload_json TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            self._conn.commit()

    # ── Seeding (chat-side writes) ───────────────────────────────────

    def upsert_stream(
        self,
        stream_id: str,
        *,
        workspace_id: str,
        stream_type: StreamType = "channel",
        name: str = "",
    ) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO streams (id, workspace_id, stream_type, name)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                  stream_type = excluded.stream_type,
                  name = excluded.name
                """,
                (stream_id, workspace_id, stream_type, name),
            )
            self._conn.commit()

    def add_message(
        self,
        *,
        stream_id: str,
        content: str,
        author_id: str | None = None,
        author_name: str = "Unknown",
        agent_id: str | None = None,
        created_at: datetime | None = None,
        event_id: str | None = None,
        text_message_id: str | None = None,
    ) -> ChatMessage:
        """Insert one message and bump the stream's activity counters."""
        event_id = event_id or f"evt_{uuid.uuid4().hex}"
        text_message_id = text_message_id or f"msg_{uuid.uuid4().hex}"
        created_iso = to_iso(created_at or utc_now())
        with self._lock:
            stream = self._conn.execute(
                "SELECT workspace_id FROM streams WHERE id = ? LIMIT 1", (stream_id,)
            ).fetchone()
            if stream is None:
                raise KeyError(f"unknown stream: {stream_id}")
            self._conn.execute(
                """
                INSERT INTO messages (
                    event_id, text_message_id, workspace_id, stream_id, content,
                    author_id, author_name, agent_id, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event_id,
                    text_message_id,
                    str(stream["workspace_id"]),
                    stream_id,
                    content,
                    author_id,
                    author_name,
                    agent_id,
                    created_iso,
                ),
            )
            self._conn.execute(
                """
                UPDATE streams
                SET event_count = event_count + 1,
                    last_activity_at = CASE
                      WHEN last_activity_at IS NULL OR last_activity_at < ? THEN ?
                      ELSE last_activity_at
                    END
                WHERE id = ?
                """,
                (created_iso, created_iso, stream_id),
            )
            self._conn.commit()
        message = self.get_message(event_id)
        assert message is not None
        return message

    def set_engagement(
        self,
        event_id: str,
        *,
        reactions: int | None = None,
        replies: int | None = None,
    ) -> None:
        with self._lock:
            if reactions is not None:
                self._conn.execute(
                    "UPDATE messages SET reaction_count = ? WHERE event_id = ?",
                    (max(0, int(reactions)), event_id),
                )
            if replies is not None:
                self._conn.execute(
                    "UPDATE messages SET reply_count = ? WHERE event_id = ?",
                    (max(0, int(replies)), event_id),
                )
            self._conn.commit()

    def list_annotations(self, stream_id: str) -> list[dict[str, object]]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT id, kind, payload_json, created_at
                FROM stream_annotations
                WHERE stream_id = ?
                ORDER BY created_at ASC
                """,
                (stream_id,),
            ).fetchall()
        return [
            {
                "id": str(row["id"]),
                "kind": str(row["kind"]),
                "payload": json.loads(row["payload_json"]),
                "created_at": str(row["created_at"]),
            }
            for row in rows
        ]

    # ── MessageStorePort ─────────────────────────────────────────────

    def _row_to_message(self, row: sqlite3.Row) -> ChatMessage:
        first = self._conn.execute(
            """
            SELECT event_id FROM messages
            WHERE stream_id = ?
            ORDER BY created_at ASC, event_id ASC
            LIMIT 1
            """,
            (row["stream_id"],),
        ).fetchone()
        return ChatMessage(
            event_id=str(row["event_id"]),
            text_message_id=str(row["text_message_id"]),
            workspace_id=str(row["workspace_id"]),
            stream_id=str(row["stream_id"]),
            content=str(row["content"]),
            created_at=parse_iso(row["created_at"]) or utc_now(),
            author_id=str(row["author_id"]) if row["author_id"] else None,
            author_name=str(row["author_name"]),
            agent_id=str(row["agent_id"]) if row["agent_id"] else None,
            stream_type=str(row["stream_type"] or "channel"),  # type: ignore[arg-type]
            stream_name=str(row["stream_name"] or ""),
            reaction_count=int(row["reaction_count"]),
            reply_count=int(row["reply_count"]),
            is_first_in_thread=first is not None and str(first["event_id"]) == str(row["event_id"]),
        )

    @staticmethod
    def _row_to_context(row: sqlite3.Row) -> ContextMessage:
        return ContextMessage(
            event_id=str(row["event_id"]),
            author_name=str(row["author_name"]),
            content=str(row["content"]),
            created_at=parse_iso(row["created_at"]) or utc_now(),
            is_agent=row["agent_id"] is not None,
        )

    _MESSAGE_SELECT = (
        "SELECT m.*, s.stream_type AS stream_type, s.name AS stream_name "
        "FROM messages m LEFT JOIN streams s ON s.id = m.stream_id "
    )

    def get_message(self, event_id: str) -> ChatMessage | None:
        with self._lock:
            row = self._conn.execute(
                self._MESSAGE_SELECT + "WHERE m.event_id = ? LIMIT 1", (event_id,)
            ).fetchone()
            return self._row_to_message(row) if row is not None else None

    def get_message_by_text_id(self, text_message_id: str) -> ChatMessage | None:
        with self._lock:
            row = self._conn.execute(
                self._MESSAGE_SELECT + "WHERE m.text_message_id = ? LIMIT 1", (text_message_id,)
            ).fetchone()
            return self._row_to_message(row) if row is not None else None

    def get_context_window(
        self,
        stream_id: str,
        *,
        around: datetime,
        start: datetime,
        end: datetime,
        exclude_event_id: str | None,
        before_limit: int,
        after_limit: int,
    ) -> list[ContextMessage]:
        params = (stream_id, exclude_event_id or "")
        with self._lock:
            before = self._conn.execute(
                """
                SELECT event_id, author_name, content, created_at, agent_id
                FROM messages
                WHERE stream_id = ? AND event_id != ?
                  AND created_at >= ? AND created_at <= ?
                ORDER BY created_at DESC, rowid DESC
                LIMIT ?
                """,
                (*params, to_iso(start), to_iso(around), max(0, int(before_limit))),
            ).fetchall()
            after = self._conn.execute(
                """
                SELECT event_id, author_name, content, created_at, agent_id
                FROM messages
                WHERE stream_id = ? AND event_id != ?
                  AND created_at > ? AND created_at <= ?
                ORDER BY created_at ASC, rowid ASC
                LIMIT ?
                """,
                (*params, to_iso(around), to_iso(end), max(0, int(after_limit))),
            ).fetchall()
        return [self._row_to_context(row) for row in [*reversed(before), *after]]

    def get_recent_messages(
        self,
        stream_id: str,
        *,
        before: datetime | None,
        limit: int,
    ) -> list[ContextMessage]:
        if limit <= 0:
            return []
        with self._lock:
            if before is None:
                rows = self._conn.execute(
                    """
                    SELECT event_id, author_name, content, created_at, agent_id
                    FROM messages
                    WHERE stream_id = ?
                    ORDER BY created_at DESC
                    LIMIT ?
                    """,
                    (stream_id, int(limit)),
                ).fetchall()
            else:
                rows = self._conn.execute(
                    """
                    SELECT event_id, author_name, content, created_at, agent_id
                    FROM messages
                    WHERE stream_id = ? AND created_at < ?
                    ORDER BY created_at DESC
                    LIMIT ?
                    """,
                    (stream_id, to_iso(before), int(limit)),
                ).fetchall()
        return [self._row_to_context(row) for row in reversed(rows)]

    def get_enrichment_state(self, text_message_id: str) -> EnrichmentState:
        with self._lock:
            row = self._conn.execute(
                """
                SELECT enrichment_tier, enrichment_signals, contextual_header
                FROM messages WHERE text_message_id = ? LIMIT 1
                """,
                (text_message_id,),
            ).fetchone()
        if row is None:
            return EnrichmentState()
        return EnrichmentState(
            tier=int(row["enrichment_tier"]),  # type: ignore[arg-type]
            signals=EnrichmentSignals.from_dict(json.loads(row["enrichment_signals"] or "{}")),
            contextual_header=str(row["contextual_header"]) if row["contextual_header"] else None,
        )

    def update_enrichment_state(self, text_message_id: str, state: EnrichmentState) -> None:
        with self._lock:
            self._conn.execute(
                """
                UPDATE messages
                SET enrichment_tier = MAX(enrichment_tier, ?),
                    enrichment_signals = ?,
                    contextual_header = COALESCE(?, contextual_header),
                    header_generated_at = CASE WHEN ? IS NOT NULL THEN ? ELSE header_generated_at END
                WHERE text_message_id = ?
                """,
                (
                    int(state.tier),
                    json.dumps(state.signals.to_dict()),
                    state.contextual_header,
                    state.contextual_header,
                    to_iso(utc_now()),
                    text_message_id,
                ),
            )
            self._conn.commit()

    def upsert_embedding(self, text_message_id: str, vector: list[float], model: str) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO message_embeddings (text_message_id, model, dims, vector, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(text_message_id) DO UPDATE SET
                  model = excluded.model,
                  dims = excluded.dims,
                  vector = excluded.vector,
                  created_at = excluded.created_at
                """,
                (text_message_id, model, len(vector), serialize_vector(vector), to_iso(utc_now())),
            )
            self._conn.commit()

    def get_embedding(self, text_message_id: str) -> StoredEmbedding | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT model, vector FROM message_embeddings WHERE text_message_id = ? LIMIT 1",
                (text_message_id,),
            ).fetchone()
        if row is None:
            return None
        return StoredEmbedding(
            text_message_id=text_message_id,
            vector=deserialize_vector(bytes(row["vector"])),
            model=str(row["model"]),
        )

    def find_messages_needing_enrichment(
        self,
        workspace_id: str,
        *,
        limit: int,
    ) -> list[tuple[ChatMessage, EnrichmentState]]:
        with self._lock:
            rows = self._conn.execute(
                self._MESSAGE_SELECT
                + """
                WHERE m.workspace_id = ?
                  AND m.enrichment_tier < 2
                  AND m.agent_id IS NULL
                  AND (
                    m.reaction_count > 0
                    OR m.reply_count > 0
                    OR m.enrichment_signals != '{}'
                  )
                ORDER BY m.created_at DESC
                LIMIT ?
                """,
                (workspace_id, int(limit)),
            ).fetchall()
            messages = [self._row_to_message(row) for row in rows]
        return [(m, self.get_enrichment_state(m.text_message_id)) for m in messages]

    def mark_retrieved(self, text_message_ids: list[str]) -> int:
        touched = 0
        for text_message_id in text_message_ids:
            state = self.get_enrichment_state(text_message_id)
            if state.signals.retrieved:
                continue
            merged = EnrichmentSignals(
                reactions=state.signals.reactions,
                replies=state.signals.replies,
                retrieved=True,
                helpful=state.signals.helpful,
            )
            with self._lock:
                cursor = self._conn.execute(
                    "UPDATE messages SET enrichment_signals = ? WHERE text_message_id = ?",
                    (json.dumps(merged.to_dict()), text_message_id),
                )
                self._conn.commit()
            touched += cursor.rowcount
        return touched

    # ── StreamStorePort ──────────────────────────────────────────────

    def get_stream(self, stream_id: str) -> StreamInfo | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM streams WHERE id = ? LIMIT 1", (stream_id,)
            ).fetchone()
        if row is None:
            return None
        return StreamInfo(
            id=str(row["id"]),
            workspace_id=str(row["workspace_id"]),
            stream_type=str(row["stream_type"]),  # type: ignore[arg-type]
            name=str(row["name"] or ""),
            event_count=int(row["event_count"]),
            last_activity_at=parse_iso(row["last_activity_at"]),
            last_classified_at=parse_iso(row["last_classified_at"]),
            classification_result=row["classification_result"],
            knowledge_extracted_at=parse_iso(row["knowledge_extracted_at"]),
        )

    def record_classification(
        self,
        stream_id: str,
        result: ClassificationResult,
        classified_at: datetime,
    ) -> None:
        with self._lock:
            self._conn.execute(
                """
                UPDATE streams
                SET classification_result = ?, last_classified_at = ?
                WHERE id = ?
                """,
                (result, to_iso(classified_at), stream_id),
            )
            self._conn.commit()

    def mark_knowledge_extracted(self, stream_id: str, extracted_at: datetime) -> None:
        with self._lock:
            self._conn.execute(
                "UPDATE streams SET knowledge_extracted_at = ? WHERE id = ?",
                (to_iso(extracted_at), stream_id),
            )
            self._conn.commit()

    def add_annotation(self, stream_id: str, kind: str, payload: dict[str, object]) -> str:
        annotation_id = f"ann_{uuid.uuid4().hex}"
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO stream_annotations (id, stream_id, kind, payload_json, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (annotation_id, stream_id, kind, json.dumps(payload), to_iso(utc_now())),
            )
            self._conn.commit()
        logger.debug("annotation {} added to stream={}", kind, stream_id)
        return annotation_id

    # ── ResponsePosterPort ───────────────────────────────────────────

    def post_response(self, stream_id: str, content: str, *, agent_id: str) -> str:
        message = self.add_message(
            stream_id=stream_id,
            content=content,
            agent_id=agent_id,
            author_name=agent_id,
        )
        return message.event_id
