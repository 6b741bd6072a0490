"""SQLite memo store: memos, memo embeddings, anchors, reinforcements and tag vocabulary."""

from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from datetime import datetime
from pathlib import Path

from loguru import logger

from memoria.memory.models import Memo, NewMemo, Reinforcement, ReinforcementType
from memoria.storage.vectors import cosine_similarity, deserialize_vector, serialize_vector
from memoria.utils.helpers import ensure_dir, parse_iso, to_iso, utc_now


class MemoStore:
    """Persistent memo storage with brute-force vector search per workspace."""

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
                CREATE TABLE IF NOT EXISTS memos (
                    id TEXT PRIMARY KEY,
                    workspace_id TEXT NOT NULL,
                    summary TEXT NOT NULL,
                    topics_json TEXT NOT NULL DEFAULT '[]',
                    category TEXT,
                    anchor_event_ids_json TEXT NOT NULL,
                    anchor_message_ids_json TEXT NOT NULL DEFAULT '[]',
                    context_stream_id TEXT,
                    confidence REAL NOT NULL,
                    retrieval_count INTEGER NOT NULL DEFAULT 0,
                    last_retrieved_at TEXT,
                    source TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    archived_at TEXT
                )
                """
            )
            self._conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_memos_workspace ON memos (workspace_id, archived_at)"
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS memo_anchors (
                    memo_id TEXT NOT NULL,
                    event_id TEXT NOT NULL,
                    added_at TEXT NOT NULL,
                    PRIMARY KEY (memo_id, event_id)
                )
                """
            )
            self._conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_memo_anchors_event ON memo_anchors (event_id)"
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS memo_embeddings (
                    memo_id TEXT PRIMARY KEY,
                    workspace_id TEXT NOT NULL,
                    model TEXT NOT NULL,
                    dims INTEGER NOT NULL,
                    vector BLOB NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS memo_reinforcements (
                    memo_id TEXT NOT NULL,
                    event_id TEXT NOT NULL,
                    reinforcement_type TEXT NOT NULL,
                    similarity_score REAL NOT NULL,
                    weight REAL NOT NULL,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (memo_id, event_id)
                )
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS workspace_tags (
                    workspace_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    usage_count INTEGER NOT NULL DEFAULT 0,
                    last_used_at TEXT NOT NULL,
                    PRIMARY KEY (workspace_id, name)
                )
                """
            )
            self._conn.commit()

    @staticmethod
    def _row_to_memo(row: sqlite3.Row) -> Memo:
        created_at = parse_iso(row["created_at"]) or utc_now()
        return Memo(
            id=str(row["id"]),
            workspace_id=str(row["workspace_id"]),
            summary=str(row["summary"]),
            topics=tuple(json.loads(row["topics_json"] or "[]")),
            category=row["category"],
            anchor_event_ids=tuple(json.loads(row["anchor_event_ids_json"])),
            anchor_message_ids=tuple(json.loads(row["anchor_message_ids_json"] or "[]")),
            context_stream_id=row["context_stream_id"],
            confidence=float(row["confidence"]),
            retrieval_count=int(row["retrieval_count"]),
            last_retrieved_at=parse_iso(row["last_retrieved_at"]),
            source=str(row["source"]),  # type: ignore[arg-type]
            created_at=created_at,
            updated_at=parse_iso(row["updated_at"]) or created_at,
            archived_at=parse_iso(row["archived_at"]),
        )

    def _fetch(self, memo_id: str) -> Memo | None:
        row = self._conn.execute("SELECT * FROM memos WHERE id = ? LIMIT 1", (memo_id,)).fetchone()
        return self._row_to_memo(row) if row is not None else None

    # ── Memos ────────────────────────────────────────────────────────

    def create(
        self,
        memo: NewMemo,
        *,
        embedding: list[float] | None = None,
        embedding_model: str | None = None,
        created_at: datetime | None = None,
    ) -> Memo:
        memo_id = f"memo_{uuid.uuid4().hex}"
        now_iso = to_iso(created_at or utc_now())
        with self._lock:
            try:
                self._insert_memo(memo_id, memo, now_iso, embedding=embedding, embedding_model=embedding_model)
                self._conn.commit()
            except sqlite3.Error:
                self._conn.rollback()
                raise
            created = self._fetch(memo_id)
        assert created is not None
        logger.info(
            "memo {} created workspace={} source={} confidence={:.2f}",
            memo_id,
            memo.workspace_id,
            memo.source,
            memo.confidence,
        )
        return created

    def supersede(
        self,
        old_id: str,
        memo: NewMemo,
        *,
        embedding: list[float] | None = None,
        embedding_model: str | None = None,
    ) -> Memo | None:
        """Archive ``old_id`` and create its replacement in one transaction.

        Returns None, writing nothing, when the old memo is already archived.
        """
        memo_id = f"memo_{uuid.uuid4().hex}"
        now_iso = to_iso(utc_now())
        with self._lock:
            try:
                cursor = self._conn.execute(
                    "UPDATE memos SET archived_at = ? WHERE id = ? AND archived_at IS NULL",
                    (now_iso, old_id),
                )
                if cursor.rowcount == 0:
                    self._conn.rollback()
                    return None
                self._insert_memo(memo_id, memo, now_iso, embedding=embedding, embedding_model=embedding_model)
                self._conn.commit()
            except sqlite3.Error:
                self._conn.rollback()
                raise
            created = self._fetch(memo_id)
        assert created is not None
        logger.info("memo {} superseded by {} workspace={}", old_id, memo_id, memo.workspace_id)
        return created

    def _insert_memo(
        self,
        memo_id: str,
        memo: NewMemo,
        now_iso: str,
        *,
        embedding: list[float] | None,
        embedding_model: str | None,
    ) -> None:
        self._conn.execute(
            """
            INSERT INTO memos (
                id, workspace_id, summary, topics_json, category,
                anchor_event_ids_json, anchor_message_ids_json, context_stream_id,
                confidence, source, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                memo_id,
                memo.workspace_id,
                memo.summary,
                json.dumps(list(memo.topics)),
                memo.category,
                json.dumps(list(memo.anchor_event_ids)),
                json.dumps(list(memo.anchor_message_ids)),
                memo.context_stream_id,
                float(memo.confidence),
                memo.source,
                now_iso,
                now_iso,
            ),
        )
        self._conn.executemany(
            "INSERT OR IGNORE INTO memo_anchors (memo_id, event_id, added_at) VALUES (?, ?, ?)",
            [(memo_id, event_id, now_iso) for event_id in memo.anchor_event_ids],
        )
        if embedding and embedding_model:
            self._upsert_embedding(memo_id, memo.workspace_id, embedding_model, embedding)

    def get(self, memo_id: str) -> Memo | None:
        with self._lock:
            return self._fetch(memo_id)

    def archive(self, memo_id: str) -> bool:
        """Archive an active memo. Archived memos are never modified again."""
        now_iso = to_iso(utc_now())
        with self._lock:
            cursor = self._conn.execute(
                "UPDATE memos SET archived_at = ? WHERE id = ? AND archived_at IS NULL",
                (now_iso, memo_id),
            )
            self._conn.commit()
        return cursor.rowcount > 0

    def add_anchor(
        self,
        memo_id: str,
        event_id: str,
        *,
        message_id: str | None = None,
        confidence_boost: float = 0.0,
    ) -> Memo | None:
        """Append an anchor event and optionally raise confidence (capped at 1.0).

        Returns None when the memo is missing or archived.
        """
        with self._lock:
            memo = self._fetch(memo_id)
            if memo is None or memo.is_archived:
                return None
            anchors = list(memo.anchor_event_ids)
            message_ids = list(memo.anchor_message_ids)
            if event_id not in anchors:
                anchors.append(event_id)
            if message_id and message_id not in message_ids:
                message_ids.append(message_id)
            now_iso = to_iso(utc_now())
            self._conn.execute(
                """
                UPDATE memos
                SET anchor_event_ids_json = ?,
                    anchor_message_ids_json = ?,
                    confidence = MIN(1.0, confidence + ?),
                    updated_at = ?
                WHERE id = ? AND archived_at IS NULL
                """,
                (json.dumps(anchors), json.dumps(message_ids), float(confidence_boost), now_iso, memo_id),
            )
            self._conn.execute(
                "INSERT OR IGNORE INTO memo_anchors (memo_id, event_id, added_at) VALUES (?, ?, ?)",
                (memo_id, event_id, now_iso),
            )
            self._conn.commit()
            return self._fetch(memo_id)

    def boost_confidence(self, memo_id: str, amount: float) -> Memo | None:
        with self._lock:
            self._conn.execute(
                """
                UPDATE memos
                SET confidence = MAX(0.0, MIN(1.0, confidence + ?)), updated_at = ?
                WHERE id = ? AND archived_at IS NULL
                """,
                (float(amount), to_iso(utc_now()), memo_id),
            )
            self._conn.commit()
            return self._fetch(memo_id)

    def find_by_anchor(self, workspace_id: str, event_id: str) -> list[Memo]:
        """Active memos anchored on ``event_id``."""
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT m.* FROM memo_anchors a
                JOIN memos m ON m.id = a.memo_id
                WHERE a.event_id = ? AND m.workspace_id = ? AND m.archived_at IS NULL
                ORDER BY m.created_at ASC
                """,
                (event_id, workspace_id),
            ).fetchall()
        return [self._row_to_memo(row) for row in rows]

    def list_active(self, workspace_id: str, *, limit: int = 500) -> list[Memo]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT * FROM memos
                WHERE workspace_id = ? AND archived_at IS NULL
                ORDER BY updated_at DESC
                LIMIT ?
                """,
                (workspace_id, int(limit)),
            ).fetchall()
        return [self._row_to_memo(row) for row in rows]

    def log_retrieval(self, memo_ids: list[str]) -> int:
        if not memo_ids:
            return 0
        placeholders = ",".join(["?"] * len(memo_ids))
        with self._lock:
            cursor = self._conn.execute(
                f"""
                UPDATE memos
                SET retrieval_count = retrieval_count + 1, last_retrieved_at = ?
                WHERE id IN ({placeholders}) AND archived_at IS NULL
                """,
                (to_iso(utc_now()), *memo_ids),
            )
            self._conn.commit()
        return cursor.rowcount

    def stats(self, *, workspace_id: str) -> dict[str, int]:
        with self._lock:
            active = self._conn.execute(
                "SELECT COUNT(*) AS c FROM memos WHERE workspace_id = ? AND archived_at IS NULL",
                (workspace_id,),
            ).fetchone()
            archived = self._conn.execute(
                "SELECT COUNT(*) AS c FROM memos WHERE workspace_id = ? AND archived_at IS NOT NULL",
                (workspace_id,),
            ).fetchone()
        return {"active": int(active["c"]), "archived": int(archived["c"])}

    # ── Embeddings ───────────────────────────────────────────────────

    def _upsert_embedding(self, memo_id: str, workspace_id: str, model: str, vector: list[float]) -> None:
        self._conn.execute(
            """
            INSERT INTO memo_embeddings (memo_id, workspace_id, model, dims, vector, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(memo_id) DO UPDATE SET
              model = excluded.model,
              dims = excluded.dims,
              vector = excluded.vector,
              created_at = excluded.created_at
            """,
            (memo_id, workspace_id, model, len(vector), serialize_vector(vector), to_iso(utc_now())),
        )

    def upsert_embedding(self, memo_id: str, workspace_id: str, model: str, vector: list[float]) -> None:
        with self._lock:
            self._upsert_embedding(memo_id, workspace_id, model, vector)
            self._conn.commit()

    def search_similar(
        self,
        workspace_id: str,
        query_vector: list[float],
        *,
        threshold: float,
        limit: int,
    ) -> list[tuple[Memo, float]]:
        """Active memos with cosine similarity strictly above ``threshold``, best first."""
        if not query_vector:
            return []
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT m.*, e.vector
                FROM memos m
                JOIN memo_embeddings e ON e.memo_id = m.id
                WHERE m.workspace_id = ? AND m.archived_at IS NULL
                """,
                (workspace_id,),
            ).fetchall()
        scored: list[tuple[Memo, float]] = []
        for row in rows:
            vector = deserialize_vector(bytes(row["vector"]))
            if len(vector) != len(query_vector):
                continue
            similarity = cosine_similarity(query_vector, vector)
            if similarity > threshold:
                scored.append((self._row_to_memo(row), similarity))
        scored.sort(key=lambda item: item[1], reverse=True)
        return scored[: max(1, int(limit))]

    # ── Reinforcements ───────────────────────────────────────────────

    def record_reinforcement(
        self,
        memo_id: str,
        event_id: str,
        *,
        reinforcement_type: ReinforcementType,
        similarity_score: float,
        weight: float,
    ) -> bool:
        """Record one reinforcement; False when the event already reinforces this memo."""
        with self._lock:
            cursor = self._conn.execute(
                """
                INSERT OR IGNORE INTO memo_reinforcements (
                    memo_id, event_id, reinforcement_type, similarity_score, weight, created_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (memo_id, event_id, reinforcement_type, float(similarity_score), float(weight), to_iso(utc_now())),
            )
            self._conn.commit()
        return cursor.rowcount > 0

    def reinforcing_memo_id(self, event_id: str) -> str | None:
        """Id of a memo that ``event_id`` already reinforces, if any."""
        with self._lock:
            row = self._conn.execute(
                "SELECT memo_id FROM memo_reinforcements WHERE event_id = ? ORDER BY created_at ASC LIMIT 1",
                (event_id,),
            ).fetchone()
        return str(row["memo_id"]) if row is not None else None

    def list_reinforcements(self, memo_id: str) -> list[Reinforcement]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT * FROM memo_reinforcements
                WHERE memo_id = ?
                ORDER BY created_at ASC
                """,
                (memo_id,),
            ).fetchall()
        return [
            Reinforcement(
                memo_id=str(row["memo_id"]),
                event_id=str(row["event_id"]),
                reinforcement_type=str(row["reinforcement_type"]),  # type: ignore[arg-type]
                similarity_score=float(row["similarity_score"]),
                weight=float(row["weight"]),
                created_at=parse_iso(row["created_at"]) or utc_now(),
            )
            for row in rows
        ]

    # ── Tag vocabulary ───────────────────────────────────────────────

    def record_tag_usage(self, workspace_id: str, tags: list[str]) -> None:
        names = sorted({tag.strip().lower() for tag in tags if len(tag.strip()) >= 2})
        if not names:
            return
        now_iso = to_iso(utc_now())
        with self._lock:
            self._conn.executemany(
                """
                INSERT INTO workspace_tags (workspace_id, name, usage_count, last_used_at)
                VALUES (?, ?, 1, ?)
                ON CONFLICT(workspace_id, name) DO UPDATE SET
                  usage_count = usage_count + 1,
                  last_used_at = excluded.last_used_at
                """,
                [(workspace_id, name, now_iso) for name in names],
            )
            self._conn.commit()

    def top_tags(self, workspace_id: str, *, limit: int = 50) -> list[str]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT name FROM workspace_tags
                WHERE workspace_id = ?
                ORDER BY usage_count DESC, last_used_at DESC
                LIMIT ?
                """,
                (workspace_id, int(limit)),
            ).fetchall()
        return [str(row["name"]) for row in rows]

    def tag_usage(self, workspace_id: str, name: str) -> int:
        with self._lock:
            row = self._conn.execute(
                "SELECT usage_count FROM workspace_tags WHERE workspace_id = ? AND name = ? LIMIT 1",
                (workspace_id, name.strip().lower()),
            ).fetchone()
        return int(row["usage_count"]) if row is not None else 0
