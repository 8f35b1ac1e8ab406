from __future__ import annotations

import asyncio
import json
import logging
import os
import sqlite3
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import TYPE_CHECKING, Any, AsyncIterator

from rereader.core.categories import normalize_category
from rereader.core.errors import (
    ConstraintError,
    ItemResult,
    NotFoundError,
    StorageError,
    ValidationError,
)
from rereader.core.models import (
    CycleKind,
    CycleRecord,
    CycleStatus,
    DeliveryRecord,
    Highlight,
    Source,
    extract_page_number,
    to_iso,
    utcnow,
)
from rereader.core.settings import RecallConfig
from rereader.core.validation import validate_highlight, validate_source

if TYPE_CHECKING:
    from rereader.providers.extractor import ExtractionBatch

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS sources (
  id TEXT PRIMARY KEY,
  title TEXT NOT NULL,
  creator TEXT,
  cover_ref TEXT,
  last_updated TEXT NOT NULL
);

-- No foreign key on source_id: deleting a source leaves orphans for cleanup()
CREATE TABLE IF NOT EXISTS highlights (
  id TEXT PRIMARY KEY,
  source_id TEXT NOT NULL,
  text TEXT NOT NULL,
  location_label TEXT,
  page_number INTEGER,
  date_created TEXT NOT NULL,
  date_ingested TEXT NOT NULL,
  category TEXT NOT NULL DEFAULT 'yellow',
  note TEXT,
  tags TEXT NOT NULL DEFAULT '[]',
  times_shown INTEGER NOT NULL DEFAULT 0,
  last_shown_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_highlights_source_id ON highlights(source_id);
CREATE INDEX IF NOT EXISTS idx_highlights_date_created ON highlights(date_created);

CREATE TABLE IF NOT EXISTS cycle_records (
  id TEXT PRIMARY KEY,
  timestamp TEXT NOT NULL,
  kind TEXT NOT NULL DEFAULT 'ingest',
  items_added INTEGER NOT NULL DEFAULT 0,
  items_total INTEGER NOT NULL DEFAULT 0,
  status TEXT NOT NULL,
  error_message TEXT
);

CREATE INDEX IF NOT EXISTS idx_cycle_records_timestamp ON cycle_records(timestamp);

CREATE TABLE IF NOT EXISTS delivery_records (
  id TEXT PRIMARY KEY,
  timestamp TEXT NOT NULL,
  recipient TEXT,
  highlight_ids TEXT NOT NULL DEFAULT '[]',
  status TEXT NOT NULL,
  detail TEXT
);

CREATE INDEX IF NOT EXISTS idx_delivery_records_timestamp ON delivery_records(timestamp);

CREATE TABLE IF NOT EXISTS app_settings (
  key TEXT PRIMARY KEY,
  value TEXT,
  updated_at TEXT DEFAULT (datetime('now'))
);
"""

# Fields a caller may change through update_highlight()
EDITABLE_FIELDS = {"text", "note", "tags", "category", "location_label"}
# Edit the stored tag set instead of replacing it
TAG_PATCH_KEYS = {"add_tags", "remove_tags"}


def _run_migrations(conn: sqlite3.Connection) -> None:
    """Run schema migrations for existing DBs."""
    cur = conn.execute("PRAGMA table_info(cycle_records)")
    cycle_columns = {row[1] for row in cur.fetchall()}
    if "kind" not in cycle_columns:
        conn.execute("ALTER TABLE cycle_records ADD COLUMN kind TEXT NOT NULL DEFAULT 'ingest'")

    cur = conn.execute("PRAGMA table_info(delivery_records)")
    delivery_columns = {row[1] for row in cur.fetchall()}
    if "detail" not in delivery_columns:
        conn.execute("ALTER TABLE delivery_records ADD COLUMN detail TEXT")


def _connect(db_path: str) -> sqlite3.Connection:
    # isolation_level=None: transactions are managed explicitly by Store._transaction
    conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout = 5000")
    return conn


@dataclass
class IngestResult:
    """Summary of one ingest batch."""

    sources_upserted: int = 0
    highlights_added: int = 0
    highlights_updated: int = 0
    errors: list[ItemResult] = field(default_factory=list)
    extractor_errors: list[str] = field(default_factory=list)
    cancelled: bool = False
    cycle_record: CycleRecord | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "sources_upserted": self.sources_upserted,
            "highlights_added": self.highlights_added,
            "highlights_updated": self.highlights_updated,
            "errors": [e.to_dict() for e in self.errors],
            "extractor_errors": list(self.extractor_errors),
            "cancelled": self.cancelled,
            "cycle_record": self.cycle_record.to_dict() if self.cycle_record else None,
        }


class Store:
    """SQLite-backed store for sources, highlights and cycle/delivery history.

    Writes go through a single writer connection guarded by an asyncio.Lock,
    one transaction per logical operation. Reads use a second connection; in
    WAL mode it only ever sees committed transactions, so a reader never
    observes half of an ingest batch. An in-memory database cannot be shared
    between connections, so ':memory:' stores read through the writer once
    any open write transaction has finished.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        if db_path != ":memory:":
            parent = os.path.dirname(db_path)
            if parent:
                os.makedirs(parent, exist_ok=True)
        try:
            self._writer = _connect(db_path)
            self._reader = self._writer if db_path == ":memory:" else _connect(db_path)
        except sqlite3.Error as e:
            raise StorageError(f"Could not open database at {db_path}: {e}") from e
        self._write_lock = asyncio.Lock()

    def init(self) -> None:
        try:
            self._writer.executescript(SCHEMA_SQL)
            # Run migrations for existing DBs
            _run_migrations(self._writer)
        except sqlite3.Error as e:
            raise StorageError(f"Schema setup failed: {e}") from e

    def close(self) -> None:
        if self._reader is not self._writer:
            self._reader.close()
        self._writer.close()

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[sqlite3.Connection]:
        """Serialized write transaction. sqlite3 errors surface as StorageError."""
        async with self._write_lock:
            conn = self._writer
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise StorageError(f"Could not start transaction: {e}") from e
            try:
                yield conn
            except sqlite3.Error as e:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise StorageError(f"Write failed: {e}") from e
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            try:
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise StorageError(f"Commit failed: {e}") from e

    async def _fetchall(self, sql: str, params: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        if self._reader is self._writer:
            # Shared connection: an open write transaction is visible here,
            # so wait until it has committed or rolled back.
            async with self._write_lock:
                return self._read(sql, params)
        return self._read(sql, params)

    def _read(self, sql: str, params: tuple[Any, ...]) -> list[sqlite3.Row]:
        try:
            return self._reader.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Read failed: {e}") from e

    async def _fetchone(self, sql: str, params: tuple[Any, ...] = ()) -> sqlite3.Row | None:
        rows = await self._fetchall(sql, params)
        return rows[0] if rows else None

    # ==================== Sources ====================

    @staticmethod
    def _write_source(conn: sqlite3.Connection, source: Source) -> None:
        # last_updated never moves backwards; ISO strings in UTC sort chronologically
        conn.execute(
            """
            INSERT INTO sources (id, title, creator, cover_ref, last_updated)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                title = excluded.title,
                creator = excluded.creator,
                cover_ref = COALESCE(excluded.cover_ref, cover_ref),
                last_updated = MAX(last_updated, excluded.last_updated)
            """,
            (source.id, source.title, source.creator, source.cover_ref, to_iso(source.last_updated)),
        )

    async def upsert_source(self, source: Source) -> Source:
        """Insert or update a source. Returns the stored row."""
        async with self._transaction() as conn:
            self._write_source(conn, source)
            row = conn.execute("SELECT * FROM sources WHERE id = ?", (source.id,)).fetchone()
        return Source.from_row(row)

    async def replace_source(self, source: Source) -> None:
        """Overwrite a source wholesale (snapshot import with overwrite)."""
        async with self._transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO sources (id, title, creator, cover_ref, last_updated) "
                "VALUES (?, ?, ?, ?, ?)",
                (source.id, source.title, source.creator, source.cover_ref, to_iso(source.last_updated)),
            )

    async def get_source(self, source_id: str) -> Source:
        row = await self._fetchone("SELECT * FROM sources WHERE id = ?", (source_id,))
        if not row:
            raise NotFoundError(f"Source {source_id} not found")
        return Source.from_row(row)

    async def source_exists(self, source_id: str) -> bool:
        return await self._fetchone("SELECT 1 FROM sources WHERE id = ?", (source_id,)) is not None

    async def list_sources(self) -> list[Source]:
        rows = await self._fetchall("SELECT * FROM sources ORDER BY title COLLATE NOCASE, id")
        return [Source.from_row(r) for r in rows]

    async def delete_source(self, source_id: str) -> None:
        """Delete a source. Its highlights are left in place as orphans."""
        async with self._transaction() as conn:
            cur = conn.execute("DELETE FROM sources WHERE id = ?", (source_id,))
            if cur.rowcount == 0:
                raise NotFoundError(f"Source {source_id} not found")

    # ==================== Highlights ====================

    @staticmethod
    def _write_highlight(conn: sqlite3.Connection, h: Highlight) -> bool:
        """Upsert one highlight on an open transaction. Returns True if it was new.

        On conflict the first-seen date_ingested and the show history are
        kept; an empty incoming note or tag set does not erase stored ones.
        """
        known = conn.execute("SELECT 1 FROM sources WHERE id = ?", (h.source_id,)).fetchone()
        if not known:
            raise ConstraintError(f"Highlight {h.id} references unknown source {h.source_id}")
        existed = conn.execute("SELECT 1 FROM highlights WHERE id = ?", (h.id,)).fetchone() is not None
        conn.execute(
            """
            INSERT INTO highlights (
                id, source_id, text, location_label, page_number, date_created,
                date_ingested, category, note, tags, times_shown, last_shown_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                text = excluded.text,
                location_label = excluded.location_label,
                page_number = excluded.page_number,
                date_created = excluded.date_created,
                category = excluded.category,
                note = CASE WHEN excluded.note != '' THEN excluded.note ELSE note END,
                tags = CASE WHEN excluded.tags != '[]' THEN excluded.tags ELSE tags END
            """,
            _highlight_params(h),
        )
        return not existed

    async def upsert_highlight(self, highlight: Highlight) -> Highlight:
        """Insert or update a highlight; idempotent on id.

        Raises:
            ConstraintError: if the highlight's source does not exist
        """
        async with self._transaction() as conn:
            self._write_highlight(conn, highlight)
            row = conn.execute("SELECT * FROM highlights WHERE id = ?", (highlight.id,)).fetchone()
        return Highlight.from_row(row)

    async def replace_highlight(self, highlight: Highlight) -> None:
        """Overwrite a highlight wholesale, show history included."""
        async with self._transaction() as conn:
            known = conn.execute("SELECT 1 FROM sources WHERE id = ?", (highlight.source_id,)).fetchone()
            if not known:
                raise ConstraintError(
                    f"Highlight {highlight.id} references unknown source {highlight.source_id}"
                )
            conn.execute(
                """
                INSERT OR REPLACE INTO highlights (
                    id, source_id, text, location_label, page_number, date_created,
                    date_ingested, category, note, tags, times_shown, last_shown_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                _highlight_params(highlight),
            )

    async def get_highlight(self, highlight_id: str) -> Highlight:
        row = await self._fetchone("SELECT * FROM highlights WHERE id = ?", (highlight_id,))
        if not row:
            raise NotFoundError(f"Highlight {highlight_id} not found")
        return Highlight.from_row(row)

    async def highlight_exists(self, highlight_id: str) -> bool:
        return await self._fetchone("SELECT 1 FROM highlights WHERE id = ?", (highlight_id,)) is not None

    async def list_highlights(self) -> list[Highlight]:
        rows = await self._fetchall("SELECT * FROM highlights ORDER BY date_created DESC, id")
        return [Highlight.from_row(r) for r in rows]

    async def list_highlights_by_source(self, source_id: str) -> list[Highlight]:
        rows = await self._fetchall(
            "SELECT * FROM highlights WHERE source_id = ? ORDER BY date_created DESC, id",
            (source_id,),
        )
        return [Highlight.from_row(r) for r in rows]

    async def update_highlight(self, highlight_id: str, changes: dict[str, Any]) -> Highlight:
        """Apply user edits (text, note, tags, category, location_label).

        add_tags / remove_tags are merged into the stored tag set inside the
        same transaction. The id stays stable even when the text is edited.

        Raises:
            NotFoundError: unknown id
            ValidationError: unknown field or invalid value
        """
        unknown = set(changes) - EDITABLE_FIELDS - TAG_PATCH_KEYS
        if unknown:
            raise ValidationError(f"Cannot update field(s): {', '.join(sorted(unknown))}")

        async with self._transaction() as conn:
            row = conn.execute("SELECT * FROM highlights WHERE id = ?", (highlight_id,)).fetchone()
            if not row:
                raise NotFoundError(f"Highlight {highlight_id} not found")
            current = Highlight.from_row(row)

            updates: dict[str, Any] = {}
            if "text" in changes:
                text = str(changes["text"] or "").strip()
                if not text:
                    raise ValidationError("text must not be empty")
                updates["text"] = text
            if "note" in changes:
                updates["note"] = str(changes["note"] or "")
            if "tags" in changes:
                updates["tags"] = frozenset(str(t).strip() for t in changes["tags"] or () if str(t).strip())
            if TAG_PATCH_KEYS & set(changes):
                tags = set(updates.get("tags", current.tags))
                tags |= {str(t).strip() for t in changes.get("add_tags") or () if str(t).strip()}
                tags -= {str(t).strip() for t in changes.get("remove_tags") or ()}
                updates["tags"] = frozenset(tags)
            if "category" in changes:
                updates["category"] = normalize_category(changes["category"])
            if "location_label" in changes:
                label = str(changes["location_label"] or "")
                updates["location_label"] = label
                updates["page_number"] = extract_page_number(label)

            updated = replace(current, **updates)
            reasons = validate_highlight(updated)
            if reasons:
                raise ValidationError(f"Invalid update for {highlight_id}", reasons)
            conn.execute(
                """
                UPDATE highlights
                SET text = ?, note = ?, tags = ?, category = ?, location_label = ?, page_number = ?
                WHERE id = ?
                """,
                (
                    updated.text,
                    updated.note,
                    json.dumps(sorted(updated.tags)),
                    updated.category,
                    updated.location_label,
                    updated.page_number,
                    highlight_id,
                ),
            )
        return updated

    async def mark_shown(self, highlight_id: str, at: datetime | None = None) -> Highlight:
        """Record one showing. The increment happens in SQL so it cannot be lost."""
        at = at or utcnow()
        async with self._transaction() as conn:
            cur = conn.execute(
                "UPDATE highlights SET times_shown = times_shown + 1, last_shown_at = ? WHERE id = ?",
                (to_iso(at), highlight_id),
            )
            if cur.rowcount == 0:
                raise NotFoundError(f"Highlight {highlight_id} not found")
            row = conn.execute("SELECT * FROM highlights WHERE id = ?", (highlight_id,)).fetchone()
        return Highlight.from_row(row)

    async def delete_highlight(self, highlight_id: str) -> None:
        async with self._transaction() as conn:
            cur = conn.execute("DELETE FROM highlights WHERE id = ?", (highlight_id,))
            if cur.rowcount == 0:
                raise NotFoundError(f"Highlight {highlight_id} not found")

    async def delete_orphaned_highlights(self) -> list[str]:
        """Remove highlights whose source no longer exists. Returns removed ids."""
        async with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT h.id FROM highlights h
                LEFT JOIN sources s ON s.id = h.source_id
                WHERE s.id IS NULL
                """
            ).fetchall()
            orphan_ids = [r[0] for r in rows]
            for i in range(0, len(orphan_ids), 500):
                batch = orphan_ids[i : i + 500]
                placeholders = ",".join("?" * len(batch))
                conn.execute(f"DELETE FROM highlights WHERE id IN ({placeholders})", batch)
        return orphan_ids

    # ==================== Cycle / delivery history ====================

    async def append_cycle_record(self, record: CycleRecord) -> CycleRecord:
        async with self._transaction() as conn:
            _insert_cycle_record(conn, record)
        return record

    async def replace_cycle_record(self, record: CycleRecord) -> None:
        async with self._transaction() as conn:
            _insert_cycle_record(conn, record, overwrite=True)

    async def latest_cycle_record(self, kind: CycleKind | None = None) -> CycleRecord | None:
        if kind is None:
            row = await self._fetchone("SELECT * FROM cycle_records ORDER BY timestamp DESC, rowid DESC LIMIT 1")
        else:
            row = await self._fetchone(
                "SELECT * FROM cycle_records WHERE kind = ? ORDER BY timestamp DESC, rowid DESC LIMIT 1",
                (kind.value,),
            )
        return CycleRecord.from_row(row) if row else None

    async def list_cycle_records(self, limit: int | None = None) -> list[CycleRecord]:
        """Newest first."""
        rows = await self._fetchall(
            "SELECT * FROM cycle_records ORDER BY timestamp DESC, rowid DESC LIMIT ?",
            (-1 if limit is None else limit,),
        )
        return [CycleRecord.from_row(r) for r in rows]

    async def cycle_record_exists(self, record_id: str) -> bool:
        return await self._fetchone("SELECT 1 FROM cycle_records WHERE id = ?", (record_id,)) is not None

    async def prune_cycle_records(self, keep: int) -> int:
        """Delete all but the newest `keep` cycle records. Returns rows removed."""
        async with self._transaction() as conn:
            cur = conn.execute(
                """
                DELETE FROM cycle_records WHERE id IN (
                    SELECT id FROM cycle_records
                    ORDER BY timestamp DESC, rowid DESC
                    LIMIT -1 OFFSET ?
                )
                """,
                (max(keep, 0),),
            )
            return cur.rowcount

    async def append_delivery_record(self, record: DeliveryRecord) -> DeliveryRecord:
        async with self._transaction() as conn:
            _insert_delivery_record(conn, record)
        return record

    async def replace_delivery_record(self, record: DeliveryRecord) -> None:
        async with self._transaction() as conn:
            _insert_delivery_record(conn, record, overwrite=True)

    async def list_delivery_records(self, limit: int | None = 50) -> list[DeliveryRecord]:
        """Newest first."""
        rows = await self._fetchall(
            "SELECT * FROM delivery_records ORDER BY timestamp DESC, rowid DESC LIMIT ?",
            (-1 if limit is None else limit,),
        )
        return [DeliveryRecord.from_row(r) for r in rows]

    async def delivery_record_exists(self, record_id: str) -> bool:
        return await self._fetchone("SELECT 1 FROM delivery_records WHERE id = ?", (record_id,)) is not None

    async def prune_delivery_records(self, keep: int) -> int:
        """Delete all but the newest `keep` delivery records. Returns rows removed."""
        async with self._transaction() as conn:
            cur = conn.execute(
                """
                DELETE FROM delivery_records WHERE id IN (
                    SELECT id FROM delivery_records
                    ORDER BY timestamp DESC, rowid DESC
                    LIMIT -1 OFFSET ?
                )
                """,
                (max(keep, 0),),
            )
            return cur.rowcount

    async def clear_all(self) -> None:
        """Remove all sources, highlights and history. Settings are kept."""
        async with self._transaction() as conn:
            for table in ("highlights", "sources", "cycle_records", "delivery_records"):
                conn.execute(f"DELETE FROM {table}")
        logger.info("All highlight data cleared")

    # ==================== Ingest ====================

    async def ingest_batch(
        self,
        batch: ExtractionBatch,
        cancel: asyncio.Event | None = None,
    ) -> IngestResult:
        """Apply an extractor batch: sources first, then highlights.

        The batch is one transaction, so readers see all of it or none of
        it. Bad items are collected as per-item errors and never abort the
        batch. The cancel flag is checked between items; on cancellation
        the items applied so far are committed. One ingest CycleRecord
        summarizing the batch is written in the same transaction.

        Raises:
            StorageError: the database failed; nothing from the batch is kept
        """
        result = IngestResult(extractor_errors=list(batch.errors))
        now = utcnow()
        try:
            async with self._transaction() as conn:
                for source in batch.sources:
                    if cancel is not None and cancel.is_set():
                        result.cancelled = True
                        break
                    reasons = validate_source(source)
                    if reasons:
                        result.errors.append(
                            ItemResult(source.id, ValidationError(f"Invalid source {source.id}", reasons))
                        )
                    else:
                        self._write_source(conn, source)
                        result.sources_upserted += 1
                    await asyncio.sleep(0)

                for highlight in batch.highlights:
                    if result.cancelled or (cancel is not None and cancel.is_set()):
                        result.cancelled = True
                        break
                    reasons = validate_highlight(highlight, now=now)
                    if reasons:
                        result.errors.append(
                            ItemResult(highlight.id, ValidationError(f"Invalid highlight {highlight.id}", reasons))
                        )
                    else:
                        try:
                            if self._write_highlight(conn, highlight):
                                result.highlights_added += 1
                            else:
                                result.highlights_updated += 1
                        except ConstraintError as e:
                            result.errors.append(ItemResult(highlight.id, e))
                    await asyncio.sleep(0)

                total = conn.execute("SELECT COUNT(*) FROM highlights").fetchone()[0]
                record = CycleRecord(
                    timestamp=now,
                    kind=CycleKind.INGEST,
                    items_added=result.highlights_added,
                    items_total=total,
                    status=_ingest_status(result),
                    error_message=_ingest_error_message(result),
                )
                _insert_cycle_record(conn, record)
                result.cycle_record = record
        except StorageError as e:
            logger.exception("Ingest batch failed")
            try:
                await self.append_cycle_record(
                    CycleRecord(kind=CycleKind.INGEST, status=CycleStatus.FAILED, error_message=str(e))
                )
            except StorageError:
                logger.exception("Could not record failed ingest cycle")
            raise

        logger.info(
            f"Ingested batch: {result.sources_upserted} sources, "
            f"{result.highlights_added} new / {result.highlights_updated} updated highlights, "
            f"{len(result.errors)} item errors"
            + (" (cancelled)" if result.cancelled else "")
        )
        return result

    # ==================== App Settings ====================

    async def get_setting(self, key: str, default: str | None = None) -> str | None:
        """Get a setting value by key."""
        row = await self._fetchone("SELECT value FROM app_settings WHERE key = ?", (key,))
        return row[0] if row else default

    async def set_setting(self, key: str, value: str) -> None:
        """Set a setting value (upsert)."""
        async with self._transaction() as conn:
            _upsert_setting(conn, key, value)

    async def load_config(self) -> RecallConfig:
        rows = await self._fetchall("SELECT key, value FROM app_settings")
        return RecallConfig.from_mapping({r[0]: r[1] for r in rows})

    async def save_config(self, config: RecallConfig) -> None:
        async with self._transaction() as conn:
            for key, value in config.to_mapping().items():
                _upsert_setting(conn, key, value)


def _highlight_params(h: Highlight) -> tuple[Any, ...]:
    return (
        h.id,
        h.source_id,
        h.text,
        h.location_label,
        h.page_number,
        to_iso(h.date_created),
        to_iso(h.date_ingested),
        h.category,
        h.note,
        json.dumps(sorted(h.tags)),
        h.times_shown,
        to_iso(h.last_shown_at),
    )


def _insert_cycle_record(conn: sqlite3.Connection, record: CycleRecord, overwrite: bool = False) -> None:
    verb = "INSERT OR REPLACE" if overwrite else "INSERT"
    conn.execute(
        f"""
        {verb} INTO cycle_records (id, timestamp, kind, items_added, items_total, status, error_message)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            record.id,
            to_iso(record.timestamp),
            record.kind.value,
            record.items_added,
            record.items_total,
            record.status.value,
            record.error_message,
        ),
    )


def _insert_delivery_record(
    conn: sqlite3.Connection, record: DeliveryRecord, overwrite: bool = False
) -> None:
    verb = "INSERT OR REPLACE" if overwrite else "INSERT"
    conn.execute(
        f"""
        {verb} INTO delivery_records (id, timestamp, recipient, highlight_ids, status, detail)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (
            record.id,
            to_iso(record.timestamp),
            record.recipient,
            json.dumps(list(record.highlight_ids)),
            record.status.value,
            record.detail,
        ),
    )


def _upsert_setting(conn: sqlite3.Connection, key: str, value: str) -> None:
    conn.execute(
        """
        INSERT INTO app_settings (key, value, updated_at)
        VALUES (?, ?, datetime('now'))
        ON CONFLICT(key) DO UPDATE SET
            value = excluded.value,
            updated_at = datetime('now')
        """,
        (key, value),
    )


def _ingest_status(result: IngestResult) -> CycleStatus:
    applied = result.sources_upserted + result.highlights_added + result.highlights_updated
    had_errors = bool(result.errors or result.extractor_errors)
    if had_errors and applied == 0:
        return CycleStatus.FAILED
    if had_errors or result.cancelled:
        return CycleStatus.PARTIAL
    return CycleStatus.SUCCESS


def _ingest_error_message(result: IngestResult) -> str:
    parts = [f"{e.id}: {e.error.message}" for e in result.errors if e.error is not None]
    parts.extend(result.extractor_errors)
    if result.cancelled:
        parts.append("cancelled")
    return "; ".join(parts)[:1000]


def open_store(db_path: str) -> Store:
    """Open (and create if needed) a store at db_path."""
    store = Store(db_path)
    store.init()
    return store
