"""Persistent, searchable history of transcriptions."""

import logging
import re
from pathlib import Path
from typing import List, Optional

from sqlalchemy import (
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    column,
    create_engine,
    func,
    or_,
    select,
    table,
    text,
)
from sqlalchemy.exc import SQLAlchemyError

from .exceptions import PersistenceError
from .models import HistoryEntry, TranscriptionResult

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 50

metadata = MetaData()

transcriptions = Table(
    "transcriptions",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("text", Text, nullable=False),
    Column("language", String),
    Column("duration", Integer),
    Column("service", String),
    Column(
        "created_at",
        DateTime,
        nullable=False,
        server_default=func.current_timestamp(),
    ),
    Index("idx_transcriptions_created_at", "created_at"),
    sqlite_autoincrement=True,
)

transcriptions_fts = table("transcriptions_fts", column("rowid", Integer))

# The full-text index is an external-content FTS5 table. The triggers update
# it inside the same transaction as the row change.
FTS_SCHEMA = [
    """
    CREATE VIRTUAL TABLE IF NOT EXISTS transcriptions_fts
    USING fts5(text, content=transcriptions, content_rowid=id)
    """,
    """
    CREATE TRIGGER IF NOT EXISTS transcriptions_ai
    AFTER INSERT ON transcriptions BEGIN
        INSERT INTO transcriptions_fts(rowid, text) VALUES (new.id, new.text);
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS transcriptions_ad
    AFTER DELETE ON transcriptions BEGIN
        INSERT INTO transcriptions_fts(transcriptions_fts, rowid, text)
        VALUES ('delete', old.id, old.text);
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS transcriptions_au
    AFTER UPDATE ON transcriptions BEGIN
        INSERT INTO transcriptions_fts(transcriptions_fts, rowid, text)
        VALUES ('delete', old.id, old.text);
        INSERT INTO transcriptions_fts(rowid, text) VALUES (new.id, new.text);
    END
    """,
]

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


def build_match_query(query: str) -> Optional[str]:
    """Turn free text into an FTS5 query requiring every word token.

    Each token is quoted, so user input can never be parsed as FTS5 syntax,
    and matched as a prefix so partially typed words still find entries.

    Returns:
        The MATCH expression, or None if the query has no word tokens.
    """
    tokens = _TOKEN_RE.findall(query)
    if not tokens:
        return None
    return " ".join(f'"{token}"*' for token in tokens)


def escape_like(value: str) -> str:
    """Escape LIKE wildcards so the value matches literally."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class HistoryStore:
    """SQLite-backed history store with a full-text index over the text."""

    def __init__(self, db_path: Path, default_limit: int = DEFAULT_LIMIT):
        """Open (and create if needed) the history database.

        Args:
            db_path: Path of the SQLite database file.
            default_limit: Entries returned by recent()/search() without a limit.

        Raises:
            PersistenceError: If the database cannot be opened or initialized.
        """
        self.db_path = db_path
        self.default_limit = default_limit

        try:
            db_path.parent.mkdir(parents=True, exist_ok=True)
            self._engine = create_engine(
                f"sqlite:///{db_path}",
                connect_args={"check_same_thread": False},
            )
            self._init_schema()
        except (OSError, SQLAlchemyError) as e:
            raise PersistenceError(f"Failed to open history database: {e}") from e

        logger.info(f"History store opened at {db_path}")

    def _init_schema(self) -> None:
        with self._engine.begin() as conn:
            metadata.create_all(conn)
            for statement in FTS_SCHEMA:
                conn.execute(text(statement))

    @staticmethod
    def _to_entry(row) -> HistoryEntry:
        return HistoryEntry(
            id=row.id,
            text=row.text,
            language=row.language or "unknown",
            duration_ms=row.duration or 0,
            service_name=row.service or "Unknown",
            created_at=row.created_at,
        )

    def _newest_first(self, stmt, limit: Optional[int]):
        return stmt.order_by(
            transcriptions.c.created_at.desc(), transcriptions.c.id.desc()
        ).limit(limit or self.default_limit)

    def insert(self, result: TranscriptionResult, service_name: str) -> int:
        """Store a transcription.

        Returns:
            The id assigned to the new entry.

        Raises:
            PersistenceError: If the entry cannot be written.
        """
        stmt = transcriptions.insert().values(
            text=result.text,
            language=result.language,
            duration=result.duration_ms,
            service=service_name,
        )
        try:
            with self._engine.begin() as conn:
                entry_id = conn.execute(stmt).inserted_primary_key[0]
        except SQLAlchemyError as e:
            logger.exception("Failed to store transcription")
            raise PersistenceError(f"Failed to save transcription: {e}") from e

        logger.debug(f"Stored transcription {entry_id} ({len(result.text)} chars)")
        return entry_id

    def recent(self, limit: Optional[int] = None) -> List[HistoryEntry]:
        """Return the newest entries first."""
        stmt = self._newest_first(select(transcriptions), limit)
        try:
            with self._engine.connect() as conn:
                return [self._to_entry(row) for row in conn.execute(stmt)]
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to read history: {e}") from e

    def search(self, query: str, limit: Optional[int] = None) -> List[HistoryEntry]:
        """Full-text search over entry text, newest matches first.

        An entry matches if the index finds every word of the query, or if
        its text contains the whole query (case-insensitively).
        """
        query = query.strip()
        if not query:
            return []

        conditions = [
            transcriptions.c.text.like(f"%{escape_like(query)}%", escape="\\")
        ]
        match = build_match_query(query)
        if match is not None:
            indexed = select(transcriptions_fts.c.rowid).where(
                text("transcriptions_fts MATCH :match").bindparams(match=match)
            )
            conditions.append(transcriptions.c.id.in_(indexed))

        stmt = self._newest_first(select(transcriptions).where(or_(*conditions)), limit)
        try:
            with self._engine.connect() as conn:
                return [self._to_entry(row) for row in conn.execute(stmt)]
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to search history: {e}") from e

    def get_by_id(self, entry_id: int) -> Optional[HistoryEntry]:
        stmt = select(transcriptions).where(transcriptions.c.id == entry_id)
        try:
            with self._engine.connect() as conn:
                row = conn.execute(stmt).first()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to read history: {e}") from e
        return self._to_entry(row) if row is not None else None

    def delete(self, entry_id: int) -> None:
        """Delete one entry; unknown ids are ignored."""
        stmt = transcriptions.delete().where(transcriptions.c.id == entry_id)
        try:
            with self._engine.begin() as conn:
                conn.execute(stmt)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to delete transcription: {e}") from e

    def clear(self) -> None:
        """Delete every entry."""
        try:
            with self._engine.begin() as conn:
                conn.execute(transcriptions.delete())
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to clear history: {e}") from e
        logger.info("History cleared")

    def close(self) -> None:
        self._engine.dispose()
