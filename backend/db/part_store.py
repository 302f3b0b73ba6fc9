"""
Persistent part store for working memory.

This module implements the SQLite-backed part storage with:
- One JSON payload per (session_id, project_id, node_id, part) row
- Fallback rows (session_id = '') addressable by project + node
- project_structure persisted as project_graph + elements_graph + a
  recomposed convenience copy
- Node-keyed working history that survives session rotation
"""

import os
import json
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Iterable
from contextlib import asynccontextmanager

from sqlalchemy import (
    Column,
    Integer,
    Index,
    String,
    Text,
    DateTime,
    select,
    delete,
    func,
    and_,
    inspect,
    text,
)
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from dotenv import load_dotenv, find_dotenv

from memory.composer import compose
from memory.errors import InvalidPart, MalformedPayload
from memory.schema import (
    DerivedPart,
    WorkingMemoryPart,
    parse_storage_part,
    sanitize,
    sanitize_project_structure,
)
from memory.scope import ResolvedScope, resolve_scope

# Load environment variables
_dotenv_path = find_dotenv(usecwd=True)
if _dotenv_path:
    load_dotenv(_dotenv_path)

logger = logging.getLogger(__name__)

Base = declarative_base()

DEFAULT_PROJECT_ID = "default_project"

_STRUCTURE_PART_NAMES = (
    WorkingMemoryPart.PROJECT_STRUCTURE.value,
    DerivedPart.PROJECT_GRAPH.value,
    DerivedPart.ELEMENTS_GRAPH.value,
)
_LEGACY_PARTS_TABLE = "working_memory_parts_legacy"

_SQLITE_ADAPTERS_REGISTERED = False


def _register_sqlite_adapters() -> None:
    """
    Register explicit sqlite adapters for Python datetime objects.

    Python 3.12+ deprecates sqlite3's implicit default datetime adapter.
    """
    global _SQLITE_ADAPTERS_REGISTERED
    if _SQLITE_ADAPTERS_REGISTERED:
        return
    sqlite3.register_adapter(datetime, lambda value: value.isoformat(sep=" "))
    _SQLITE_ADAPTERS_REGISTERED = True


_register_sqlite_adapters()


def _utc_now_naive() -> datetime:
    """Naive UTC datetime for DB schema compatibility."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# =============================================================================
# ORM Models
# =============================================================================


class WorkingMemoryPartRow(Base):
    """One sanitized working-memory part for a scope.

    session_id = '' marks a fallback record shared by every session that
    works on the same (project_id, node_id).
    """

    __tablename__ = "working_memory_parts"
    __table_args__ = (
        Index("idx_working_memory_parts_project", "project_id"),
        Index("idx_working_memory_parts_part", "part"),
        Index("idx_working_memory_parts_project_node", "project_id", "node_id"),
    )

    session_id = Column(String(64), primary_key=True, default="", server_default=text("''"))
    project_id = Column(String(64), primary_key=True)
    node_id = Column(String(64), primary_key=True, default="", server_default=text("''"))
    part = Column(String(32), primary_key=True)
    payload = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=_utc_now_naive, onupdate=_utc_now_naive)


class NodeWorkingHistory(Base):
    """Working history keyed by node, independent of any session."""

    __tablename__ = "node_working_history"

    project_id = Column(String(64), primary_key=True)
    node_id = Column(String(64), primary_key=True)
    working_history = Column(Text, nullable=False, default="")
    updated_at = Column(DateTime, default=_utc_now_naive, onupdate=_utc_now_naive)


class SessionRecord(Base):
    """Session registry row read by cold-start initialisation."""

    __tablename__ = "sessions"

    id = Column(String(64), primary_key=True)
    user_id = Column(String(64), nullable=False, default="")
    project_id = Column(String(64), nullable=False, index=True)
    active_node = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=_utc_now_naive)


class MessageRecord(Base):
    """Conversation history row."""

    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(64), nullable=False, index=True)
    node_id = Column(String(64), nullable=True)
    role = Column(String(32), nullable=False)
    message_type = Column(String(32), nullable=False, default="user_reply")
    content = Column(Text, nullable=False)
    created_at = Column(DateTime, default=_utc_now_naive)


class SummaryRecord(Base):
    """Rolling session summary produced outside the engine."""

    __tablename__ = "summaries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(64), nullable=False, index=True)
    summary_json = Column(Text, nullable=False)
    created_at = Column(DateTime, default=_utc_now_naive)


# =============================================================================
# Part Store
# =============================================================================


@dataclass
class LoadResult:
    snapshot: Dict[str, Any]
    raw_parts: Dict[str, Any] = field(default_factory=dict)
    scope: Optional[ResolvedScope] = None


def _decode_payload(part: str, raw: Any) -> Any:
    if raw is None:
        return None
    if not isinstance(raw, (str, bytes, bytearray)):
        return raw
    try:
        return json.loads(raw)
    except ValueError as exc:
        raise MalformedPayload(part, str(exc)) from exc


def _encode_payload(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


class WorkingMemoryStore:
    """
    Async SQLite store for working-memory parts.

    Core operations:
    - load: primary rows for a scope, fallback rows underneath, derived
      parts recomposed, reduced through the schema into one snapshot
    - save: sanitize, upsert, promote over superseded fallback rows
    """

    def __init__(self, database_url: str, default_project_id: Optional[str] = None):
        """
        Initialize the store.

        Args:
            database_url: SQLAlchemy async URL, e.g.
                         "sqlite+aiosqlite:///working_memory.db"
            default_project_id: project applied to bare session scopes;
                         falls back to DEFAULT_PROJECT_ID from the environment.
        """
        self.database_url = database_url
        self.engine = create_async_engine(database_url, echo=False)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )
        configured = default_project_id
        if configured is None:
            configured = os.getenv("DEFAULT_PROJECT_ID", DEFAULT_PROJECT_ID)
        self.default_project_id = (configured or "").strip() or DEFAULT_PROJECT_ID

    async def init_db(self):
        """Create tables if they don't exist, migrating the legacy session-only shape."""
        async with self.engine.begin() as conn:
            legacy_columns = await conn.run_sync(self._detach_legacy_parts_table)
            await conn.run_sync(Base.metadata.create_all)
            if legacy_columns:
                copied = await conn.run_sync(
                    self._copy_legacy_parts, legacy_columns, self.default_project_id
                )
                logger.warning(
                    "Migrated %d legacy working memory rows to node-scoped table", copied
                )

    @staticmethod
    def _detach_legacy_parts_table(connection) -> List[str]:
        """Rename a working_memory_parts table that predates node_id scoping."""
        inspector = inspect(connection)
        if WorkingMemoryPartRow.__tablename__ not in inspector.get_table_names():
            return []
        columns = [col["name"] for col in inspector.get_columns(WorkingMemoryPartRow.__tablename__)]
        if "node_id" in columns:
            return []
        index_rows = connection.execute(
            text(
                "SELECT name FROM sqlite_master "
                "WHERE type = 'index' AND tbl_name = :table AND sql IS NOT NULL"
            ),
            {"table": WorkingMemoryPartRow.__tablename__},
        ).fetchall()
        for (index_name,) in index_rows:
            connection.execute(text(f'DROP INDEX IF EXISTS "{index_name}"'))
        connection.execute(
            text(f"ALTER TABLE {WorkingMemoryPartRow.__tablename__} RENAME TO {_LEGACY_PARTS_TABLE}")
        )
        return columns

    @staticmethod
    def _copy_legacy_parts(connection, legacy_columns: List[str], default_project_id: str) -> int:
        updated_expr = "updated_at" if "updated_at" in legacy_columns else "CURRENT_TIMESTAMP"
        project_expr = (
            "COALESCE(NULLIF(TRIM(project_id), ''), :default_project)"
            if "project_id" in legacy_columns
            else ":default_project"
        )
        result = connection.execute(
            text(
                "INSERT OR IGNORE INTO working_memory_parts("
                "session_id, project_id, node_id, part, payload, updated_at"
                ") SELECT "
                "COALESCE(session_id, ''), "
                f"{project_expr}, "
                "'', "
                "CASE WHEN LOWER(TRIM(part)) = 'last_message' "
                "THEN 'last_user_message' ELSE LOWER(TRIM(part)) END, "
                "payload, "
                f"{updated_expr} "
                f"FROM {_LEGACY_PARTS_TABLE}"
            ),
            {"default_project": default_project_id},
        )
        connection.execute(text(f"DROP TABLE {_LEGACY_PARTS_TABLE}"))
        return int(result.rowcount or 0)

    async def close(self):
        """Close the database connection."""
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self):
        """Get an async session context manager."""
        async with self.async_session() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    @asynccontextmanager
    async def _use_session(self, session: Optional[AsyncSession]):
        """Reuse a caller-owned transaction, or open (and commit) our own."""
        if session is not None:
            yield session
            return
        async with self.session() as own_session:
            yield own_session

    def resolve(
        self,
        session_id: Any = None,
        project_id: Any = None,
        node_id: Any = None,
    ) -> ResolvedScope:
        return resolve_scope(
            session_id,
            project_id,
            node_id,
            default_project_id=self.default_project_id,
        )

    # =========================================================================
    # Read Operations
    # =========================================================================

    async def load(
        self, scope: ResolvedScope, *, session: Optional[AsyncSession] = None
    ) -> LoadResult:
        """
        Load and compose the snapshot for a scope.

        Primary rows win per part name; fallback rows for the scope's
        project/node pair fill gaps. A payload that fails to decode is
        replaced by its schema default.
        """
        async with self._use_session(session) as db:
            if scope.is_session_scope:
                primary_rows = await self._select_session_rows(
                    db, scope.session_id, scope.node_id
                )
                primary = self._pick_session_rows(primary_rows, scope)
                if not scope.project_id:
                    discovered = next(
                        (row.project_id for row in primary.values() if row.project_id),
                        "",
                    )
                    if discovered:
                        scope = scope.with_project(discovered)
            else:
                primary_rows = await self._select_fallback_rows(
                    db, scope.project_id, scope.node_id
                )
                primary = {row.part: row for row in primary_rows}

            fallback: Dict[str, WorkingMemoryPartRow] = {}
            pair = scope.fallback_pair
            if scope.is_session_scope and pair is not None:
                fallback_rows = await self._select_fallback_rows(db, *pair)
                fallback = {row.part: row for row in fallback_rows}
                if any(name in primary for name in _STRUCTURE_PART_NAMES):
                    for name in _STRUCTURE_PART_NAMES:
                        fallback.pop(name, None)

            merged = dict(fallback)
            merged.update(primary)
            raw_parts = self._decode_rows(merged)

            if (
                raw_parts.get(WorkingMemoryPart.WORKING_HISTORY.value) is None
                and pair is not None
            ):
                history = await db.get(NodeWorkingHistory, pair)
                if history is not None:
                    raw_parts[WorkingMemoryPart.WORKING_HISTORY.value] = history.working_history

        snapshot = compose(raw_parts, scope)
        return LoadResult(snapshot=snapshot, raw_parts=raw_parts, scope=scope)

    async def _select_session_rows(
        self, db: AsyncSession, session_id: str, node_id: str
    ) -> List[WorkingMemoryPartRow]:
        """Session rows for the requested node plus the session's node-less rows."""
        result = await db.execute(
            select(WorkingMemoryPartRow).where(
                and_(
                    WorkingMemoryPartRow.session_id == session_id,
                    WorkingMemoryPartRow.node_id.in_([node_id, ""]),
                )
            )
        )
        return list(result.scalars().all())

    async def _select_fallback_rows(
        self, db: AsyncSession, project_id: str, node_id: str
    ) -> List[WorkingMemoryPartRow]:
        result = await db.execute(
            select(WorkingMemoryPartRow).where(
                and_(
                    WorkingMemoryPartRow.session_id == "",
                    WorkingMemoryPartRow.project_id == project_id,
                    WorkingMemoryPartRow.node_id == node_id,
                )
            )
        )
        return list(result.scalars().all())

    @staticmethod
    def _pick_session_rows(
        rows: Iterable[WorkingMemoryPartRow], scope: ResolvedScope
    ) -> Dict[str, WorkingMemoryPartRow]:
        """
        Per part, prefer the row for the requested node over the node-less
        row, then the row of the scope's project, then the newest.
        """

        def _rank(row: WorkingMemoryPartRow):
            node_rank = int(bool(row.node_id) and row.node_id == scope.node_id)
            project_rank = int(not scope.project_id or row.project_id == scope.project_id)
            return (node_rank, project_rank, row.updated_at or datetime.min)

        picked: Dict[str, WorkingMemoryPartRow] = {}
        for row in rows:
            current = picked.get(row.part)
            if current is None or _rank(row) > _rank(current):
                picked[row.part] = row
        return picked

    @staticmethod
    def _decode_rows(rows: Dict[str, WorkingMemoryPartRow]) -> Dict[str, Any]:
        decoded: Dict[str, Any] = {}
        for name, row in rows.items():
            try:
                part = parse_storage_part(name)
            except InvalidPart:
                logger.debug("Skipping unknown working memory part %r", name)
                continue
            try:
                decoded[part.value] = _decode_payload(part.value, row.payload)
            except MalformedPayload as exc:
                logger.warning("%s; using schema default", exc)
                decoded[part.value] = None
        return decoded

    async def get_node_working_history(self, project_id: str, node_id: str) -> Optional[str]:
        async with self.session() as db:
            row = await db.get(NodeWorkingHistory, (project_id, node_id))
            return row.working_history if row is not None else None

    async def get_latest_part(self, project_id: str, part: Any) -> Optional[Any]:
        """Most recently written payload of one part across all scopes of a project."""
        resolved = parse_storage_part(part)
        async with self.session() as db:
            result = await db.execute(
                select(WorkingMemoryPartRow.payload)
                .where(WorkingMemoryPartRow.project_id == project_id)
                .where(WorkingMemoryPartRow.part == resolved.value)
                .order_by(WorkingMemoryPartRow.updated_at.desc())
                .limit(1)
            )
            payload = result.scalar_one_or_none()
        if payload is None:
            return None
        try:
            return _decode_payload(resolved.value, payload)
        except MalformedPayload as exc:
            logger.warning("%s; ignoring", exc)
            return None

    async def get_stats(self) -> Dict[str, Any]:
        async with self.session() as db:
            result = await db.execute(
                select(WorkingMemoryPartRow.part, func.count())
                .group_by(WorkingMemoryPartRow.part)
            )
            part_counts = {str(name): int(count) for name, count in result.all()}
            fallback_rows = (
                await db.execute(
                    select(func.count()).where(WorkingMemoryPartRow.session_id == "")
                )
            ).scalar_one()
        return {
            "total_rows": sum(part_counts.values()),
            "fallback_rows": int(fallback_rows or 0),
            "part_counts": part_counts,
        }

    # =========================================================================
    # Write Operations
    # =========================================================================

    async def save(
        self,
        scope: ResolvedScope,
        part: Any,
        value: Any,
        *,
        history_length: Any = None,
        messages: Any = None,
        session: Optional[AsyncSession] = None,
    ) -> Any:
        """
        Sanitize and persist one part for a scope.

        project_structure becomes three physical rows written in one
        transaction. A session-scoped write deletes the fallback rows it
        supersedes. Returns the sanitized value.
        """
        resolved = parse_storage_part(part)

        async with self._use_session(session) as db:
            if resolved is WorkingMemoryPart.PROJECT_STRUCTURE:
                sanitized = sanitize_project_structure(value)
                rows = {
                    DerivedPart.PROJECT_GRAPH.value: sanitized["project_graph"],
                    DerivedPart.ELEMENTS_GRAPH.value: sanitized["elements_graph"],
                    WorkingMemoryPart.PROJECT_STRUCTURE.value: sanitized,
                }
            elif isinstance(resolved, DerivedPart):
                sanitized = sanitize(resolved, value)
                sibling = (
                    DerivedPart.ELEMENTS_GRAPH
                    if resolved is DerivedPart.PROJECT_GRAPH
                    else DerivedPart.PROJECT_GRAPH
                )
                sibling_graph = await self._get_visible_payload(db, scope, sibling.value)
                sibling_graph = sanitize(sibling, sibling_graph)
                rows = {
                    resolved.value: sanitized,
                    sibling.value: sibling_graph,
                    WorkingMemoryPart.PROJECT_STRUCTURE.value: sanitize_project_structure(
                        {resolved.value: sanitized, sibling.value: sibling_graph}
                    ),
                }
            else:
                sanitized = sanitize(
                    resolved, value, history_length=history_length, messages=messages
                )
                rows = {resolved.value: sanitized}

            now_value = _utc_now_naive()
            for name, payload in rows.items():
                await self._upsert_part(db, scope, name, payload, now_value)

            pair = scope.fallback_pair
            if scope.is_session_scope and pair is not None:
                await db.execute(
                    delete(WorkingMemoryPartRow)
                    .where(WorkingMemoryPartRow.session_id == "")
                    .where(WorkingMemoryPartRow.project_id == pair[0])
                    .where(WorkingMemoryPartRow.node_id == pair[1])
                    .where(WorkingMemoryPartRow.part.in_(list(rows.keys())))
                )

            if resolved is WorkingMemoryPart.WORKING_HISTORY and pair is not None:
                await self._upsert_node_history(db, pair[0], pair[1], sanitized, now_value)

        return sanitized

    async def _get_visible_payload(
        self, db: AsyncSession, scope: ResolvedScope, part: str
    ) -> Optional[Any]:
        """Payload of one part at the exact scope, else from its fallback record."""
        row = await db.get(
            WorkingMemoryPartRow,
            (scope.session_id, scope.project_id, scope.node_id, part),
        )
        pair = scope.fallback_pair
        if row is None and scope.is_session_scope and pair is not None:
            row = await db.get(WorkingMemoryPartRow, ("", pair[0], pair[1], part))
        if row is None:
            return None
        try:
            return _decode_payload(part, row.payload)
        except MalformedPayload as exc:
            logger.warning("%s; treating as empty", exc)
            return None

    @staticmethod
    async def _upsert_part(
        db: AsyncSession,
        scope: ResolvedScope,
        part: str,
        payload: Any,
        updated_at: datetime,
    ) -> None:
        await db.execute(
            text(
                "INSERT INTO working_memory_parts("
                "session_id, project_id, node_id, part, payload, updated_at"
                ") VALUES ("
                ":session_id, :project_id, :node_id, :part, :payload, :updated_at"
                ") ON CONFLICT(session_id, project_id, node_id, part) DO UPDATE SET "
                "payload = excluded.payload, "
                "updated_at = excluded.updated_at"
            ),
            {
                "session_id": scope.session_id,
                "project_id": scope.project_id,
                "node_id": scope.node_id,
                "part": part,
                "payload": _encode_payload(payload),
                "updated_at": updated_at,
            },
        )

    @staticmethod
    async def _upsert_node_history(
        db: AsyncSession,
        project_id: str,
        node_id: str,
        working_history: str,
        updated_at: datetime,
    ) -> None:
        await db.execute(
            text(
                "INSERT INTO node_working_history("
                "project_id, node_id, working_history, updated_at"
                ") VALUES ("
                ":project_id, :node_id, :working_history, :updated_at"
                ") ON CONFLICT(project_id, node_id) DO UPDATE SET "
                "working_history = excluded.working_history, "
                "updated_at = excluded.updated_at"
            ),
            {
                "project_id": project_id,
                "node_id": node_id,
                "working_history": working_history,
                "updated_at": updated_at,
            },
        )


# =============================================================================
# Global Singleton
# =============================================================================

_part_store: Optional[WorkingMemoryStore] = None


def get_part_store() -> WorkingMemoryStore:
    """Get the global WorkingMemoryStore instance."""
    global _part_store
    if _part_store is None:
        database_url = os.getenv("DATABASE_URL")
        if not database_url:
            raise ValueError(
                "DATABASE_URL environment variable is not set. Please check your .env file."
            )
        _part_store = WorkingMemoryStore(database_url)
    return _part_store


async def close_part_store():
    """Close the global WorkingMemoryStore connection."""
    global _part_store
    if _part_store:
        await _part_store.close()
        _part_store = None
