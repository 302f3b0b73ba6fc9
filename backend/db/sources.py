"""
Collaborator data used to cold-start working memory.

The relational tables (sessions, messages, summaries) live next to the part
store. The graph store is external; the structure index handed to new
working memories is the project's most recently persisted project_graph.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from sqlalchemy import or_, select

from memory.schema import DerivedPart, sanitize_graph

from .part_store import (
    MessageRecord,
    SessionRecord,
    SummaryRecord,
    WorkingMemoryStore,
    _utc_now_naive,
)


class WorkingMemorySources(Protocol):
    async def fetch_structure_index(self, project_id: str) -> Dict[str, Any]: ...

    async def fetch_node(self, project_id: str, node_id: str) -> Optional[Dict[str, Any]]: ...

    async def fetch_recent_messages(
        self, session_id: str, node_id: Optional[str], limit: int
    ) -> List[Dict[str, Any]]: ...

    async def fetch_latest_summary(self, session_id: str) -> Optional[Dict[str, Any]]: ...

    async def fetch_session(self, session_id: str) -> Optional[Dict[str, Any]]: ...


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _message_to_dict(row: MessageRecord) -> Dict[str, Any]:
    return {
        "id": row.id,
        "session_id": row.session_id,
        "node_id": row.node_id,
        "role": row.role,
        "message_type": row.message_type,
        "content": row.content,
        "created_at": _iso(row.created_at),
    }


def parse_summary_payload(raw: Any) -> Any:
    if raw is None:
        return None
    if isinstance(raw, str):
        try:
            return json.loads(raw)
        except ValueError:
            return {"text": raw}
    return raw


class SQLWorkingMemorySources:
    """WorkingMemorySources backed by the part store's database."""

    def __init__(self, store: WorkingMemoryStore) -> None:
        self.store = store

    async def fetch_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        if not session_id:
            return None
        async with self.store.session() as db:
            row = await db.get(SessionRecord, session_id)
            if row is None:
                return None
            return {
                "id": row.id,
                "project_id": row.project_id,
                "active_node_id": row.active_node,
            }

    async def create_session(
        self,
        session_id: str,
        *,
        project_id: str,
        active_node_id: Optional[str] = None,
        user_id: str = "",
    ) -> Dict[str, Any]:
        session_value = (session_id or "").strip()
        if not session_value:
            raise ValueError("session_id must not be empty")
        project_value = (project_id or "").strip() or self.store.default_project_id
        async with self.store.session() as db:
            row = await db.get(SessionRecord, session_value)
            if row is None:
                row = SessionRecord(id=session_value, user_id=user_id, project_id=project_value)
                db.add(row)
            row.project_id = project_value
            row.active_node = (active_node_id or "").strip() or None
        return {
            "id": session_value,
            "project_id": project_value,
            "active_node_id": row.active_node,
        }

    async def fetch_recent_messages(
        self, session_id: str, node_id: Optional[str], limit: int
    ) -> List[Dict[str, Any]]:
        """Newest ``limit`` messages for the session, returned oldest first.

        With a node id, messages tied to another node are excluded; node-less
        messages are shared by every node of the session.
        """
        query = select(MessageRecord).where(MessageRecord.session_id == session_id)
        if node_id:
            query = query.where(
                or_(MessageRecord.node_id == node_id, MessageRecord.node_id.is_(None))
            )
        query = query.order_by(MessageRecord.created_at.desc(), MessageRecord.id.desc())
        query = query.limit(max(1, int(limit)))
        async with self.store.session() as db:
            rows = (await db.execute(query)).scalars().all()
            return [_message_to_dict(row) for row in reversed(rows)]

    async def record_message(
        self,
        *,
        session_id: str,
        role: str,
        content: str,
        node_id: Optional[str] = None,
        message_type: str = "user_reply",
    ) -> Dict[str, Any]:
        session_value = (session_id or "").strip()
        if not session_value:
            raise ValueError("session_id must not be empty")
        role_value = (role or "").strip() or "user"
        async with self.store.session() as db:
            row = MessageRecord(
                session_id=session_value,
                node_id=(node_id or "").strip() or None,
                role=role_value,
                message_type=(message_type or "").strip() or "user_reply",
                content=content or "",
                created_at=_utc_now_naive(),
            )
            db.add(row)
            await db.flush()
            return _message_to_dict(row)

    async def fetch_latest_summary(self, session_id: str) -> Optional[Dict[str, Any]]:
        async with self.store.session() as db:
            row = (
                await db.execute(
                    select(SummaryRecord)
                    .where(SummaryRecord.session_id == session_id)
                    .order_by(SummaryRecord.created_at.desc(), SummaryRecord.id.desc())
                    .limit(1)
                )
            ).scalar_one_or_none()
            if row is None:
                return None
            return {
                "summary": parse_summary_payload(row.summary_json),
                "created_at": _iso(row.created_at),
            }

    async def record_summary(self, session_id: str, summary: Any) -> Dict[str, Any]:
        payload = summary if isinstance(summary, str) else json.dumps(summary, ensure_ascii=False)
        async with self.store.session() as db:
            row = SummaryRecord(
                session_id=session_id,
                summary_json=payload,
                created_at=_utc_now_naive(),
            )
            db.add(row)
            await db.flush()
            return {
                "summary": parse_summary_payload(row.summary_json),
                "created_at": _iso(row.created_at),
            }

    async def fetch_structure_index(self, project_id: str) -> Dict[str, Any]:
        payload = await self.store.get_latest_part(project_id, DerivedPart.PROJECT_GRAPH)
        return sanitize_graph(payload)

    async def fetch_node(self, project_id: str, node_id: str) -> Optional[Dict[str, Any]]:
        if not node_id:
            return None
        graph = await self.fetch_structure_index(project_id)
        for node in graph["nodes"]:
            if node["id"] == node_id:
                return {**node, "project_id": project_id}
        return None
