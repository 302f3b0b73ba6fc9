"""
Runtime state for working memory.

This module provides:
1) MultiIndex: one primary map plus keyed secondary indices.
2) WorkingMemoryCache: process-local mirror of composed snapshots, indexed
   by session, node and project for scoped lookups and bulk propagation.
3) RuntimeState: the owned registry with an explicit start/shutdown lifecycle.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Union

from memory.composer import compose
from memory.errors import MissingScope, SessionNotFound
from memory.schema import (
    DEFAULT_MESSAGE_WINDOW,
    MAX_HISTORY_LENGTH,
    derive_last_user_message,
    sanitize_config,
    sanitize_fetched_context,
    sanitize_last_user_message,
    sanitize_message,
    sanitize_messages,
    sanitize_node_context,
    sanitize_project_structure,
    sanitize_working_history,
    trim_messages,
)
from memory.scope import ResolvedScope, normalize_id

logger = logging.getLogger(__name__)

GLOBAL_NODE_KEY = "__global__"

Patch = Union[Dict[str, Any], Callable[[Dict[str, Any]], Optional[Dict[str, Any]]]]


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return max(minimum, int(raw))
    except (TypeError, ValueError):
        return default


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def build_key(session_id: Any, node_id: Any) -> str:
    sid = normalize_id(session_id)
    if not sid:
        raise MissingScope("sessionId is required to build working memory key")
    nid = normalize_id(node_id)
    return f"{sid}::{nid or GLOBAL_NODE_KEY}"


class MultiIndex:
    """
    Primary key -> value map with secondary indices.

    Each index maps one extracted attribute to the set of primary keys that
    share it. insert/remove keep both directions in step and drop a bucket
    once it is empty.
    """

    def __init__(self, extractors: Dict[str, Callable[[Any], Optional[str]]]) -> None:
        self._entries: Dict[str, Any] = {}
        self._extractors = dict(extractors)
        self._indices: Dict[str, Dict[str, Set[str]]] = {name: {} for name in extractors}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def get(self, key: str) -> Optional[Any]:
        return self._entries.get(key)

    def keys(self) -> List[str]:
        return list(self._entries.keys())

    def insert(self, key: str, value: Any) -> None:
        if key in self._entries:
            self.remove(key)
        self._entries[key] = value
        for name, extract in self._extractors.items():
            index_value = extract(value)
            if not index_value:
                continue
            self._indices[name].setdefault(index_value, set()).add(key)

    def remove(self, key: str) -> Optional[Any]:
        value = self._entries.pop(key, None)
        if value is None:
            return None
        for name, extract in self._extractors.items():
            index_value = extract(value)
            if not index_value:
                continue
            bucket = self._indices[name].get(index_value)
            if bucket is None:
                continue
            bucket.discard(key)
            if not bucket:
                del self._indices[name][index_value]
        return value

    def keys_for(self, index_name: str, index_value: Any) -> List[str]:
        bucket = self._indices[index_name].get(normalize_id(index_value))
        return sorted(bucket) if bucket else []

    def index_values(self, index_name: str) -> Set[str]:
        return set(self._indices[index_name].keys())

    def clear(self) -> None:
        self._entries.clear()
        for index in self._indices.values():
            index.clear()


def _session_field(name: str) -> Callable[[Dict[str, Any]], str]:
    def _extract(entry: Dict[str, Any]) -> str:
        return normalize_id((entry.get("session") or {}).get(name))

    return _extract


async def _no_node() -> None:
    return None


def _summary_text(summary: Any) -> Any:
    if isinstance(summary, dict) and "summary" in summary:
        return summary.get("summary")
    return summary


class WorkingMemoryCache:
    """
    In-process mirror of working-memory snapshots.

    Entries are keyed by ``session_id::node_id`` (``__global__`` for a
    node-less scope). Every mutation replaces the stored object instead of
    editing it, and readers always receive deep copies.
    """

    def __init__(
        self,
        sources: Any = None,
        *,
        message_window: Optional[int] = None,
        default_project_id: Optional[str] = None,
    ) -> None:
        self._sources = sources
        window = (
            message_window
            if message_window is not None
            else _env_int("WORKING_MEMORY_MESSAGE_WINDOW", DEFAULT_MESSAGE_WINDOW, minimum=1)
        )
        self._message_window = max(1, min(MAX_HISTORY_LENGTH, int(window)))
        self._default_project_id = (
            default_project_id
            if default_project_id is not None
            else os.getenv("DEFAULT_PROJECT_ID", "default_project")
        )
        self._index = MultiIndex(
            {
                "session": _session_field("session_id"),
                "node": _session_field("active_node_id"),
                "project": _session_field("project_id"),
            }
        )
        self._guard = asyncio.Lock()

    @property
    def message_window(self) -> int:
        return self._message_window

    def bind_sources(self, sources: Any) -> None:
        self._sources = sources

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def _prepare_entry(self, snapshot: Dict[str, Any]) -> Dict[str, Any]:
        entry = copy.deepcopy(snapshot)
        now = _utc_iso_now()
        entry.setdefault("last_user_input", "")
        entry.setdefault("created_at", now)
        entry.setdefault("updated_at", now)
        entry["messages"] = trim_messages(list(entry.get("messages") or []), self._message_window)
        return entry

    async def register(self, snapshot: Dict[str, Any]) -> str:
        """Insert (or replace) a snapshot; its session block decides the key."""
        session = snapshot.get("session") or {}
        key = build_key(session.get("session_id"), session.get("active_node_id"))
        entry = self._prepare_entry(snapshot)
        async with self._guard:
            self._index.insert(key, entry)
        return key

    async def get(self, session_id: Any, node_id: Any = None) -> Optional[Dict[str, Any]]:
        try:
            key = build_key(session_id, node_id)
        except MissingScope:
            return None
        async with self._guard:
            entry = self._index.get(key)
        return copy.deepcopy(entry) if entry is not None else None

    async def init(self, session_id: Any, node_id: Any = None) -> Dict[str, Any]:
        """
        Cold-start a working memory from the collaborator sources.

        Any existing entry for the same scope is replaced.
        """
        if self._sources is None:
            raise RuntimeError("Working memory sources are not configured")
        sid = normalize_id(session_id)
        if not sid:
            raise MissingScope("sessionId is required to initialise working memory")

        record = await self._sources.fetch_session(sid)
        if not record:
            raise SessionNotFound(sid)
        sid = normalize_id(record.get("id")) or sid
        project_id = normalize_id(record.get("project_id")) or normalize_id(
            self._default_project_id
        )
        target_node = normalize_id(node_id) or normalize_id(record.get("active_node_id"))

        structure, current_node, messages, summary = await asyncio.gather(
            self._sources.fetch_structure_index(project_id),
            self._sources.fetch_node(project_id, target_node) if target_node else _no_node(),
            self._sources.fetch_recent_messages(sid, target_node or None, self._message_window),
            self._sources.fetch_latest_summary(sid),
        )

        scope = ResolvedScope(session_id=sid, project_id=project_id, node_id=target_node)
        snapshot = compose(
            {
                "project_structure": structure,
                "node_context": current_node,
                "messages": messages,
                "working_history": _summary_text(summary),
            },
            scope,
            message_window=self._message_window,
        )
        snapshot["work_history_summary"] = copy.deepcopy(summary)

        key = build_key(sid, target_node)
        entry = self._prepare_entry(snapshot)
        async with self._guard:
            self._index.remove(key)
            self._index.insert(key, entry)
        logger.info(
            "Initialised working memory %s (project=%s, %d messages)",
            key,
            project_id,
            len(entry["messages"]),
        )
        return copy.deepcopy(entry)

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def _merge_patch(self, existing: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
        merged = copy.deepcopy(existing)
        window = self._message_window

        for key in ("structure_index", "project_structure"):
            if key in patch:
                merged["project_structure"] = sanitize_project_structure(patch[key])

        for key in ("current_node", "node_context"):
            if key in patch:
                merged["node_context"] = sanitize_node_context(patch[key])

        for key in ("recent_messages", "messages"):
            if key in patch:
                merged["messages"] = sanitize_messages(patch[key], window)
                merged["last_user_message"] = derive_last_user_message(merged["messages"])

        for key in ("append_recent_messages", "append_messages"):
            appended = patch.get(key)
            if not appended:
                continue
            batch = [item for item in (sanitize_message(entry) for entry in appended) if item]
            merged["messages"] = trim_messages(list(merged["messages"]) + batch, window)
            user_batch = [item for item in batch if item["role"] == "user"]
            if user_batch:
                # newest appended user message wins, even when its content is empty
                merged["last_user_message"] = user_batch[-1]["content"].strip()

        if "work_history_summary" in patch:
            merged["work_history_summary"] = copy.deepcopy(patch["work_history_summary"])
            merged["working_history"] = sanitize_working_history(
                _summary_text(patch["work_history_summary"])
            )
        if "working_history" in patch:
            merged["working_history"] = sanitize_working_history(patch["working_history"])

        if patch.get("clear_context_data") or patch.get("clear_fetched_context"):
            merged["fetched_context"] = {}
        for key in ("context_data", "fetched_context"):
            if key in patch:
                base = dict(merged.get("fetched_context") or {})
                base.update(sanitize_fetched_context(patch[key]))
                merged["fetched_context"] = base

        if "config" in patch and isinstance(patch["config"], dict):
            merged["config"] = sanitize_config({**merged.get("config", {}), **patch["config"]})

        if "last_user_input" in patch:
            value = patch["last_user_input"]
            merged["last_user_input"] = "" if value is None else str(value)
        if "last_user_message" in patch:
            merged["last_user_message"] = sanitize_last_user_message(
                patch["last_user_message"], merged["messages"]
            )

        if patch.get("reset_last_user_input") or patch.get("clear_last_user_input"):
            merged["last_user_input"] = ""
        if patch.get("clear_messages"):
            merged["messages"] = []
            merged["last_user_message"] = ""
        if patch.get("clear_working_history"):
            merged["working_history"] = ""
            merged["work_history_summary"] = None

        merged["updated_at"] = _utc_iso_now()
        return merged

    def _update_locked(self, key: str, patch: Patch) -> Optional[Dict[str, Any]]:
        existing = self._index.get(key)
        if existing is None:
            return None
        resolved = patch(copy.deepcopy(existing)) if callable(patch) else patch
        if not isinstance(resolved, dict):
            resolved = {}
        merged = self._merge_patch(existing, resolved)
        self._index.insert(key, merged)
        return merged

    async def update_patch(
        self, session_id: Any, node_id: Any, patch: Patch
    ) -> Optional[Dict[str, Any]]:
        """Apply a merge-patch to one scope; None when the scope is not cached."""
        try:
            key = build_key(session_id, node_id)
        except MissingScope:
            return None
        async with self._guard:
            merged = self._update_locked(key, patch)
        return copy.deepcopy(merged) if merged is not None else None

    async def _update_keys(self, index_name: str, index_value: Any, patch: Patch) -> int:
        async with self._guard:
            keys = self._index.keys_for(index_name, index_value)
        updated = 0
        for key in keys:
            async with self._guard:
                if self._update_locked(key, patch) is not None:
                    updated += 1
        return updated

    async def update_by_node(self, node_id: Any, patch: Patch) -> int:
        return await self._update_keys("node", node_id, patch)

    async def update_by_session(self, session_id: Any, patch: Patch) -> int:
        return await self._update_keys("session", session_id, patch)

    async def update_by_project(self, project_id: Any, patch: Patch) -> int:
        return await self._update_keys("project", project_id, patch)

    async def refresh_structure_for_project(self, project_id: Any) -> Optional[Dict[str, Any]]:
        """Fetch the structure once and push it into every entry of the project."""
        pid = normalize_id(project_id)
        async with self._guard:
            keys = self._index.keys_for("project", pid)
        if not keys or self._sources is None:
            return None
        structure = await self._sources.fetch_structure_index(pid)
        sanitized = sanitize_project_structure(structure)
        await self.update_by_project(pid, {"project_structure": sanitized})
        return sanitized

    @staticmethod
    def _message_patch(message: Dict[str, Any]) -> Dict[str, Any]:
        return {"append_messages": [message]}

    @staticmethod
    def _normalize_message(message: Any) -> Optional[Dict[str, Any]]:
        normalized = sanitize_message(message)
        if normalized is None:
            return None
        if not normalized["created_at"]:
            normalized["created_at"] = _utc_iso_now()
        return normalized

    async def append_message(
        self, session_id: Any, node_id: Any, message: Any
    ) -> Optional[Dict[str, Any]]:
        normalized = self._normalize_message(message)
        if normalized is None:
            return None
        return await self.update_patch(session_id, node_id, self._message_patch(normalized))

    async def append_message_to_session(self, session_id: Any, message: Any) -> int:
        normalized = self._normalize_message(message)
        if normalized is None:
            return 0
        return await self.update_by_session(session_id, self._message_patch(normalized))

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------

    async def clear(self, session_id: Any = None, node_id: Any = None) -> int:
        """
        Remove cached entries and return how many were dropped.

        Both blank clears everything; both set clears one scope; only a
        session or only a node clears every entry indexed under it.
        """
        sid = normalize_id(session_id)
        nid = normalize_id(node_id)
        async with self._guard:
            if not sid and not nid:
                removed = len(self._index)
                self._index.clear()
            elif sid and nid:
                removed = int(self._index.remove(build_key(sid, nid)) is not None)
            elif sid:
                removed = self._remove_keys_locked(self._index.keys_for("session", sid))
            else:
                removed = self._remove_keys_locked(self._index.keys_for("node", nid))
        if removed:
            logger.info("Cleared %d working memory entries (session=%r, node=%r)", removed, sid, nid)
        return removed

    async def clear_project(self, project_id: Any) -> int:
        async with self._guard:
            return self._remove_keys_locked(self._index.keys_for("project", project_id))

    def _remove_keys_locked(self, keys: List[str]) -> int:
        removed = 0
        for key in keys:
            if self._index.remove(key) is not None:
                removed += 1
        return removed

    async def teardown(self) -> None:
        async with self._guard:
            self._index.clear()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    async def serialize(self, session_id: Any, node_id: Any = None) -> Optional[str]:
        entry = await self.get(session_id, node_id)
        if entry is None:
            return None
        return json.dumps(entry, indent=2, ensure_ascii=False)

    async def status(self) -> Dict[str, Any]:
        async with self._guard:
            return {
                "entries": len(self._index),
                "sessions": len(self._index.index_values("session")),
                "nodes": len(self._index.index_values("node")),
                "projects": len(self._index.index_values("project")),
                "message_window": self._message_window,
            }


class RuntimeState:
    def __init__(
        self,
        sources: Any = None,
        *,
        message_window: Optional[int] = None,
        default_project_id: Optional[str] = None,
    ) -> None:
        self.working_memory = WorkingMemoryCache(
            sources,
            message_window=message_window,
            default_project_id=default_project_id,
        )
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    async def ensure_started(self, sources: Any = None) -> None:
        if sources is not None:
            self.working_memory.bind_sources(sources)
        self._started = True

    async def shutdown(self) -> None:
        await self.working_memory.teardown()
        self._started = False
