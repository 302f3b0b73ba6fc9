"""
Canonical schema for working-memory parts.

Every catalog part has one sanitizer. Sanitizers are pure (no I/O) and
idempotent: sanitizing an already-sanitized value returns an equal value.
The two derived parts (project_graph, elements_graph) exist only as the
physical split of project_structure and sanitize as a single graph.
"""

from __future__ import annotations

import copy
import json
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from .errors import InvalidPart

MAX_HISTORY_LENGTH = 200
MAX_AUTO_REFRESH_INTERVAL = 600
DEFAULT_MESSAGE_WINDOW = 50
DEFAULT_EDGE_TYPE = "LINKS_TO"

DEFAULT_CONFIG: Dict[str, Any] = {
    "history_length": 20,
    "include_project_structure": True,
    "include_context": True,
    "include_working_history": True,
    "auto_refresh_interval": 0,
}

_PART_ALIASES = {"last_message": "last_user_message"}
_FALSE_STRINGS = {"", "0", "false", "no", "off", "disabled"}


class WorkingMemoryPart(str, Enum):
    SESSION = "session"
    PROJECT_STRUCTURE = "project_structure"
    NODE_CONTEXT = "node_context"
    FETCHED_CONTEXT = "fetched_context"
    WORKING_HISTORY = "working_history"
    MESSAGES = "messages"
    LAST_USER_MESSAGE = "last_user_message"
    CONFIG = "config"

    @classmethod
    def parse(cls, name: Any) -> "WorkingMemoryPart":
        if isinstance(name, cls):
            return name
        key = _normalize_part_name(name)
        try:
            return cls(key)
        except ValueError:
            raise InvalidPart(name) from None


class DerivedPart(str, Enum):
    """Storage-only split of project_structure."""

    PROJECT_GRAPH = "project_graph"
    ELEMENTS_GRAPH = "elements_graph"

    @classmethod
    def parse(cls, name: Any) -> "DerivedPart":
        if isinstance(name, cls):
            return name
        try:
            return cls(_normalize_part_name(name))
        except ValueError:
            raise InvalidPart(name) from None


StoragePart = Union[WorkingMemoryPart, DerivedPart]


def _normalize_part_name(name: Any) -> str:
    if isinstance(name, Enum):
        name = name.value
    if not isinstance(name, str):
        return ""
    key = name.strip().lower()
    return _PART_ALIASES.get(key, key)


def parse_storage_part(name: Any) -> StoragePart:
    """Resolve a catalog or derived part name; unknown names raise InvalidPart."""
    if isinstance(name, (WorkingMemoryPart, DerivedPart)):
        return name
    key = _normalize_part_name(name)
    for enum_cls in (WorkingMemoryPart, DerivedPart):
        try:
            return enum_cls(key)
        except ValueError:
            continue
    raise InvalidPart(name)


# =============================================================================
# Primitive helpers
# =============================================================================


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _ensure_dict(value: Any) -> Dict[str, Any]:
    if isinstance(value, dict):
        return value
    return {}


def _safe_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _parse_int(value: Any, fallback: int, minimum: int, maximum: int) -> int:
    parsed: Optional[int] = None
    if isinstance(value, bool):
        parsed = None
    elif isinstance(value, int):
        parsed = value
    elif isinstance(value, float) and math.isfinite(value):
        parsed = int(value)
    elif isinstance(value, str):
        raw = value.strip()
        try:
            parsed = int(raw)
        except ValueError:
            try:
                parsed = int(float(raw))
            except (ValueError, OverflowError):
                parsed = None
    if parsed is None:
        parsed = fallback
    return max(minimum, min(maximum, parsed))


def _parse_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() not in _FALSE_STRINGS
    return bool(value)


def _timestamp_value(raw: str) -> float:
    if not raw:
        return 0.0
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return 0.0
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def clamp_history_length(value: Any) -> int:
    return _parse_int(value, DEFAULT_CONFIG["history_length"], 1, MAX_HISTORY_LENGTH)


# =============================================================================
# Graphs / project structure
# =============================================================================


def empty_graph() -> Dict[str, List[Dict[str, str]]]:
    return {"nodes": [], "edges": []}


def sanitize_graph(graph: Any) -> Dict[str, List[Dict[str, str]]]:
    source = _ensure_dict(graph)
    nodes: List[Dict[str, str]] = []
    seen_nodes = set()
    for node in source.get("nodes") or []:
        if not isinstance(node, dict):
            continue
        node_id = _safe_str(node.get("id"))
        if not node_id or node_id in seen_nodes:
            continue
        seen_nodes.add(node_id)
        nodes.append(
            {
                "id": node_id,
                "label": _safe_str(node.get("label") or node.get("title")),
                "type": _safe_str(node.get("type")),
            }
        )

    edges: List[Dict[str, str]] = []
    seen_edges = set()
    for edge in source.get("edges") or []:
        if not isinstance(edge, dict):
            continue
        source_id = _safe_str(edge.get("from"))
        target_id = _safe_str(edge.get("to"))
        if not source_id or not target_id:
            continue
        edge_type = _safe_str(edge.get("type")) or DEFAULT_EDGE_TYPE
        edge_key = (source_id, target_id, edge_type)
        if edge_key in seen_edges:
            continue
        seen_edges.add(edge_key)
        edges.append({"from": source_id, "to": target_id, "type": edge_type})
    return {"nodes": nodes, "edges": edges}


def sanitize_project_structure(structure: Any) -> Dict[str, Any]:
    """Accept either the split shape or a bare graph (treated as project_graph)."""
    if not isinstance(structure, dict):
        return {"project_graph": empty_graph(), "elements_graph": empty_graph()}
    if "project_graph" in structure or "elements_graph" in structure:
        return {
            "project_graph": sanitize_graph(structure.get("project_graph")),
            "elements_graph": sanitize_graph(structure.get("elements_graph")),
        }
    return {"project_graph": sanitize_graph(structure), "elements_graph": empty_graph()}


# =============================================================================
# Node context
# =============================================================================


def sanitize_custom_fields(entries: Any) -> List[Dict[str, str]]:
    if not isinstance(entries, list):
        return []
    result: List[Dict[str, str]] = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        key = _safe_str(entry.get("key"))
        value = _safe_str(entry.get("value"))
        if not key and not value:
            continue
        result.append({"key": key, "value": value})
    return result


def sanitize_linked_elements(entries: Any) -> List[Dict[str, str]]:
    if not isinstance(entries, list):
        return []
    result: List[Dict[str, str]] = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        element_id = _safe_str(entry.get("id"))
        if not element_id:
            continue
        result.append(
            {
                "id": element_id,
                "label": _safe_str(entry.get("label")) or element_id,
                "type": _safe_str(entry.get("type")),
            }
        )
    return result


@dataclass
class NodeMeta:
    """Typed view of node_context.meta.

    Known fields are sanitized; anything else rides along in ``extra`` so
    caller-supplied keys are never dropped.
    """

    notes: Optional[str] = None
    custom_fields: Optional[List[Dict[str, str]]] = None
    linked_elements: Optional[List[Dict[str, str]]] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_raw(
        cls, meta: Any, overrides: Optional[Dict[str, Any]] = None
    ) -> "NodeMeta":
        source = dict(_ensure_dict(meta))
        for key, value in (overrides or {}).items():
            if value is not None:
                source[key] = value

        notes = source.pop("notes", None)
        custom_fields = source.pop("customFields", None)
        linked_elements = source.pop("linked_elements", None)
        return cls(
            notes=None if notes is None else _safe_str(notes),
            custom_fields=None if custom_fields is None else sanitize_custom_fields(custom_fields),
            linked_elements=None
            if linked_elements is None
            else sanitize_linked_elements(linked_elements),
            extra=copy.deepcopy(source),
        )

    def to_dict(self) -> Dict[str, Any]:
        payload = copy.deepcopy(self.extra)
        if self.notes is not None:
            payload["notes"] = self.notes
        if self.custom_fields is not None:
            payload["customFields"] = [dict(item) for item in self.custom_fields]
        if self.linked_elements is not None:
            payload["linked_elements"] = [dict(item) for item in self.linked_elements]
        return payload


def sanitize_node_context(context: Any) -> Dict[str, Any]:
    source = _ensure_dict(context)
    overrides = {
        "notes": source.get("notes"),
        "customFields": source.get("customFields"),
        "linked_elements": source.get("linked_elements"),
    }
    return {
        "id": _safe_str(source.get("id") or source.get("node_id")),
        "label": _safe_str(source.get("label") or source.get("title")),
        "type": _safe_str(source.get("type") or source.get("builder")),
        "meta": NodeMeta.from_raw(source.get("meta"), overrides).to_dict(),
    }


# =============================================================================
# Scalar / opaque parts
# =============================================================================


def sanitize_session(session: Any) -> Dict[str, str]:
    source = _ensure_dict(session)
    timestamp = source.get("timestamp")
    return {
        "session_id": _safe_str(source.get("session_id")),
        "project_id": _safe_str(source.get("project_id")),
        "active_node_id": _safe_str(source.get("active_node_id")),
        "timestamp": timestamp.strip()
        if isinstance(timestamp, str) and timestamp.strip()
        else _utc_iso_now(),
    }


def sanitize_fetched_context(context: Any) -> Dict[str, Any]:
    return copy.deepcopy(_ensure_dict(context))


def sanitize_working_history(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, dict) and isinstance(value.get("text"), str):
        return value["text"]
    if isinstance(value, (dict, list)):
        try:
            return json.dumps(value, ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            return ""
    return ""


def sanitize_config(config: Any) -> Dict[str, Any]:
    source = _ensure_dict(config)
    return {
        "history_length": clamp_history_length(source.get("history_length")),
        "include_project_structure": _parse_bool(
            source.get("include_project_structure"),
            DEFAULT_CONFIG["include_project_structure"],
        ),
        "include_context": _parse_bool(
            source.get("include_context"), DEFAULT_CONFIG["include_context"]
        ),
        "include_working_history": _parse_bool(
            source.get("include_working_history"),
            DEFAULT_CONFIG["include_working_history"],
        ),
        "auto_refresh_interval": _parse_int(
            source.get("auto_refresh_interval"),
            DEFAULT_CONFIG["auto_refresh_interval"],
            0,
            MAX_AUTO_REFRESH_INTERVAL,
        ),
    }


# =============================================================================
# Messages
# =============================================================================


def sanitize_message(message: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(message, dict):
        return None
    created_at = message.get("created_at")
    if isinstance(created_at, datetime):
        created_value = created_at.isoformat()
    elif isinstance(created_at, str):
        created_value = created_at.strip()
    else:
        created_value = ""
    node_id = _safe_str(message.get("node_id"))

    payload: Dict[str, Any] = {}
    message_id = _safe_str(message.get("id"))
    if message_id:
        payload["id"] = message_id
    payload.update(
        {
            "session_id": _safe_str(message.get("session_id")),
            "node_id": node_id or None,
            "role": _safe_str(message.get("role")) or "user",
            "content": "" if message.get("content") is None else str(message.get("content")),
            "created_at": created_value,
        }
    )
    return payload


def trim_messages(messages: List[Dict[str, Any]], limit: int) -> List[Dict[str, Any]]:
    if len(messages) <= limit:
        return messages
    return messages[len(messages) - limit :]


def sanitize_messages(messages: Any, history_length: Any = None) -> List[Dict[str, Any]]:
    limit = clamp_history_length(history_length)
    if not isinstance(messages, list):
        return []
    cleaned = [item for item in (sanitize_message(entry) for entry in messages) if item]
    ordered = sorted(cleaned, key=lambda item: _timestamp_value(item["created_at"]))
    return trim_messages(ordered, limit)


def derive_last_user_message(messages: Any) -> str:
    if not isinstance(messages, list):
        return ""
    for entry in reversed(messages):
        if not isinstance(entry, dict):
            continue
        if entry.get("role") == "user" and entry.get("content"):
            return str(entry["content"]).strip()
    return ""


def sanitize_last_user_message(value: Any, messages: Any = None) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return derive_last_user_message(messages or [])


# =============================================================================
# Registry
# =============================================================================


_SIMPLE_SANITIZERS: Dict[WorkingMemoryPart, Callable[[Any], Any]] = {
    WorkingMemoryPart.SESSION: sanitize_session,
    WorkingMemoryPart.PROJECT_STRUCTURE: sanitize_project_structure,
    WorkingMemoryPart.NODE_CONTEXT: sanitize_node_context,
    WorkingMemoryPart.FETCHED_CONTEXT: sanitize_fetched_context,
    WorkingMemoryPart.WORKING_HISTORY: sanitize_working_history,
    WorkingMemoryPart.CONFIG: sanitize_config,
}


def sanitize(
    part: Any,
    value: Any,
    *,
    history_length: Any = None,
    messages: Any = None,
) -> Any:
    """Sanitize one part payload.

    ``history_length`` sets the trim window for ``messages``; ``messages``
    is the already-sanitized list used to derive ``last_user_message``.
    """
    resolved = parse_storage_part(part)
    if isinstance(resolved, DerivedPart):
        return sanitize_graph(value)
    if resolved is WorkingMemoryPart.MESSAGES:
        return sanitize_messages(value, history_length)
    if resolved is WorkingMemoryPart.LAST_USER_MESSAGE:
        return sanitize_last_user_message(value, messages)
    return _SIMPLE_SANITIZERS[resolved](value)


def compose_default_snapshot() -> Dict[str, Any]:
    """All-defaults snapshot used when a scope has no stored parts."""
    config = sanitize_config(DEFAULT_CONFIG)
    return {
        "session": sanitize_session({}),
        "project_structure": sanitize_project_structure(None),
        "node_context": sanitize_node_context(None),
        "fetched_context": {},
        "working_history": "",
        "messages": [],
        "last_user_message": "",
        "config": config,
    }
