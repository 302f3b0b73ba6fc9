"""Compose a schema-complete working-memory snapshot from a part map."""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from .schema import (
    DerivedPart,
    WorkingMemoryPart,
    compose_default_snapshot,
    empty_graph,
    parse_storage_part,
    sanitize,
    sanitize_graph,
)
from .scope import ResolvedScope

_INDEPENDENT_PARTS = (
    WorkingMemoryPart.SESSION,
    WorkingMemoryPart.PROJECT_STRUCTURE,
    WorkingMemoryPart.NODE_CONTEXT,
    WorkingMemoryPart.FETCHED_CONTEXT,
    WorkingMemoryPart.WORKING_HISTORY,
)


def merge_derived_structure(parts: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
    """Rebuild project_structure from its derived rows, if any are present."""
    has_project = DerivedPart.PROJECT_GRAPH.value in parts
    has_elements = DerivedPart.ELEMENTS_GRAPH.value in parts
    if not has_project and not has_elements:
        return None
    return {
        "project_graph": sanitize_graph(parts.get(DerivedPart.PROJECT_GRAPH.value))
        if has_project
        else empty_graph(),
        "elements_graph": sanitize_graph(parts.get(DerivedPart.ELEMENTS_GRAPH.value))
        if has_elements
        else empty_graph(),
    }


def stamp_session(snapshot: Dict[str, Any], scope: ResolvedScope) -> Dict[str, Any]:
    session = dict(snapshot.get("session") or {})
    session["session_id"] = scope.session_id
    session["project_id"] = scope.project_id
    session["active_node_id"] = scope.node_id
    snapshot["session"] = sanitize(WorkingMemoryPart.SESSION, session)
    return snapshot


def compose(
    parts: Optional[Mapping[Any, Any]] = None,
    scope: Optional[ResolvedScope] = None,
    *,
    message_window: Optional[int] = None,
) -> Dict[str, Any]:
    """Reduce raw part values through the schema registry.

    Order matters: config decides the message window, and last_user_message
    falls back to the sanitized messages. Missing or ``None`` parts take
    their schema default. Unknown part names raise InvalidPart.
    """
    raw: Dict[str, Any] = {}
    for name, value in (parts or {}).items():
        raw[parse_storage_part(name).value] = value

    derived_structure = merge_derived_structure(raw)
    if derived_structure is not None:
        raw[WorkingMemoryPart.PROJECT_STRUCTURE.value] = derived_structure

    snapshot = compose_default_snapshot()

    def _present(part: WorkingMemoryPart) -> bool:
        return raw.get(part.value) is not None

    if _present(WorkingMemoryPart.CONFIG):
        snapshot["config"] = sanitize(WorkingMemoryPart.CONFIG, raw["config"])

    window = message_window if message_window is not None else snapshot["config"]["history_length"]
    if _present(WorkingMemoryPart.MESSAGES):
        snapshot["messages"] = sanitize(
            WorkingMemoryPart.MESSAGES, raw["messages"], history_length=window
        )

    snapshot["last_user_message"] = sanitize(
        WorkingMemoryPart.LAST_USER_MESSAGE,
        raw.get(WorkingMemoryPart.LAST_USER_MESSAGE.value),
        messages=snapshot["messages"],
    )

    for part in _INDEPENDENT_PARTS:
        if _present(part):
            snapshot[part.value] = sanitize(part, raw[part.value])

    if scope is not None:
        stamp_session(snapshot, scope)
    return snapshot
