"""
Scope resolution for working-memory requests.

A request carries some subset of (session_id, project_id, node_id). Two
shapes are valid:

- session scope: session_id is set; project/node only locate a fallback
  record that is merged underneath the session rows.
- fallback scope: session_id is blank and both project_id and node_id are set.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from .errors import MissingScope


def normalize_id(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


@dataclass(frozen=True)
class ResolvedScope:
    session_id: str
    project_id: str
    node_id: str

    @property
    def is_session_scope(self) -> bool:
        return bool(self.session_id)

    @property
    def fallback_pair(self) -> Optional[Tuple[str, str]]:
        """(project_id, node_id) addressing the shared fallback rows, if known."""
        if self.project_id and self.node_id:
            return self.project_id, self.node_id
        return None

    def with_project(self, project_id: str) -> "ResolvedScope":
        return ResolvedScope(self.session_id, normalize_id(project_id), self.node_id)

    def describe(self) -> Dict[str, Any]:
        if self.is_session_scope:
            primary = {"session_id": self.session_id}
        else:
            primary = {
                "session_id": "",
                "project_id": self.project_id,
                "node_id": self.node_id,
            }
        fallback = None
        if self.is_session_scope and self.fallback_pair is not None:
            fallback = {
                "session_id": "",
                "project_id": self.project_id,
                "node_id": self.node_id,
            }
        return {
            "kind": "session" if self.is_session_scope else "project_node",
            "primary": primary,
            "fallback": fallback,
        }


def resolve_scope(
    session_id: Any = None,
    project_id: Any = None,
    node_id: Any = None,
    *,
    default_project_id: Optional[str] = None,
) -> ResolvedScope:
    """Turn a partial identifier triple into a canonical lookup/write scope.

    Raises MissingScope when there is no session and the project/node pair
    is incomplete. The default project is only applied to a bare session id.
    """
    sid = normalize_id(session_id)
    pid = normalize_id(project_id)
    nid = normalize_id(node_id)

    if sid:
        if not pid and not nid and default_project_id:
            pid = normalize_id(default_project_id)
        return ResolvedScope(session_id=sid, project_id=pid, node_id=nid)

    if pid and nid:
        return ResolvedScope(session_id="", project_id=pid, node_id=nid)

    raise MissingScope(
        "sessionId is required unless both projectId and nodeId are provided"
    )
