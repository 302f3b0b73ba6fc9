"""Store + cache facade: persist a part, then push it into cached snapshots."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from db.part_store import LoadResult, WorkingMemoryStore
from runtime_state import WorkingMemoryCache

from .schema import DerivedPart, WorkingMemoryPart, parse_storage_part
from .scope import ResolvedScope

logger = logging.getLogger(__name__)


class WorkingMemoryEngine:
    def __init__(self, store: WorkingMemoryStore, cache: WorkingMemoryCache) -> None:
        self.store = store
        self.cache = cache

    def resolve(
        self, session_id: Any = None, project_id: Any = None, node_id: Any = None
    ) -> ResolvedScope:
        return self.store.resolve(session_id, project_id, node_id)

    async def load(
        self, session_id: Any = None, project_id: Any = None, node_id: Any = None
    ) -> LoadResult:
        return await self.store.load(self.resolve(session_id, project_id, node_id))

    async def load_and_register(
        self, session_id: Any = None, project_id: Any = None, node_id: Any = None
    ) -> Dict[str, Any]:
        """Load a session-scoped snapshot from storage and cache it."""
        result = await self.load(session_id, project_id, node_id)
        if not result.scope.is_session_scope:
            return result.snapshot
        key = await self.cache.register(result.snapshot)
        logger.debug("Registered stored working memory %s", key)
        return await self.cache.get(result.scope.session_id, result.scope.node_id)

    async def save_part(
        self,
        part: Any,
        value: Any,
        *,
        session_id: Any = None,
        project_id: Any = None,
        node_id: Any = None,
    ) -> Any:
        scope = self.resolve(session_id, project_id, node_id)
        resolved = parse_storage_part(part)

        history_length = None
        messages = None
        if resolved in (WorkingMemoryPart.MESSAGES, WorkingMemoryPart.LAST_USER_MESSAGE):
            current = (await self.store.load(scope)).snapshot
            history_length = current["config"]["history_length"]
            messages = current["messages"]

        sanitized = await self.store.save(
            scope, resolved, value, history_length=history_length, messages=messages
        )
        await self._propagate(scope, resolved, sanitized)
        return sanitized

    async def _propagate(self, scope: ResolvedScope, part: Any, sanitized: Any) -> int:
        if part is WorkingMemoryPart.PROJECT_STRUCTURE or isinstance(part, DerivedPart):
            if not scope.project_id:
                return 0
            structure = (await self.store.load(scope)).snapshot["project_structure"]
            return await self.cache.update_by_project(
                scope.project_id, {"project_structure": structure}
            )

        if part is WorkingMemoryPart.NODE_CONTEXT:
            if not scope.node_id:
                return 0
            return await self.cache.update_by_node(scope.node_id, {"node_context": sanitized})

        patch = self._patch_for(part, sanitized)
        if patch is None or not scope.is_session_scope:
            return 0
        if scope.node_id:
            updated = await self.cache.update_patch(scope.session_id, scope.node_id, patch)
            return int(updated is not None)
        return await self.cache.update_by_session(scope.session_id, patch)

    @staticmethod
    def _patch_for(part: WorkingMemoryPart, sanitized: Any) -> Optional[Dict[str, Any]]:
        if part is WorkingMemoryPart.FETCHED_CONTEXT:
            return {"clear_fetched_context": True, "fetched_context": sanitized}
        if part is WorkingMemoryPart.SESSION:
            return None
        return {part.value: sanitized}
