"""
Working Memory API

Persistent snapshots live under /working-memory; the in-process cache of
live sessions lives under /working-memory/runtime.
"""

from typing import Any, NoReturn

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from memory.engine import WorkingMemoryEngine
from memory.errors import InvalidPart, MissingScope, SessionNotFound
from runtime_state import WorkingMemoryCache

router = APIRouter(prefix="/working-memory", tags=["working-memory"])


class PartWrite(BaseModel):
    session_id: str | None = None
    project_id: str | None = None
    node_id: str | None = None
    value: Any = None


class RuntimeInit(BaseModel):
    session_id: str
    node_id: str | None = None


class RuntimePatch(BaseModel):
    session_id: str
    node_id: str | None = None
    patch: dict[str, Any] = Field(default_factory=dict)


class RuntimeMessage(BaseModel):
    session_id: str
    node_id: str | None = None
    role: str = "user"
    content: str
    message_type: str = "user_reply"
    persist: bool = True
    broadcast: bool = False


def get_engine(request: Request) -> WorkingMemoryEngine:
    return request.app.state.working_memory_engine


def get_cache(request: Request) -> WorkingMemoryCache:
    return request.app.state.runtime.working_memory


def _raise_http(exc: Exception) -> NoReturn:
    if isinstance(exc, SessionNotFound):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    raise HTTPException(status_code=422, detail=str(exc)) from exc


def _runtime_miss(session_id: str, node_id: str | None) -> NoReturn:
    raise HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"No working memory cached for session '{session_id}' node '{node_id or ''}'",
    )


@router.get("")
async def get_working_memory(
    session_id: str | None = Query(None),
    project_id: str | None = Query(None),
    node_id: str | None = Query(None),
    engine: WorkingMemoryEngine = Depends(get_engine),
):
    """Composed snapshot from persistent storage (primary rows over fallback rows)."""
    try:
        result = await engine.load(session_id, project_id, node_id)
    except MissingScope as e:
        _raise_http(e)
    return {
        "scope": result.scope.describe(),
        "snapshot": result.snapshot,
    }


@router.put("/{part}")
async def put_working_memory_part(
    part: str,
    body: PartWrite,
    engine: WorkingMemoryEngine = Depends(get_engine),
):
    try:
        sanitized = await engine.save_part(
            part,
            body.value,
            session_id=body.session_id,
            project_id=body.project_id,
            node_id=body.node_id,
        )
    except (MissingScope, InvalidPart) as e:
        _raise_http(e)
    return {"part": part, "value": sanitized}


@router.post("/runtime/init")
async def init_runtime(
    body: RuntimeInit,
    cache: WorkingMemoryCache = Depends(get_cache),
):
    try:
        return await cache.init(body.session_id, body.node_id)
    except (MissingScope, SessionNotFound) as e:
        _raise_http(e)


@router.get("/runtime")
async def get_runtime(
    session_id: str = Query(...),
    node_id: str | None = Query(None),
    cache: WorkingMemoryCache = Depends(get_cache),
):
    snapshot = await cache.get(session_id, node_id)
    if snapshot is None:
        _runtime_miss(session_id, node_id)
    return snapshot


@router.patch("/runtime")
async def patch_runtime(
    body: RuntimePatch,
    cache: WorkingMemoryCache = Depends(get_cache),
):
    snapshot = await cache.update_patch(body.session_id, body.node_id, body.patch)
    if snapshot is None:
        _runtime_miss(body.session_id, body.node_id)
    return snapshot


@router.post("/runtime/messages")
async def append_runtime_message(
    body: RuntimeMessage,
    request: Request,
    cache: WorkingMemoryCache = Depends(get_cache),
):
    """
    Record a chat message and push it into cached working memory.

    With broadcast, every cached entry of the session receives the message;
    otherwise only the (session, node) entry does.
    """
    message: dict[str, Any] = {
        "session_id": body.session_id,
        "node_id": body.node_id,
        "role": body.role,
        "content": body.content,
    }
    if body.persist:
        sources = request.app.state.working_memory_sources
        try:
            message = await sources.record_message(
                session_id=body.session_id,
                role=body.role,
                content=body.content,
                node_id=body.node_id,
                message_type=body.message_type,
            )
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))

    if body.broadcast:
        updated = await cache.append_message_to_session(body.session_id, message)
        return {"updated": updated, "message": message}

    snapshot = await cache.append_message(body.session_id, body.node_id, message)
    if snapshot is None:
        _runtime_miss(body.session_id, body.node_id)
    return {"updated": 1, "message": message, "snapshot": snapshot}


@router.delete("/runtime")
async def clear_runtime(
    session_id: str | None = Query(None),
    node_id: str | None = Query(None),
    cache: WorkingMemoryCache = Depends(get_cache),
):
    removed = await cache.clear(session_id, node_id)
    return {"removed": removed}
