from datetime import datetime, timezone
from typing import Any, Dict
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from api import working_memory_router
from db import SQLWorkingMemorySources, close_part_store, get_part_store
from memory.engine import WorkingMemoryEngine
from runtime_state import RuntimeState


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle."""
    print("Working Memory API starting...")

    try:
        store = get_part_store()
        await store.init_db()
        sources = SQLWorkingMemorySources(store)
        runtime = RuntimeState(default_project_id=store.default_project_id)
        await runtime.ensure_started(sources)
        print("SQLite database initialized.")
    except Exception as e:
        print(f"Failed to initialize SQLite: {e}")
        raise RuntimeError("Failed to initialize SQLite during startup") from e

    app.state.runtime = runtime
    app.state.working_memory_sources = sources
    app.state.working_memory_engine = WorkingMemoryEngine(store, runtime.working_memory)

    yield

    print("Closing database connections...")
    await runtime.shutdown()
    await close_part_store()


app = FastAPI(
    title="Working Memory API",
    description="Scoped working-memory state for the knowledge-graph assistant",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(working_memory_router)


@app.get("/")
async def root():
    return {
        "message": "Working Memory API",
        "version": "1.0.0",
        "docs": "/docs"
    }


@app.get("/health")
async def health():
    """Health check with storage and cache statistics."""
    payload: Dict[str, Any] = {
        "status": "ok",
        "timestamp": _utc_iso_now(),
    }

    try:
        payload["storage"] = await get_part_store().get_stats()
    except Exception as e:
        payload["status"] = "degraded"
        payload["storage"] = {"degraded": True, "reason": str(e)}

    runtime = getattr(app.state, "runtime", None)
    if runtime is None:
        payload["status"] = "degraded"
        payload["runtime"] = {"started": False}
    else:
        payload["runtime"] = {
            "started": runtime.started,
            "working_memory": await runtime.working_memory.status(),
        }
    return payload


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
