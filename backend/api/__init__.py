from .working_memory import router as working_memory_router

__all__ = ["working_memory_router"]
