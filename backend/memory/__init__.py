from .composer import compose
from .errors import (
    InvalidPart,
    MalformedPayload,
    MissingScope,
    SessionNotFound,
    WorkingMemoryError,
)
from .schema import DerivedPart, WorkingMemoryPart, sanitize
from .scope import ResolvedScope, resolve_scope

__all__ = [
    "DerivedPart",
    "InvalidPart",
    "MalformedPayload",
    "MissingScope",
    "ResolvedScope",
    "SessionNotFound",
    "WorkingMemoryError",
    "WorkingMemoryPart",
    "compose",
    "resolve_scope",
    "sanitize",
]
