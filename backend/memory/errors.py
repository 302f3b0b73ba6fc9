"""Error taxonomy for the working-memory engine."""


class WorkingMemoryError(Exception):
    """Base class for working-memory failures raised by the engine."""


class MissingScope(WorkingMemoryError, ValueError):
    """Neither a session id nor a complete project/node pair was supplied."""


class InvalidPart(WorkingMemoryError, ValueError):
    """A part name outside the working-memory catalog."""

    def __init__(self, part: object) -> None:
        super().__init__(f"Invalid working memory part: {part!r}")
        self.part = part


class MalformedPayload(WorkingMemoryError, ValueError):
    """A stored part payload that is not valid JSON."""

    def __init__(self, part: str, detail: str) -> None:
        super().__init__(f"Malformed payload for part {part!r}: {detail}")
        self.part = part


class SessionNotFound(WorkingMemoryError, LookupError):
    """The session registry has no record for the requested session id."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found for working memory initialisation: {session_id}")
        self.session_id = session_id
