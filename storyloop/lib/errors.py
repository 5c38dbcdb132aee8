"""
Error taxonomy for storyloop.

Caller errors and lifecycle violations are exceptions. Execution failures
(failed/killed sessions, failing quality gates) are not: they are recorded as
outcomes by the iteration controller.
"""


class StoryloopError(Exception):
    """Base class for all storyloop errors."""
    pass


class NotFoundError(StoryloopError):
    """A referenced story, session, or plan document does not exist."""

    def __init__(self, kind: str, ident: str):
        self.kind = kind
        self.ident = ident
        super().__init__(f"{kind} '{ident}' not found")


class InvariantError(StoryloopError):
    """An operation was attempted against an object in the wrong lifecycle state."""
    pass


class ResourceExhaustedError(StoryloopError):
    """The host could not allocate another isolated workspace."""
    pass


class ConflictError(StoryloopError):
    """A merge could not be applied cleanly. The session stays unresolved."""

    def __init__(self, session_id: str, target: str, paths: list[str]):
        self.session_id = session_id
        self.target = target
        self.paths = list(paths)
        listed = ", ".join(self.paths) if self.paths else "(unknown paths)"
        super().__init__(
            f"Merge of session {session_id} into '{target}' conflicts: {listed}"
        )


class AlreadyResolvedError(StoryloopError):
    """The session was already merged or discarded."""

    def __init__(self, session_id: str, resolution: str):
        self.session_id = session_id
        self.resolution = resolution
        super().__init__(f"Session {session_id} already resolved ({resolution})")
