class ClientInputError(ValueError):
    """Bad request from the caller. Rendered as a 4xx, never retried."""

    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class SessionNotFound(ClientInputError, KeyError):
    status_code = 404

    def __init__(self, session_id: str):
        super().__init__("Session not found.")
        self.session_id = session_id

    def __str__(self) -> str:
        return f"Session not found: {self.session_id}"


class DuplicateSubmission(ClientInputError):
    status_code = 409


class QueueFull(ClientInputError):
    status_code = 503


class ScoringFailure(RuntimeError):
    """The scoring model call failed, timed out, or returned unusable output."""

    def __init__(self, reason: str, detail: str = ""):
        super().__init__(f"{reason}: {detail}" if detail else reason)
        self.reason = reason
        self.detail = detail


class PersistenceFailure(RuntimeError):
    """A best-effort write to the session store failed."""
