from __future__ import annotations


class RelayError(RuntimeError):
    """Domain error carrying the API error code and HTTP status to report."""

    def __init__(self, code: str, message: str, status: int = 400, path: str | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status = status
        self.path = path
