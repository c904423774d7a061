from __future__ import annotations


class GenBridgeError(Exception):
    """Base exception for genbridge."""

    pass


class InferenceError(GenBridgeError):
    """Raised when the inference server rejects or fails a workflow."""

    def __init__(self, message: str, *, status_code: int | None = None, body: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class InferenceUnavailableError(InferenceError):
    """Raised when the inference server cannot be reached."""

    pass
