"""
errors.py — Exception taxonomy for the chat core.

Business logic raises these; main.py maps them onto the standard
{error: {code, message, details}} envelope. No HTTPException below the
route layer.

  InvalidArgument   400  bad strategy name, malformed ids, bad turn shape
  Unauthorized      401  missing/invalid token, resource owned by someone else
  NotFound          404  session / message / agent does not exist
  RetrievalFailed   502  vector index or embedding service failed (504 on timeout)
  GenerationFailed  502  model provider failed (504 on timeout)
"""
from typing import Any, Optional


class BrainError(Exception):
    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Optional[list[dict[str, Any]]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or []


class InvalidArgument(BrainError):
    status_code = 400
    code = "INVALID_ARGUMENT"


class Unauthorized(BrainError):
    status_code = 401
    code = "UNAUTHORIZED"


class NotFound(BrainError):
    status_code = 404
    code = "NOT_FOUND"


class UpstreamError(BrainError):
    """An external service failed after all retries were spent."""
    status_code = 502

    def __init__(
        self,
        message: str,
        timed_out: bool = False,
        details: Optional[list[dict[str, Any]]] = None,
    ) -> None:
        super().__init__(message, details)
        self.timed_out = timed_out
        if timed_out:
            self.status_code = 504


class RetrievalFailed(UpstreamError):
    code = "RETRIEVAL_FAILED"


class GenerationFailed(UpstreamError):
    code = "GENERATION_FAILED"


# Raised by handlers and never retried
NON_RETRYABLE = (InvalidArgument, Unauthorized, NotFound)
