"""Error taxonomy for pipeline stages.

Every failure raised by a stage collaborator is one of the classes below.
The ``retryable`` class attribute decides whether the engine retries the
stage (bounded) or fails the run immediately.
"""

from __future__ import annotations

# Collaborator responses are clipped to this many characters when stored
RESPONSE_TAIL_CHARS = 4000


def tail(text: str | bytes | None, limit: int = RESPONSE_TAIL_CHARS) -> str | None:
    """Return the last ``limit`` characters of a collaborator response."""
    if text is None:
        return None
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")
    text = text.strip()
    if not text:
        return None
    return text[-limit:]


class PipelineError(Exception):
    """Base error for stage failures.

    Attributes:
        code: Machine-readable error code.
        response: Tail of the last external collaborator response.
        retryable: Whether the failing stage may be attempted again.
            A single instance can override its class default, e.g. a conflict
            that persisted through every fetch-patch-push round.
    """

    retryable = False
    default_code = "pipeline_error"

    def __init__(
        self,
        message: str,
        response: str | bytes | None = None,
        code: str | None = None,
        retryable: bool | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code or self.default_code
        self.response = tail(response)
        if retryable is not None:
            self.retryable = retryable

    @property
    def kind(self) -> str:
        """Error kind as recorded in stage history."""
        return type(self).__name__


class BuildError(PipelineError):
    """Build, analysis or artifact failure. Requires a human fix."""

    default_code = "build_error"


class NetworkError(PipelineError):
    """Transient network failure or timeout."""

    retryable = True
    default_code = "network_error"


class AuthError(PipelineError):
    """Authentication or authorization failure. Requires a credential fix."""

    default_code = "auth_error"


class ConflictError(PipelineError):
    """Remote moved since checkout; retried after re-fetching."""

    retryable = True
    default_code = "conflict"


class PatchError(PipelineError):
    """Manifest is structurally not what the patcher expects."""

    default_code = "patch_error"


__all__ = [
    "AuthError",
    "BuildError",
    "ConflictError",
    "NetworkError",
    "PatchError",
    "PipelineError",
    "RESPONSE_TAIL_CHARS",
    "tail",
]
