"""Error taxonomy for job handling.

Every error raised while executing a remote command derives from
:class:`AgentError`. The command processor converts them into failure
acknowledgements; none of them terminate the agent.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .models import CommandEnvelope
    from .printer_state import DeviceState


class AgentError(RuntimeError):
    """Base class for errors that abort a single job."""

    default_code = "command_failed"

    def __init__(self, message: str, *, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code or self.default_code


class PipeError(AgentError):
    """Raised when the firmware command pipe is unreachable or replies badly."""

    default_code = "pipe_error"


class PreconditionError(AgentError):
    """Raised when the device state disallows the requested action."""

    default_code = "invalid_state"

    def __init__(
        self,
        message: str,
        *,
        state: "DeviceState",
        code: Optional[str] = None,
    ) -> None:
        super().__init__(message, code=code)
        self.state = state


class DownloadError(AgentError):
    """Raised when a print file cannot be fetched or staged."""

    default_code = "download_failed"


class UploadError(AgentError):
    """Raised when a blob store transfer fails."""

    default_code = "upload_failed"


class ProtocolError(AgentError):
    """Raised when an inbound command payload is malformed.

    ``envelope`` holds whatever correlation fields could be read before the
    payload was rejected, so the failure can still be matched to its request.
    """

    default_code = "invalid_payload"

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        envelope: Optional["CommandEnvelope"] = None,
    ) -> None:
        super().__init__(message, code=code)
        self.envelope = envelope
