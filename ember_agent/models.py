"""Domain models for remote commands and their outcomes."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union


@dataclass(slots=True, frozen=True)
class CommandEnvelope:
    """Correlation fields shared by every remote command."""

    kind: str
    command_token: Optional[str]
    printer_id: Optional[str]


@dataclass(slots=True, frozen=True)
class PrintDataCommand:
    envelope: CommandEnvelope
    file_url: str
    settings: Dict[str, Any]


@dataclass(slots=True, frozen=True)
class LogsCommand:
    envelope: CommandEnvelope


@dataclass(slots=True, frozen=True)
class WirelessCommand:
    envelope: CommandEnvelope
    ssid: str
    passphrase: Optional[str] = None


@dataclass(slots=True, frozen=True)
class PassthroughCommand:
    """Any command kind without a dedicated handler; sent to firmware as-is."""

    envelope: CommandEnvelope

    @property
    def command(self) -> str:
        return self.envelope.kind


Command = Union[PrintDataCommand, LogsCommand, WirelessCommand, PassthroughCommand]


@dataclass(slots=True, frozen=True)
class JobResult:
    """Outcome of one job, consumed once by the acknowledgement reporter."""

    command: str
    command_token: Optional[str]
    printer_id: Optional[str]
    success: bool
    payload: Dict[str, Any] = field(default_factory=dict)
    reason: Optional[str] = None
    code: Optional[str] = None

    @classmethod
    def succeeded(
        cls, envelope: CommandEnvelope, payload: Optional[Dict[str, Any]] = None
    ) -> "JobResult":
        return cls(
            command=envelope.kind,
            command_token=envelope.command_token,
            printer_id=envelope.printer_id,
            success=True,
            payload=dict(payload or {}),
        )

    @classmethod
    def failed(
        cls, envelope: CommandEnvelope, reason: str, *, code: Optional[str] = None
    ) -> "JobResult":
        return cls(
            command=envelope.kind,
            command_token=envelope.command_token,
            printer_id=envelope.printer_id,
            success=False,
            reason=reason,
            code=code,
        )
