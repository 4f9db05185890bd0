"""Acknowledgement publishing for remote commands."""

from __future__ import annotations

import json
import logging
from collections import OrderedDict
from typing import Any, Dict, Optional, Protocol

from .models import JobResult

LOGGER = logging.getLogger(__name__)


class AckPublisher(Protocol):
    def publish(
        self, topic: str, payload: bytes, qos: int = 1, retain: bool = False
    ) -> None: ...


class AcknowledgementReporter:
    """Publishes exactly one outcome message per received command.

    The encoded acknowledgement of every reported token is kept in a bounded
    history. The command processor consults it before dispatch so a
    redelivered command is answered with :meth:`replay` instead of running
    twice. Commands that arrived without a token cannot be matched and are
    always published.
    """

    def __init__(
        self,
        publisher: AckPublisher,
        topic: str,
        *,
        history_limit: int = 256,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._publisher = publisher
        self._topic = topic
        self._log = logger or LOGGER
        self._history_limit = history_limit
        self._reported: "OrderedDict[str, bytes]" = OrderedDict()

    def has_reported(self, token: Optional[str]) -> bool:
        return bool(token) and token in self._reported

    def report(self, result: JobResult) -> bool:
        """Publish ``result``; return False when it was dropped."""

        token = result.command_token
        if self.has_reported(token):
            self._log.warning(
                "Dropping duplicate acknowledgement for %s (token=%s)",
                result.command,
                token,
            )
            return False

        document = build_ack_document(result)
        payload = json.dumps(document).encode("utf-8")
        if token:
            self._remember(token, payload)

        if not self._publish(payload, result.command, token):
            return False

        self._log.info(
            "Acknowledged %s (token=%s, status=%s)",
            result.command,
            token,
            document["status"],
        )
        return True

    def replay(self, token: Optional[str]) -> bool:
        """Re-send the acknowledgement already recorded for ``token``.

        Returns False when no acknowledgement is recorded for it.
        """

        if not token:
            return False
        payload = self._reported.get(token)
        if payload is None:
            return False

        if self._publish(payload, "redelivered command", token):
            self._log.info("Re-sent acknowledgement (token=%s)", token)
        return True

    def _publish(self, payload: bytes, command: str, token: Optional[str]) -> bool:
        try:
            self._publisher.publish(self._topic, payload, qos=1, retain=False)
        except Exception as exc:
            self._log.error(
                "Failed to publish acknowledgement for %s (token=%s): %s",
                command,
                token,
                exc,
            )
            return False
        return True

    def _remember(self, token: str, payload: bytes) -> None:
        self._reported[token] = payload
        while len(self._reported) > self._history_limit:
            self._reported.popitem(last=False)


def build_ack_document(result: JobResult) -> Dict[str, Any]:
    document: Dict[str, Any] = {
        "command": result.command,
        "command_token": result.command_token,
        "printer_id": result.printer_id,
        "status": "success" if result.success else "failure",
    }

    if result.success:
        if result.payload:
            document["message"] = dict(result.payload)
    else:
        message: Dict[str, Any] = {"error": result.reason or "command failed"}
        if result.code:
            message["code"] = result.code
        document["message"] = message

    return document
