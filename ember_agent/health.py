"""Health reporting utilities for ember-agent."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from aiohttp import web

LOGGER = logging.getLogger(__name__)

DiagnosticsProvider = Callable[[], Dict[str, Any]]


@dataclass(slots=True)
class ComponentStatus:
    name: str
    healthy: bool
    detail: Optional[str] = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def as_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "healthy": self.healthy,
            "detail": self.detail,
            "updatedAt": self.updated_at.isoformat(timespec="seconds"),
        }


class HealthReporter:
    """Tracks component statuses and agent diagnostics."""

    def __init__(self, diagnostics: Optional[DiagnosticsProvider] = None) -> None:
        self._status: Dict[str, ComponentStatus] = {}
        self._lock = asyncio.Lock()
        self._diagnostics = diagnostics

    def set_diagnostics_provider(self, provider: Optional[DiagnosticsProvider]) -> None:
        self._diagnostics = provider

    async def update(
        self, name: str, healthy: bool, detail: Optional[str] = None
    ) -> None:
        async with self._lock:
            previous = self._status.get(name)
            self._status[name] = ComponentStatus(
                name=name, healthy=healthy, detail=detail
            )
        if previous is None or previous.healthy != healthy:
            LOGGER.debug("Component %s healthy=%s (%s)", name, healthy, detail)

    async def snapshot(self) -> Dict[str, object]:
        async with self._lock:
            components = [status.as_dict() for status in self._status.values()]

        overall = "ok" if all(item["healthy"] for item in components) else "degraded"
        payload: Dict[str, object] = {"status": overall, "components": components}

        if self._diagnostics is not None:
            try:
                payload["diagnostics"] = self._diagnostics()
            except Exception as exc:  # pragma: no cover
                LOGGER.debug("Diagnostics provider failed: %s", exc)

        return payload


class HealthServer:
    """Minimal HTTP server exposing `/healthz` for status checks."""

    def __init__(self, reporter: HealthReporter, host: str, port: int) -> None:
        self._reporter = reporter
        self._host = host
        self._port = port
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    async def start(self) -> None:
        app = web.Application()
        app.router.add_get("/healthz", self._handle_health)

        self._runner = web.AppRunner(app)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._host, self._port)
        await self._site.start()
        LOGGER.info(
            "Health endpoint listening on http://%s:%s/healthz", self._host, self._port
        )

    async def stop(self) -> None:
        with contextlib.suppress(Exception):
            if self._site is not None:
                await self._site.stop()
        if self._runner is not None:
            await self._runner.cleanup()
        self._site = None
        self._runner = None

    async def _handle_health(self, request: web.Request) -> web.Response:
        snapshot = await self._reporter.snapshot()
        status = 200 if snapshot["status"] == "ok" else 503
        return web.json_response(snapshot, status=status)
