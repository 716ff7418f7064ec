"""Periodic connection health sampling."""
from __future__ import annotations

import asyncio
import logging
import time
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Callable, Literal, Optional, Protocol, Tuple

from ..core.config import settings

HEALTHY_LINK_STATES = frozenset({"connected", "completed"})

LOCAL_MEDIA_ABSENT = "local-media-absent"
PEER_LINK_DEGRADED = "peer-link-degraded"
SIGNALING_DISCONNECTED = "signaling-disconnected"

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class HealthIssue:
    reason: str
    severity: Literal["warning", "error"]
    message: str


@dataclass(frozen=True)
class HealthSnapshot:
    """Point-in-time view of one participant's media and connectivity."""

    local_media_present: bool
    remote_media_present: bool
    transport_connection_state: Optional[str]
    signaling_connected: bool
    taken_at: float = field(default_factory=time.time)

    @property
    def issues(self) -> Tuple[HealthIssue, ...]:
        found = []
        if not self.local_media_present:
            found.append(HealthIssue(LOCAL_MEDIA_ABSENT, "error", "Local media stream lost"))
        if (
            self.transport_connection_state is not None
            and self.transport_connection_state not in HEALTHY_LINK_STATES
        ):
            found.append(HealthIssue(PEER_LINK_DEGRADED, "warning", "Connection quality issues detected"))
        if not self.signaling_connected:
            found.append(HealthIssue(SIGNALING_DISCONNECTED, "error", "Server connection lost"))
        return tuple(found)

    @property
    def healthy(self) -> bool:
        return not self.issues


class HealthSource(Protocol):
    def health_snapshot(self) -> HealthSnapshot:
        ...


UnhealthyHandler = Callable[[HealthSnapshot], None]


class HealthMonitor:
    """Sample a participant on a fixed interval and report unhealthy snapshots.

    Reporting only; recovery is driven by the negotiator's own events.
    """

    def __init__(
        self,
        source: HealthSource,
        on_unhealthy: UnhealthyHandler,
        *,
        interval: float | None = None,
    ) -> None:
        self._source = source
        self._on_unhealthy = on_unhealthy
        self._interval = settings.health_interval_seconds if interval is None else interval
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def sample(self) -> HealthSnapshot:
        return self._source.health_snapshot()

    def check(self) -> HealthSnapshot:
        """Take one sample and report it when unhealthy."""

        snapshot = self.sample()
        if not snapshot.healthy:
            logger.info("Unhealthy sample: %s", ", ".join(issue.reason for issue in snapshot.issues))
            self._on_unhealthy(snapshot)
        return snapshot

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                self.check()
            except Exception:  # noqa: BLE001 - keep sampling
                logger.exception("Health check failed")
