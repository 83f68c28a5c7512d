"""Restart the media relay after a configuration change and report how it went.

The relay has a live-reload API, but it does not reliably pick up path
changes, so a container restart is the only mechanism used. A restart that
fails is reported, not retried: it is almost always a configuration syntax
problem rather than something transient. After a successful restart we wait a
fixed settling delay and ask Docker once whether the container is up.

Configuration durability and relay reload are reported separately: a
MutationResult is always "saved"; its ``reload`` says whether the change is
live yet.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from .docker_cli import DockerCLI

log = logging.getLogger("camrelay.reload")

DEFAULT_SETTLE_DELAY_SECONDS = 5.0


@dataclass(slots=True)
class ReloadOutcome:
    succeeded: bool
    verified: bool = False
    error: str | None = None
    status: str | None = None

    @property
    def live(self) -> bool:
        return self.succeeded and self.verified

    def warning(self) -> str | None:
        if not self.succeeded:
            return (
                "Configuration has been updated, but restarting the relay failed "
                f"({self.error or 'unknown error'}). Please restart it manually to apply changes."
            )
        if not self.verified:
            return (
                "The relay was restarted but is not reported as running "
                f"({self.error or 'status unknown'}). Check it and restart manually if needed."
            )
        return None

    def to_payload(self) -> dict[str, Any]:
        return {
            "succeeded": self.succeeded,
            "verified": self.verified,
            "error": self.error,
            "status": self.status,
        }


@dataclass(slots=True)
class MutationResult:
    """A persisted change to one camera and the reload that followed it."""

    camera: str
    entry: dict[str, Any] = field(default_factory=dict)
    changed: bool = True
    reload: ReloadOutcome | None = None
    status: str | None = None

    @property
    def live(self) -> bool:
        return self.reload.live if self.reload is not None else not self.changed

    def warning(self) -> str | None:
        if self.reload is None:
            return None
        return self.reload.warning()

    def to_payload(self, message: str | None = None) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": True,
            "saved": True,
            "changed": self.changed,
            "live": self.live,
            "reload": self.reload.to_payload() if self.reload is not None else None,
        }
        if message:
            payload["message"] = message
        if self.status:
            payload["status"] = self.status
        warning = self.warning()
        if warning:
            payload["warning"] = warning
        return payload


class ReloadOrchestrator:
    """Serialises relay restarts for one container."""

    def __init__(
        self,
        container: str = "mediamtx",
        *,
        docker: DockerCLI | None = None,
        settle_delay: float = DEFAULT_SETTLE_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.container = container
        self.docker = docker if docker is not None else DockerCLI()
        self.settle_delay = settle_delay
        self._sleep = sleep
        self._lock: asyncio.Lock | None = None

    def _get_lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    async def reload(self) -> ReloadOutcome:
        async with self._get_lock():
            return await self._restart_and_verify()

    async def _restart_and_verify(self) -> ReloadOutcome:
        log.info("Restarting %s to apply configuration", self.container)
        restart = await self.docker.restart(self.container)
        if not restart.ok:
            message = restart.message or f"docker restart exited with {restart.returncode}"
            log.error("Restart of %s failed: %s", self.container, message)
            return ReloadOutcome(succeeded=False, error=f"restart failed: {message}")
        if restart.stderr.strip():
            log.info("docker restart stderr: %s", restart.stderr.strip())

        log.info("Waiting %.1fs for %s to start up", self.settle_delay, self.container)
        await self._sleep(self.settle_delay)

        running, status = await self.docker.container_status(self.container)
        if not running:
            detail = status or "container not found or not running"
            log.warning("%s restarted but liveness check failed: %s", self.container, detail)
            return ReloadOutcome(succeeded=True, verified=False, error=f"liveness check: {detail}")

        log.info("%s status: %s", self.container, status)
        return ReloadOutcome(succeeded=True, verified=True, status=status)

    async def commit(
        self,
        camera: str,
        mutation: Callable[[], tuple[dict[str, Any], bool]],
    ) -> MutationResult:
        """Run a store mutation, then restart the relay if anything changed.

        Store errors propagate and nothing is reloaded. The store lock is only
        held inside ``mutation``, never across the restart.
        """

        entry, changed = mutation()
        result = MutationResult(camera=camera, entry=entry, changed=changed)
        if changed:
            result.reload = await self.reload()
        return result
