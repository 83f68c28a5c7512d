"""Thin async wrapper around the ``docker`` command line."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Sequence

log = logging.getLogger("camrelay.docker_cli")


@dataclass(frozen=True, slots=True)
class CommandResult:
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def message(self) -> str:
        return self.stderr.strip() or self.stdout.strip()


_MEDIAMTX_LEVEL = re.compile(r"\b(ERR|WAR|INF|DEB)\b")
_MEDIAMTX_LEVELS = {"ERR": "error", "WAR": "warning", "INF": "info", "DEB": "debug"}


def classify_log_line(line: str) -> str:
    """Level of one container log line.

    MediaMTX tags lines with ERR, WAR, INF or DEB; other containers are
    classified by the level words their text contains.
    """

    tagged = _MEDIAMTX_LEVEL.search(line)
    if tagged:
        return _MEDIAMTX_LEVELS[tagged.group(1)]
    level = "info"
    if "ERROR" in line or "error" in line:
        level = "error"
    if "WARN" in line or "warn" in line:
        level = "warning"
    if "DEBUG" in line or "debug" in line:
        level = "debug"
    return level


class DockerCLI:
    """Runs docker subcommands. Failures come back as a CommandResult, never raised."""

    def __init__(self, binary: str = "docker") -> None:
        self.binary = binary

    async def run(self, args: Sequence[str]) -> CommandResult:
        cmd = [self.binary, *args]
        log.debug("Running %s", " ".join(cmd))
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            return CommandResult(127, "", f"{self.binary} not found")
        except OSError as exc:
            return CommandResult(1, "", str(exc))

        stdout_raw, stderr_raw = await proc.communicate()
        stdout = stdout_raw.decode("utf-8", errors="replace")
        stderr = stderr_raw.decode("utf-8", errors="replace")
        return CommandResult(proc.returncode if proc.returncode is not None else 1, stdout, stderr)

    async def restart(self, container: str) -> CommandResult:
        return await self.run(["restart", container])

    async def container_status(self, container: str) -> tuple[bool, str | None]:
        """Whether ``container`` is running, plus its ``docker ps`` status text."""

        result = await self.run(
            [
                "ps",
                "--filter",
                f"name={container}",
                "--format",
                "{{.Names}}\t{{.Status}}",
            ]
        )
        if not result.ok:
            return False, result.message or None
        for line in result.stdout.splitlines():
            names, _, status = line.partition("\t")
            if container in [name.strip() for name in names.split(",")]:
                status = status.strip()
                # "Restarting (1) ..." and "Created" are listed too; only "Up ..." is running.
                return status.startswith("Up"), status or None
        return False, None

    async def logs(self, container: str, lines: int) -> CommandResult:
        return await self.run(["logs", "--tail", str(int(lines)), container])


def log_entries(result: CommandResult) -> list[dict[str, Any]]:
    """Split ``docker logs`` output into level-tagged entries."""

    fetched_at = datetime.now(timezone.utc).isoformat()
    # docker logs replays the container's stderr on our stderr.
    text = result.stdout
    if result.stderr:
        text = f"{text}\n{result.stderr}" if text else result.stderr
    return [
        {"timestamp": fetched_at, "message": line, "level": classify_log_line(line)}
        for line in text.splitlines()
        if line.strip()
    ]
