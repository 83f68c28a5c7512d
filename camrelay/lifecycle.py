"""Pause/resume state machine for camera entries.

On disk a camera's lifecycle is spread over several optional keys
(``runOnReady``, ``paused``, ``originalRunOnReady`` ...). Here it is read into
exactly one of three states and written back from that state, so an entry can
never end up half paused.

  Active    runOnReady set, not paused
  Paused    paused: true, runOnReady null, originalRunOnReady holds the command
  Inactive  anything else (no command, or a paused flag without a backup)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping, MutableMapping

from .camera_store import CameraStore
from .errors import InvalidState
from .ffmpeg_args import extract_rtmp_target
from .reload import MutationResult, ReloadOrchestrator

log = logging.getLogger("camrelay.lifecycle")

RUN_ON_READY = "runOnReady"
RUN_ON_READY_RESTART = "runOnReadyRestart"
PAUSED = "paused"
ORIGINAL_RUN_ON_READY = "originalRunOnReady"
ORIGINAL_RUN_ON_READY_RESTART = "originalRunOnReadyRestart"

STATUS_ACTIVE = "active"
STATUS_PAUSED = "paused"
STATUS_INACTIVE = "inactive"

RTMP_URL_UNAVAILABLE = "RTMP URL not available"


@dataclass(frozen=True, slots=True)
class Active:
    command: str
    restart: bool | None = None

    name = STATUS_ACTIVE


@dataclass(frozen=True, slots=True)
class Paused:
    backup_command: str
    backup_restart: bool | None = None

    name = STATUS_PAUSED


@dataclass(frozen=True, slots=True)
class Inactive:
    name = STATUS_INACTIVE


StreamState = Active | Paused | Inactive


def _optional_bool(value: Any) -> bool | None:
    if value is None:
        return None
    return bool(value)


def state_of(entry: Mapping[str, Any] | None) -> StreamState:
    if not isinstance(entry, Mapping):
        return Inactive()
    if entry.get(PAUSED) is True:
        backup = entry.get(ORIGINAL_RUN_ON_READY)
        if isinstance(backup, str) and backup:
            return Paused(str(backup), _optional_bool(entry.get(ORIGINAL_RUN_ON_READY_RESTART)))
        return Inactive()
    command = entry.get(RUN_ON_READY)
    if isinstance(command, str) and command:
        return Active(str(command), _optional_bool(entry.get(RUN_ON_READY_RESTART)))
    return Inactive()


def write_state(entry: MutableMapping[str, Any], state: StreamState) -> None:
    """Store ``state`` into the entry's lifecycle keys, leaving other keys alone."""

    if isinstance(state, Active):
        entry[RUN_ON_READY] = state.command
        if state.restart is None:
            entry.pop(RUN_ON_READY_RESTART, None)
        else:
            entry[RUN_ON_READY_RESTART] = state.restart
        for key in (PAUSED, ORIGINAL_RUN_ON_READY, ORIGINAL_RUN_ON_READY_RESTART):
            entry.pop(key, None)
    elif isinstance(state, Paused):
        entry[RUN_ON_READY] = None
        entry[RUN_ON_READY_RESTART] = False
        entry[PAUSED] = True
        entry[ORIGINAL_RUN_ON_READY] = state.backup_command
        if state.backup_restart is None:
            entry.pop(ORIGINAL_RUN_ON_READY_RESTART, None)
        else:
            entry[ORIGINAL_RUN_ON_READY_RESTART] = state.backup_restart
    else:
        raise InvalidState("Cannot store an inactive lifecycle state")


def effective_command(state: StreamState) -> str | None:
    """The transcoder command the camera runs, or will run once resumed."""

    if isinstance(state, Active):
        return state.command
    if isinstance(state, Paused):
        return state.backup_command
    return None


def rewrite_command(entry: MutableMapping[str, Any], rewrite: Callable[[str], str]) -> bool:
    """Apply ``rewrite`` to the camera's command, wherever it currently lives."""

    state = state_of(entry)
    if isinstance(state, Active):
        updated = rewrite(state.command)
        if updated == state.command:
            return False
        write_state(entry, Active(updated, state.restart))
        return True
    if isinstance(state, Paused):
        updated = rewrite(state.backup_command)
        if updated == state.backup_command:
            return False
        write_state(entry, Paused(updated, state.backup_restart))
        return True
    raise InvalidState("Camera has no ffmpeg command to update")


def describe_camera(name: str, entry: Mapping[str, Any] | None) -> dict[str, Any]:
    """Listing view of one camera: derived fields first, then the raw entry."""

    entry = dict(entry or {})
    state = state_of(entry)
    rtmp_url = extract_rtmp_target(effective_command(state)) or RTMP_URL_UNAVAILABLE
    payload: dict[str, Any] = {
        "name": name,
        "rtspUrl": entry.get("source"),
        "rtmpUrl": rtmp_url,
        "status": state.name,
    }
    payload.update(entry)
    return payload


def status_payload(name: str, entry: Mapping[str, Any] | None) -> dict[str, Any]:
    entry = entry or {}
    state = state_of(entry)
    return {
        "name": name,
        "status": state.name,
        "paused": isinstance(state, Paused),
        "active": isinstance(state, Active),
        "runOnReady": entry.get(RUN_ON_READY),
        "runOnReadyRestart": entry.get(RUN_ON_READY_RESTART),
    }


class StreamLifecycle:
    """Pause and resume cameras, restarting the relay after each change."""

    def __init__(self, store: CameraStore, orchestrator: ReloadOrchestrator) -> None:
        self.store = store
        self.orchestrator = orchestrator

    def state(self, name: str) -> StreamState:
        return state_of(self.store.get_camera(name))

    def pause_entry(self, name: str) -> tuple[dict[str, Any], bool]:
        """Persist the pause. Pausing a paused camera changes nothing."""

        def _pause(entry: MutableMapping[str, Any]) -> bool:
            state = state_of(entry)
            if isinstance(state, Paused):
                log.info("Camera %s already paused", name)
                return False
            if not isinstance(state, Active):
                raise InvalidState(
                    "Camera is not active",
                    details=f"Camera '{name}' has no ffmpeg command to pause",
                )
            write_state(entry, Paused(state.command, state.restart))
            return True

        return self.store.mutate_camera(name, _pause)

    def resume_entry(self, name: str) -> tuple[dict[str, Any], bool]:
        def _resume(entry: MutableMapping[str, Any]) -> bool:
            state = state_of(entry)
            if not isinstance(state, Paused):
                raise InvalidState("Camera is not paused or no original configuration found")
            write_state(entry, Active(state.backup_command, state.backup_restart))
            return True

        return self.store.mutate_camera(name, _resume)

    async def pause(self, name: str) -> MutationResult:
        result = await self.orchestrator.commit(name, lambda: self.pause_entry(name))
        result.status = STATUS_PAUSED
        return result

    async def resume(self, name: str) -> MutationResult:
        result = await self.orchestrator.commit(name, lambda: self.resume_entry(name))
        result.status = "playing"
        return result
