"""Combine live relay data with camera configuration into status views.

Live figures (paths, sessions, byte counters) come from the relay query API;
the transcoder command and RTMP target come from the camera store. Upstream
failures degrade the affected section to an empty list and are listed under
``upstreamErrors``; they never fail the whole snapshot.

Output throughput for a stream pushed to an external RTMP server cannot be
measured here. When no internal RTMP session exists for a path, output bytes
and bitrate are estimated and tagged ``"measurement": "estimated"``.
"""

from __future__ import annotations

import logging
import re
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Mapping

from .camera_store import CameraStore, to_plain
from .errors import NotFound, UpstreamHTTPError, UpstreamUnavailable
from .ffmpeg_args import extract_rtmp_target, extract_video_bitrate
from .lifecycle import RUN_ON_READY, RUN_ON_READY_RESTART
from .relay_api import RelayApiClient

log = logging.getLogger("camrelay.status")

# Transcoded output is assumed to carry this share of the input bitrate.
ESTIMATED_OUTPUT_RATIO = 0.8

MEASURED = "measured"
ESTIMATED = "estimated"
UNAVAILABLE = "unavailable"

_FRACTION_PATTERN = re.compile(r"(\.\d{6})\d+")


def parse_timestamp(value: Any) -> datetime | None:
    """Parse the relay's RFC 3339 timestamps (nanosecond precision allowed)."""

    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    text = _FRACTION_PATTERN.sub(r"\1", text)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _number(value: Any) -> float:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return value
    return 0


def _percent(numerator: float, denominator: float) -> str:
    if denominator <= 0:
        return "0%"
    return f"{numerator / denominator * 100:.2f}%"


def estimate_output(
    command: str | None,
    input_bitrate: float,
    last_activity: Any,
    *,
    now: float,
) -> tuple[float, int]:
    """Estimated (bitrate, bytes sent) for an externally pushed stream.

    An explicit ``-b:v`` in the command wins; otherwise 80% of the input
    bitrate. Bytes are bitrate times the time elapsed since ``last_activity``.
    """

    explicit = extract_video_bitrate(command)
    bitrate = float(explicit) if explicit is not None else float(int(input_bitrate * ESTIMATED_OUTPUT_RATIO))
    bytes_sent = 0
    started = parse_timestamp(last_activity)
    if started is not None:
        elapsed = max(0.0, now - started.timestamp())
        bytes_sent = int((bitrate * 1000 / 8) * elapsed)
    return bitrate, bytes_sent


class StatusAggregator:
    def __init__(
        self,
        api: RelayApiClient,
        store: CameraStore,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.api = api
        self.store = store
        self._clock = clock

    async def _section(
        self,
        label: str,
        fetch: Callable[[], Awaitable[list[dict[str, Any]]]],
        errors: dict[str, str],
    ) -> list[dict[str, Any]]:
        try:
            return await fetch()
        except UpstreamUnavailable as exc:
            log.error("Error fetching %s: %s", label, exc)
            errors[label] = str(exc.details or exc)
            return []

    async def _path_record(self, name: str) -> dict[str, Any]:
        try:
            return await self.api.get_path(name)
        except UpstreamHTTPError as exc:
            if exc.status == 404:
                raise NotFound("Stream not found", details=name) from exc
            raise

    def _camera_entry(self, cameras: Mapping[str, Any], name: str) -> dict[str, Any]:
        entry = cameras.get(name)
        return to_plain(entry) if isinstance(entry, Mapping) else {}

    async def get_status(self) -> dict[str, Any]:
        errors: dict[str, str] = {}
        paths = await self._section("paths", self.api.list_paths, errors)
        rtsp_sessions = await self._section("rtspSessions", self.api.list_rtsp_sessions, errors)
        rtmp_sessions = await self._section("rtmpSessions", self.api.list_rtmp_sessions, errors)

        active_paths = [path for path in paths if path.get("ready")]
        total_received = sum(_number(path.get("bytesReceived")) for path in paths)
        total_sent = sum(_number(path.get("bytesSent")) for path in paths)

        ffmpeg_processes: list[dict[str, Any]] = []
        rtmp_outputs: list[dict[str, Any]] = []
        cameras = self.store.cameras() if active_paths else {}
        for path in active_paths:
            name = str(path.get("name", ""))
            entry = self._camera_entry(cameras, name)
            command = entry.get(RUN_ON_READY)
            if not isinstance(command, str) or not command:
                continue
            source = entry.get("source") or ""
            ffmpeg_processes.append(
                {"name": name, "command": command, "status": "running", "source": source}
            )
            target = extract_rtmp_target(command)
            if target:
                rtmp_outputs.append(
                    {
                        "name": name,
                        "rtmpUrl": target,
                        "status": "active",
                        "source": source,
                        "isExternal": True,
                    }
                )

        external_streams = len(rtmp_outputs)
        return {
            "active": [
                {
                    "name": path.get("name"),
                    "bytesReceived": path.get("bytesReceived") or 0,
                    "tracks": path.get("tracks") or [],
                }
                for path in active_paths
            ],
            "sessions": [*rtsp_sessions, *rtmp_sessions],
            "total": {
                "active": len(active_paths),
                "sessions": len(rtsp_sessions) + len(rtmp_sessions),
                "sent": total_sent,
                "received": total_received,
            },
            "paths": paths,
            "rtsps": rtsp_sessions,
            "rtmps": rtmp_sessions,
            "streamProcessing": {
                "ffmpegProcesses": ffmpeg_processes,
                "rtmpOutputs": rtmp_outputs,
                "transferStats": {
                    "totalInputs": len(paths),
                    "activeInputs": len(active_paths),
                    "totalOutputs": len(rtmp_outputs),
                    "activeOutputs": sum(1 for o in rtmp_outputs if o["status"] == "active"),
                    "externalRtmpStreams": external_streams,
                    "processingEfficiency": _percent(len(active_paths), len(paths)),
                },
            },
            "summary": {
                "totalPaths": len(paths),
                "activeStreams": len(active_paths),
                "totalRTSPSessions": len(rtsp_sessions),
                "totalRTMPSessions": len(rtmp_sessions),
                "ffmpegProcesses": len(ffmpeg_processes),
                "rtmpOutputs": len(rtmp_outputs),
                "externalRtmpStreams": external_streams,
            },
            "upstreamErrors": errors,
        }

    async def stream_status(self, name: str) -> dict[str, Any]:
        return await self._path_record(name)

    async def stream_processing(self, name: str) -> dict[str, Any]:
        path = await self._path_record(name)
        entry = self._camera_entry(self.store.cameras(), name)
        command = entry.get(RUN_ON_READY)
        ready = bool(path.get("ready"))
        target = extract_rtmp_target(command)

        info: dict[str, Any] = {
            "name": name,
            "source": entry.get("source") or path.get("source"),
            "ready": ready,
            "ffmpegProcess": {
                "command": command,
                "status": "running" if ready else "stopped",
                "restartPolicy": "enabled" if entry.get(RUN_ON_READY_RESTART) else "disabled",
            },
            "rtmpOutput": {"url": None, "status": "inactive", "target": None},
            "transferStatus": {
                "inputConnected": ready,
                "outputConnected": False,
                "processingActive": bool(ready and command),
            },
        }
        if target:
            info["rtmpOutput"] = {
                "url": target,
                "status": "active" if ready else "inactive",
                "target": target[len("rtmp://"):],
            }
            info["transferStatus"]["outputConnected"] = ready
        return info

    async def stream_io(self, name: str) -> dict[str, Any]:
        errors: dict[str, str] = {}
        path = await self._path_record(name)
        rtsp_sessions = [
            s
            for s in await self._section("rtspSessions", self.api.list_rtsp_sessions, errors)
            if s.get("path") == name
        ]
        rtmp_sessions = [
            s
            for s in await self._section("rtmpSessions", self.api.list_rtmp_sessions, errors)
            if s.get("path") == name
        ]
        entry = self._camera_entry(self.store.cameras(), name)
        command = entry.get(RUN_ON_READY)
        ready = bool(path.get("ready"))
        last_activity = path.get("lastActivity") or path.get("readyTime")

        bytes_received = sum(_number(s.get("bytesReceived")) for s in rtsp_sessions)
        input_bitrate = sum(_number(s.get("bitrate")) for s in rtsp_sessions)

        output_url = extract_rtmp_target(command)
        output_connected = False
        bytes_sent: float = 0
        output_bitrate: float = 0
        measurement = UNAVAILABLE

        if rtmp_sessions:
            output_connected = True
            bytes_sent = sum(_number(s.get("bytesSent")) for s in rtmp_sessions)
            output_bitrate = sum(_number(s.get("bitrate")) for s in rtmp_sessions)
            measurement = MEASURED
        elif output_url:
            output_connected = ready
            output_bitrate, bytes_sent = estimate_output(
                command, input_bitrate, last_activity, now=self._clock()
            )
            measurement = ESTIMATED

        return {
            "name": name,
            "source": entry.get("source") or path.get("source"),
            "ready": ready,
            "lastActivity": last_activity,
            "input": {
                "connected": ready,
                "protocol": "RTSP",
                "url": entry.get("source"),
                "sessions": len(rtsp_sessions),
                "bytesReceived": bytes_received,
                "bitrate": input_bitrate,
            },
            "output": {
                "connected": output_connected,
                "protocol": "RTMP",
                "url": output_url,
                "sessions": len(rtmp_sessions),
                "bytesSent": bytes_sent,
                "bitrate": output_bitrate,
                "measurement": measurement,
            },
            "ffmpeg": {
                "command": command,
                "status": "running" if ready else "stopped",
                "restartPolicy": "enabled" if entry.get(RUN_ON_READY_RESTART) else "disabled",
            },
            "metrics": {
                "bytesReceived": bytes_received,
                "bytesSent": bytes_sent,
                "totalBytes": bytes_received + bytes_sent,
                "inputBitrate": input_bitrate,
                "outputBitrate": output_bitrate,
                "outputMeasurement": measurement,
                "efficiency": _percent(bytes_sent, bytes_received),
            },
            "rtspSessions": rtsp_sessions,
            "rtmpSessions": rtmp_sessions,
            "upstreamErrors": errors,
        }
