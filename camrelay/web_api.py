#!/usr/bin/env python3
"""
aiohttp API server for managing media relay cameras.

Every mutation is written to the relay's YAML document first and then
applied by restarting the relay container. Responses report the two
separately: ``saved`` is always true once the document was written, while
``reload`` / ``live`` / ``warning`` describe the restart.

Endpoints:
  GET    /                                -> banner text
  GET    /healthz                         -> "ok"
  GET    /api/config                      -> relay document as JSON
  POST   /api/config                      -> replace the relay document
  GET    /api/cameras                     -> list cameras
  POST   /api/cameras                     -> add camera {name, rtspUrl, rtmpUrl}
  PUT    /api/cameras/{name}              -> edit camera {rtspUrl, rtmpUrl}
  DELETE /api/cameras/{name}              -> remove camera
  GET    /api/cameras/{name}/status       -> active / paused / inactive
  POST   /api/cameras/{name}/pause        -> pause the camera's transcoder
  POST   /api/cameras/{name}/play         -> resume a paused camera (also /resume)
  GET    /api/cameras/{name}/stream-settings -> resolution, bitrate, ...
  PUT    /api/cameras/{name}/stream-settings -> rewrite transcode parameters
  GET    /api/status                      -> aggregate relay status
  GET    /api/streams/{name}/status       -> raw relay path record
  GET    /api/streams/{name}/processing   -> transcoder / RTMP output view
  GET    /api/streams/{name}/io           -> input/output throughput view
  GET    /api/server/info                 -> relay global configuration
  GET    /api/logs/{container}?lines=N    -> recent container log lines
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from typing import Any, Mapping

from aiohttp import web
from aiohttp.web import AppKey

from .camera_store import CameraStore, to_plain
from .config import dev_mode_enabled, get_cfg, relay_config_path
from .docker_cli import DockerCLI, log_entries
from .errors import (
    AlreadyExists,
    CamRelayError,
    ConfigIOError,
    InvalidInput,
    InvalidState,
    NotFound,
    UpstreamHTTPError,
    UpstreamUnavailable,
)
from .ffmpeg_args import (
    apply_settings,
    build_run_on_ready,
    normalize_settings_payload,
    read_settings,
    validate_stream_urls,
)
from .lifecycle import (
    Active,
    Paused,
    StreamLifecycle,
    describe_camera,
    effective_command,
    rewrite_command,
    state_of,
    status_payload,
    write_state,
)
from .relay_api import RelayApiClient
from .reload import ReloadOrchestrator
from .status import StatusAggregator

CONFIG_KEY = AppKey("config", dict)
STORE_KEY = AppKey("camera_store", CameraStore)
ORCHESTRATOR_KEY = AppKey("reload_orchestrator", ReloadOrchestrator)
LIFECYCLE_KEY = AppKey("stream_lifecycle", StreamLifecycle)
API_CLIENT_KEY = AppKey("relay_api", RelayApiClient)
STATUS_KEY = AppKey("status_aggregator", StatusAggregator)
DOCKER_KEY = AppKey("docker", DockerCLI)

BANNER = "Camera relay API is running. See /api/cameras, /api/config, etc."

_ERROR_STATUS: dict[type[CamRelayError], int] = {
    NotFound: 404,
    AlreadyExists: 409,
    InvalidInput: 400,
    InvalidState: 409,
    ConfigIOError: 500,
    UpstreamHTTPError: 502,
    UpstreamUnavailable: 503,
}


def _quiet_noisy_dependencies(level: int = logging.WARNING) -> None:
    """Tone down overly chatty third-party loggers."""

    logging.getLogger("aiohttp.access").setLevel(level)


def _error_status(exc: CamRelayError) -> int:
    for cls in type(exc).__mro__:
        if cls in _ERROR_STATUS:
            return _ERROR_STATUS[cls]
    return 500


def _error_response(exc: CamRelayError) -> web.Response:
    payload: dict[str, Any] = {"error": exc.message, "code": exc.kind}
    if exc.details:
        payload["details"] = exc.details
    return web.json_response(payload, status=_error_status(exc))


async def _json_body(request: web.Request) -> Any:
    try:
        return await request.json()
    except ValueError as exc:
        raise InvalidInput("Invalid JSON payload", details=str(exc)) from exc


def _cors_headers(response: web.StreamResponse, origin: str) -> None:
    response.headers["Access-Control-Allow-Origin"] = origin
    response.headers["Access-Control-Allow-Credentials"] = "true"
    response.headers.setdefault("Vary", "Origin")


def build_app(
    cfg: Mapping[str, Any] | None = None,
    *,
    store: CameraStore | None = None,
    orchestrator: ReloadOrchestrator | None = None,
    api_client: RelayApiClient | None = None,
    docker: DockerCLI | None = None,
) -> web.Application:
    log = logging.getLogger("camrelay.web_api")
    cfg = dict(cfg if cfg is not None else get_cfg())
    api_cfg = cfg.get("api", {})
    relay_cfg = cfg.get("relay", {})
    retry_cfg = cfg.get("retry", {})
    logs_cfg = cfg.get("logs", {})

    allowed_origins = {str(origin).strip() for origin in api_cfg.get("cors_origins", []) if str(origin).strip()}

    @web.middleware
    async def _cors_middleware(request: web.Request, handler):
        origin = request.headers.get("Origin")
        if origin and origin not in allowed_origins:
            log.warning("Rejected request from origin %s", origin)
            return web.json_response({"error": "Not allowed by CORS"}, status=403)

        if request.method == "OPTIONS" and origin:
            response: web.StreamResponse = web.Response(status=204)
            response.headers["Access-Control-Allow-Methods"] = "GET,POST,PUT,DELETE,OPTIONS"
            response.headers["Access-Control-Allow-Headers"] = request.headers.get(
                "Access-Control-Request-Headers", "Content-Type"
            )
            response.headers["Access-Control-Max-Age"] = "86400"
        else:
            response = await handler(request)

        if origin:
            _cors_headers(response, origin)
        return response

    @web.middleware
    async def _error_middleware(request: web.Request, handler):
        try:
            return await handler(request)
        except CamRelayError as exc:
            level = logging.ERROR if _error_status(exc) >= 500 else logging.INFO
            log.log(level, "%s %s failed: %s (%s)", request.method, request.path, exc.message, exc.details)
            return _error_response(exc)

    app = web.Application(middlewares=[_cors_middleware, _error_middleware])

    if store is None:
        store = CameraStore(
            relay_config_path(cfg),
            fallback_credentials=(
                str(relay_cfg.get("fallback_user", "admin")),
                str(relay_cfg.get("fallback_pass", "admin")),
            ),
        )
    if docker is None:
        docker = DockerCLI()
    if orchestrator is None:
        orchestrator = ReloadOrchestrator(
            str(relay_cfg.get("container", "mediamtx")),
            docker=docker,
            settle_delay=float(relay_cfg.get("settle_delay_sec", 5.0)),
        )
    if api_client is None:
        api_client = RelayApiClient(
            str(relay_cfg.get("api_url", "http://mediamtx:9997")),
            credentials=store.auth_credentials,
            max_retries=int(retry_cfg.get("max_attempts", 3)),
            base_delay=float(retry_cfg.get("base_delay_sec", 1.0)),
        )

    lifecycle = StreamLifecycle(store, orchestrator)
    aggregator = StatusAggregator(api_client, store)

    app[CONFIG_KEY] = cfg
    app[STORE_KEY] = store
    app[DOCKER_KEY] = docker
    app[ORCHESTRATOR_KEY] = orchestrator
    app[LIFECYCLE_KEY] = lifecycle
    app[API_CLIENT_KEY] = api_client
    app[STATUS_KEY] = aggregator

    async def _close_api_client(app: web.Application) -> None:
        await app[API_CLIENT_KEY].close()

    app.on_cleanup.append(_close_api_client)

    # -- config document ------------------------------------------------

    async def banner(_: web.Request) -> web.Response:
        return web.Response(text=BANNER)

    async def healthz(_: web.Request) -> web.Response:
        return web.Response(text="ok")

    async def config_get(_: web.Request) -> web.Response:
        return web.json_response(to_plain(store.load()))

    async def config_replace(request: web.Request) -> web.Response:
        data = await _json_body(request)
        if not isinstance(data, dict):
            raise InvalidInput("Configuration must be a JSON object")
        store.save(data)
        log.info("Relay configuration replaced via API")
        return web.json_response({"success": True, "message": "Configuration updated successfully"})

    # -- cameras --------------------------------------------------------

    async def cameras_list(_: web.Request) -> web.Response:
        cameras = store.cameras()
        payload = [describe_camera(str(name), to_plain(entry)) for name, entry in cameras.items()]
        return web.json_response(payload)

    async def camera_add(request: web.Request) -> web.Response:
        data = await _json_body(request)
        if not isinstance(data, dict):
            raise InvalidInput("Request body must be a JSON object")
        name = data.get("name")
        rtsp_url = data.get("rtspUrl")
        rtmp_url = data.get("rtmpUrl")
        if not name or not rtsp_url or not rtmp_url:
            raise InvalidInput("Missing required fields: name, rtspUrl, and rtmpUrl are required")
        validate_stream_urls(rtsp_url, rtmp_url)
        entry = {
            "source": rtsp_url,
            "runOnReady": build_run_on_ready(rtsp_url, rtmp_url),
            "runOnReadyRestart": True,
        }
        result = await orchestrator.commit(
            name, lambda: (store.upsert_camera(name, entry, create=True), True)
        )
        log.info("Camera %s added (live=%s)", name, result.live)
        payload = result.to_payload("Camera added successfully")
        payload["camera"] = {"name": name, "rtspUrl": rtsp_url, "rtmpUrl": rtmp_url, **result.entry}
        return web.json_response(payload, status=201)

    async def camera_update(request: web.Request) -> web.Response:
        name = request.match_info["name"]
        data = await _json_body(request)
        if not isinstance(data, dict):
            raise InvalidInput("Request body must be a JSON object")
        rtsp_url = data.get("rtspUrl")
        rtmp_url = data.get("rtmpUrl")
        if not rtsp_url or not rtmp_url:
            raise InvalidInput("Missing required fields: rtspUrl and rtmpUrl are required")
        validate_stream_urls(rtsp_url, rtmp_url)

        def _edit(entry) -> bool:
            state = state_of(entry)
            command = build_run_on_ready(rtsp_url, rtmp_url, read_settings(effective_command(state)))
            entry["source"] = rtsp_url
            if isinstance(state, Paused):
                write_state(entry, Paused(command, True))
            else:
                write_state(entry, Active(command, True))
            return True

        result = await orchestrator.commit(name, lambda: store.mutate_camera(name, _edit))
        payload = result.to_payload("Camera updated successfully")
        payload["camera"] = {"name": name, "rtspUrl": rtsp_url, "rtmpUrl": rtmp_url, **result.entry}
        return web.json_response(payload)

    async def camera_delete(request: web.Request) -> web.Response:
        name = request.match_info["name"]
        log.info("Attempting to delete camera: %s", name)

        def _delete() -> tuple[dict[str, Any], bool]:
            store.delete_camera(name)
            return {}, True

        result = await orchestrator.commit(name, _delete)
        message = f"Camera '{name}' deleted"
        if result.live:
            message += " and relay restarted successfully"
        return web.json_response(result.to_payload(message))

    async def camera_status(request: web.Request) -> web.Response:
        name = request.match_info["name"]
        return web.json_response(status_payload(name, to_plain(store.get_camera(name))))

    async def camera_pause(request: web.Request) -> web.Response:
        name = request.match_info["name"]
        result = await lifecycle.pause(name)
        message = f"Camera '{name}' paused successfully" if result.changed else f"Camera '{name}' is already paused"
        return web.json_response(result.to_payload(message))

    async def camera_resume(request: web.Request) -> web.Response:
        name = request.match_info["name"]
        result = await lifecycle.resume(name)
        return web.json_response(result.to_payload(f"Camera '{name}' resumed successfully"))

    async def stream_settings_get(request: web.Request) -> web.Response:
        name = request.match_info["name"]
        entry = store.get_camera(name)
        settings = read_settings(effective_command(state_of(entry)))
        return web.json_response(settings.to_payload())

    async def stream_settings_update(request: web.Request) -> web.Response:
        name = request.match_info["name"]
        data = await _json_body(request)
        changes, errors = normalize_settings_payload(data)
        if errors:
            raise InvalidInput(errors[0], details="; ".join(errors))

        def _rewrite(entry) -> bool:
            return rewrite_command(entry, lambda command: apply_settings(command, changes))

        result = await orchestrator.commit(name, lambda: store.mutate_camera(name, _rewrite))
        payload = result.to_payload("Stream settings updated")
        payload["updatedCommand"] = effective_command(state_of(result.entry))
        payload["settings"] = read_settings(payload["updatedCommand"]).to_payload()
        return web.json_response(payload)

    # -- relay status ---------------------------------------------------

    async def status_snapshot(_: web.Request) -> web.Response:
        return web.json_response(await aggregator.get_status())

    async def stream_status(request: web.Request) -> web.Response:
        return web.json_response(await aggregator.stream_status(request.match_info["name"]))

    async def stream_processing(request: web.Request) -> web.Response:
        return web.json_response(await aggregator.stream_processing(request.match_info["name"]))

    async def stream_io(request: web.Request) -> web.Response:
        return web.json_response(await aggregator.stream_io(request.match_info["name"]))

    async def server_info(_: web.Request) -> web.Response:
        return web.json_response(await api_client.global_config())

    # -- container logs -------------------------------------------------

    log_containers = [str(item) for item in logs_cfg.get("containers", [])]
    default_lines = int(logs_cfg.get("default_lines", 100))
    max_lines = int(logs_cfg.get("max_lines", 5000))

    async def container_logs(request: web.Request) -> web.Response:
        container = request.match_info["container"]
        if container not in log_containers:
            raise InvalidInput("Invalid container name", details=f"Allowed: {', '.join(log_containers)}")
        raw_lines = request.rel_url.query.get("lines", str(default_lines))
        try:
            lines = int(raw_lines)
        except ValueError:
            raise InvalidInput("lines must be an integer") from None
        if not 1 <= lines <= max_lines:
            raise InvalidInput(f"lines must be between 1 and {max_lines}")

        result = await docker.logs(container, lines)
        if not result.ok:
            log.error("Error getting logs for %s: %s", container, result.message)
            return web.json_response(
                {"error": f"Failed to get logs for {container}", "details": result.message},
                status=500,
            )
        return web.json_response({"container": container, "logs": log_entries(result)})

    app.router.add_get("/", banner)
    app.router.add_get("/healthz", healthz)
    app.router.add_get("/api/config", config_get)
    app.router.add_post("/api/config", config_replace)
    app.router.add_get("/api/cameras", cameras_list)
    app.router.add_post("/api/cameras", camera_add)
    app.router.add_put("/api/cameras/{name}", camera_update)
    app.router.add_delete("/api/cameras/{name}", camera_delete)
    app.router.add_get("/api/cameras/{name}/status", camera_status)
    app.router.add_post("/api/cameras/{name}/pause", camera_pause)
    app.router.add_post("/api/cameras/{name}/play", camera_resume)
    app.router.add_post("/api/cameras/{name}/resume", camera_resume)
    app.router.add_get("/api/cameras/{name}/stream-settings", stream_settings_get)
    app.router.add_put("/api/cameras/{name}/stream-settings", stream_settings_update)
    app.router.add_get("/api/status", status_snapshot)
    app.router.add_get("/api/streams/{name}/status", stream_status)
    app.router.add_get("/api/streams/{name}/processing", stream_processing)
    app.router.add_get("/api/streams/{name}/io", stream_io)
    app.router.add_get("/api/server/info", server_info)
    app.router.add_get("/api/logs/{container}", container_logs)

    return app


async def serve(
    app: web.Application,
    host: str,
    port: int,
    *,
    access_log: bool = False,
    probe: bool = True,
) -> None:
    """Probe the relay API, then serve ``app`` until cancelled."""

    log = logging.getLogger("camrelay.web_api")
    cfg = app[CONFIG_KEY]
    if probe:
        probe_cfg = cfg.get("startup_probe", {})
        await app[API_CLIENT_KEY].probe(
            attempts=int(probe_cfg.get("attempts", 10)),
            interval=float(probe_cfg.get("interval_sec", 5.0)),
            timeout=float(probe_cfg.get("timeout_sec", 10.0)),
        )

    runner = web.AppRunner(app, access_log=logging.getLogger("aiohttp.access") if access_log else None)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    log.info("Camera relay API running on %s:%s", host, port)
    log.info("Relay API URL: %s", cfg.get("relay", {}).get("api_url"))
    log.info("CORS origins: %s", ", ".join(cfg.get("api", {}).get("cors_origins", [])))
    try:
        await asyncio.Event().wait()
    finally:
        await runner.cleanup()


def cli_main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Camera relay management API.")
    parser.add_argument("--host", help="Override bind host (defaults to config).")
    parser.add_argument("--port", type=int, help="Override bind port (defaults to config).")
    parser.add_argument("--access-log", action="store_true", help="Enable aiohttp access logs.")
    parser.add_argument("--log-level", default="INFO", help="Python logging level (default: INFO).")
    parser.add_argument(
        "--skip-probe",
        action="store_true",
        help="Do not wait for the relay API before serving.",
    )
    args = parser.parse_args(argv)

    cfg = get_cfg()
    level_name = "DEBUG" if dev_mode_enabled(cfg) else args.log_level.upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    if not args.access_log:
        _quiet_noisy_dependencies()
    log = logging.getLogger("camrelay.web_api")

    api_cfg = cfg.get("api", {})
    bind_host = args.host or str(api_cfg.get("listen_host", "0.0.0.0"))
    bind_port = args.port or int(api_cfg.get("listen_port", 3001))
    log.info("Starting camera relay API (config: %s)", relay_config_path(cfg))

    app = build_app(cfg)
    try:
        asyncio.run(
            serve(
                app,
                bind_host,
                bind_port,
                access_log=args.access_log,
                probe=not args.skip_probe,
            )
        )
    except KeyboardInterrupt:
        log.info("Shutting down")
    except OSError as exc:
        log.error("Failed to start server: %s", exc)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(cli_main())
