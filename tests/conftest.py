from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from camrelay import config as config_module
from camrelay.camera_store import CameraStore
from camrelay.docker_cli import CommandResult, DockerCLI

CAM1_COMMAND = (
    "/usr/bin/ffmpeg -rtsp_transport tcp -i rtsp://10.0.0.5:554/stream1 -c:v libx264 "
    "-preset veryfast -crf 32 -maxrate 400k -bufsize 800k -g 30 -keyint_min 15 "
    "-vf scale=640:360 -r 15 -an -f flv rtmp://live.example.com/app/cam1 -y "
    "-reconnect 1 -reconnect_at_eof 1 -reconnect_streamed 1 -reconnect_delay_max 2 "
    "-timeout 5000000"
)

RELAY_DOCUMENT = f"""\
# relay configuration
logLevel: info
api: true
apiAddress: ':9997'
authInternalUsers:
  - user: relayuser
    pass: relaypass
    permissions:
      - action: api
paths:
  cam1:
    source: rtsp://10.0.0.5:554/stream1
    runOnReady: {CAM1_COMMAND}
    runOnReadyRestart: true
    sourceOnDemand: false
    customLabel: Front door
  cam2:
    source: rtsp://10.0.0.6:554/stream1
    customLabel: Garage
"""


@pytest.fixture
def relay_config(tmp_path: Path) -> Path:
    path = tmp_path / "mediamtx.yml"
    path.write_text(RELAY_DOCUMENT, encoding="utf-8")
    return path


@pytest.fixture
def store(relay_config: Path) -> CameraStore:
    return CameraStore(relay_config)


@pytest.fixture(autouse=True)
def reset_config_cache(monkeypatch):
    monkeypatch.setattr(config_module, "_cfg_cache", None, raising=False)
    monkeypatch.setattr(config_module, "_search_paths", [], raising=False)
    monkeypatch.setattr(config_module, "_active_config_path", None, raising=False)
    yield
    monkeypatch.setattr(config_module, "_cfg_cache", None, raising=False)


class FakeDocker(DockerCLI):
    """Records docker invocations and answers from a script."""

    def __init__(
        self,
        *,
        restart: CommandResult | None = None,
        ps: CommandResult | None = None,
        logs: CommandResult | None = None,
    ) -> None:
        super().__init__("docker")
        self.calls: list[list[str]] = []
        self.responses = {
            "restart": restart or CommandResult(0, "mediamtx\n", ""),
            "ps": ps or CommandResult(0, "mediamtx\tUp 4 seconds\n", ""),
            "logs": logs or CommandResult(0, "", ""),
        }

    async def run(self, args) -> CommandResult:
        args = list(args)
        self.calls.append(args)
        return self.responses[args[0]]

    @property
    def restarts(self) -> int:
        return sum(1 for call in self.calls if call[0] == "restart")


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def fake_docker() -> FakeDocker:
    return FakeDocker()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


def relay_api_app(routes: dict[str, Any], *, hits: dict[str, int] | None = None) -> web.Application:
    """Fake relay query API.

    ``routes`` maps a request path to a JSON payload, an int status code, or a
    list of those consumed one per request.
    """

    hits = hits if hits is not None else {}

    async def handler(request: web.Request) -> web.Response:
        path = request.path
        hits[path] = hits.get(path, 0) + 1
        if path not in routes:
            return web.json_response({"error": "not found"}, status=404)
        answer = routes[path]
        if isinstance(answer, list):
            answer = answer.pop(0) if len(answer) > 1 else answer[0]
        if isinstance(answer, int):
            return web.json_response({"error": "scripted"}, status=answer)
        return web.json_response(answer)

    app = web.Application()
    app.router.add_get("/{tail:.*}", handler)
    return app


async def start_relay_api(routes: dict[str, Any], hits: dict[str, int] | None = None) -> TestServer:
    server = TestServer(relay_api_app(routes, hits=hits))
    await server.start_server()
    return server
