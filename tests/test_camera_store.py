from __future__ import annotations

import threading
from pathlib import Path

import pytest
import yaml

from camrelay.camera_store import CameraStore, get_auth_credentials, to_plain
from camrelay.errors import AlreadyExists, ConfigIOError, InvalidInput, NotFound

from conftest import CAM1_COMMAND, RELAY_DOCUMENT


def test_load_returns_cameras_and_unknown_keys(store: CameraStore):
    doc = store.load()
    assert list(doc["paths"].keys()) == ["cam1", "cam2"]
    assert doc["paths"]["cam1"]["runOnReady"] == CAM1_COMMAND
    assert doc["paths"]["cam1"]["customLabel"] == "Front door"


def test_save_of_loaded_document_is_lossless(store: CameraStore, relay_config: Path):
    before = store.load()
    store.save(before)
    after = store.load()
    assert to_plain(after) == to_plain(before)
    assert list(after.keys()) == list(before.keys())
    assert list(after["paths"]["cam1"].keys()) == list(before["paths"]["cam1"].keys())
    # comments and layout survive as well
    assert relay_config.read_text(encoding="utf-8") == RELAY_DOCUMENT


def test_long_commands_are_not_folded(store: CameraStore, relay_config: Path):
    store.save(store.load())
    lines = relay_config.read_text(encoding="utf-8").splitlines()
    assert f"    runOnReady: {CAM1_COMMAND}" in lines


def test_get_camera_missing(store: CameraStore):
    with pytest.raises(NotFound):
        store.get_camera("nope")


def test_add_camera(store: CameraStore, relay_config: Path):
    entry = {"source": "rtsp://10.0.0.7/1", "runOnReady": "ffmpeg -an", "runOnReadyRestart": True}
    result = store.upsert_camera("cam3", entry, create=True)
    assert result == entry
    persisted = yaml.safe_load(relay_config.read_text(encoding="utf-8"))
    assert persisted["paths"]["cam3"] == entry
    assert persisted["paths"]["cam1"]["customLabel"] == "Front door"


def test_add_duplicate_camera_fails(store: CameraStore):
    with pytest.raises(AlreadyExists):
        store.upsert_camera("cam1", {"source": "rtsp://x/1"}, create=True)


def test_edit_missing_camera_fails(store: CameraStore):
    with pytest.raises(NotFound):
        store.upsert_camera("ghost", {"source": "rtsp://x/1"}, create=False)


def test_edit_keeps_unknown_keys(store: CameraStore, relay_config: Path):
    store.upsert_camera("cam1", {"source": "rtsp://10.0.0.99/1"}, create=False)
    persisted = yaml.safe_load(relay_config.read_text(encoding="utf-8"))
    cam1 = persisted["paths"]["cam1"]
    assert cam1["source"] == "rtsp://10.0.0.99/1"
    assert cam1["customLabel"] == "Front door"
    assert cam1["sourceOnDemand"] is False
    assert cam1["runOnReady"] == CAM1_COMMAND


def test_add_creates_paths_section(tmp_path: Path):
    path = tmp_path / "relay.yml"
    path.write_text("logLevel: info\n", encoding="utf-8")
    store = CameraStore(path)
    store.upsert_camera("cam1", {"source": "rtsp://a/1"}, create=True)
    assert yaml.safe_load(path.read_text(encoding="utf-8")) == {
        "logLevel": "info",
        "paths": {"cam1": {"source": "rtsp://a/1"}},
    }


def test_delete_camera(store: CameraStore, relay_config: Path):
    store.delete_camera("cam2")
    persisted = yaml.safe_load(relay_config.read_text(encoding="utf-8"))
    assert list(persisted["paths"]) == ["cam1"]
    with pytest.raises(NotFound):
        store.delete_camera("cam2")


def test_invalid_camera_name(store: CameraStore):
    with pytest.raises(InvalidInput):
        store.delete_camera("  ")


def test_mutate_camera_without_change_does_not_write(store: CameraStore, relay_config: Path):
    relay_config.write_text(RELAY_DOCUMENT + "# trailing\n", encoding="utf-8")
    entry, changed = store.mutate_camera("cam1", lambda entry: False)
    assert changed is False
    assert entry["customLabel"] == "Front door"
    assert relay_config.read_text(encoding="utf-8").endswith("# trailing\n")


def test_missing_document_is_config_error(tmp_path: Path):
    store = CameraStore(tmp_path / "absent.yml")
    with pytest.raises(ConfigIOError):
        store.cameras()


def test_unparseable_document_is_config_error(tmp_path: Path):
    path = tmp_path / "broken.yml"
    path.write_text("paths: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigIOError, match="parse"):
        CameraStore(path).load()


def test_non_mapping_paths_is_config_error(tmp_path: Path):
    path = tmp_path / "odd.yml"
    path.write_text("paths:\n  - cam1\n", encoding="utf-8")
    with pytest.raises(ConfigIOError):
        CameraStore(path).cameras()


def test_save_rejects_non_mapping(store: CameraStore):
    with pytest.raises(InvalidInput):
        store.save(["not", "a", "mapping"])  # type: ignore[arg-type]


def test_concurrent_mutations_are_serialized(store: CameraStore, relay_config: Path):
    names = [f"extra{i}" for i in range(8)]
    barrier = threading.Barrier(len(names))
    errors: list[BaseException] = []

    def _add(name: str) -> None:
        try:
            barrier.wait()
            store.upsert_camera(name, {"source": f"rtsp://host/{name}"}, create=True)
        except BaseException as exc:  # noqa: BLE001 - collected for the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=_add, args=(name,)) for name in names]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    persisted = yaml.safe_load(relay_config.read_text(encoding="utf-8"))
    assert set(names) <= set(persisted["paths"])


def test_auth_credentials_prefers_internal_users(store: CameraStore):
    assert store.auth_credentials() == ("relayuser", "relaypass")


def test_auth_credentials_fallbacks():
    fallback = ("fb-user", "fb-pass")
    assert get_auth_credentials({}, fallback) == fallback
    assert get_auth_credentials(None, fallback) == fallback
    assert get_auth_credentials({"authInternalUsers": [{"user": "u"}]}, fallback) == ("u", "fb-pass")
    legacy = {"paths": {"all": {"readUser": "r", "readPass": "p"}}}
    assert get_auth_credentials(legacy, fallback) == ("r", "p")


def test_auth_credentials_when_document_unreadable(tmp_path: Path):
    store = CameraStore(tmp_path / "absent.yml", fallback_credentials=("x", "y"))
    assert store.auth_credentials() == ("x", "y")
