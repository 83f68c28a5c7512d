"""Read/modify/write access to the media relay's YAML document.

Every operation goes back to disk: there is no in-memory cache, so edits made
by hand (or by the relay's own tooling) are always picked up. Mutations are
serialised through one re-entrant lock per document path; the lock covers the
load-mutate-save sequence and nothing else, so callers can trigger a relay
restart afterwards without blocking other writers.

The round-trip loader keeps key order, quoting and comments, and any keys this
service does not know about survive an edit untouched.
"""

from __future__ import annotations

import copy
import io
import logging
import threading
from pathlib import Path
from typing import Any, Callable, Mapping, MutableMapping, Sequence

from ruamel.yaml import YAML
from ruamel.yaml.comments import CommentedMap, CommentedSeq
from ruamel.yaml.error import YAMLError
from ruamel.yaml.scalarbool import ScalarBoolean

from .errors import AlreadyExists, ConfigIOError, InvalidInput, NotFound

log = logging.getLogger("camrelay.camera_store")

_ROUND_TRIP_YAML = YAML(typ="rt")
_ROUND_TRIP_YAML.indent(mapping=2, sequence=4, offset=2)
_ROUND_TRIP_YAML.default_flow_style = False
_ROUND_TRIP_YAML.allow_unicode = True
_ROUND_TRIP_YAML.preserve_quotes = True
# runOnReady lines are long; never fold them.
_ROUND_TRIP_YAML.width = 4096

PATHS_KEY = "paths"
AUTH_USERS_KEY = "authInternalUsers"

DEFAULT_FALLBACK_CREDENTIALS: tuple[str, str] = ("admin", "admin")

_locks_guard = threading.Lock()
_path_locks: dict[Path, threading.RLock] = {}


def _lock_for(path: Path) -> threading.RLock:
    with _locks_guard:
        lock = _path_locks.get(path)
        if lock is None:
            lock = threading.RLock()
            _path_locks[path] = lock
        return lock


def _convert_to_round_trip(value: Any) -> Any:
    if isinstance(value, (CommentedMap, CommentedSeq)):
        return value
    if isinstance(value, Mapping):
        converted = CommentedMap()
        for key, sub_value in value.items():
            converted[key] = _convert_to_round_trip(sub_value)
        return converted
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes)):
        converted_seq = CommentedSeq()
        for item in value:
            converted_seq.append(_convert_to_round_trip(item))
        return converted_seq
    return copy.deepcopy(value)


def _ensure_mapping(container: MutableMapping[str, Any], key: str) -> MutableMapping[str, Any]:
    existing = container.get(key)
    if isinstance(existing, MutableMapping):
        return existing
    if existing is not None and not isinstance(existing, Mapping):
        raise ConfigIOError(f"Configuration key {key!r} is not a mapping")
    new_map = _convert_to_round_trip(existing or {})
    container[key] = new_map
    return new_map


def _replace_mapping(
    target: MutableMapping[str, Any],
    updates: Mapping[str, Any],
    *,
    prune: bool,
) -> None:
    if prune:
        for existing_key in list(target.keys()):
            if existing_key not in updates:
                del target[existing_key]
    for key, value in updates.items():
        if isinstance(value, Mapping):
            existing = target.get(key)
            if isinstance(existing, MutableMapping):
                _replace_mapping(existing, value, prune=prune)
            else:
                target[key] = _convert_to_round_trip(value)
        elif isinstance(value, Sequence) and not isinstance(value, (str, bytes)):
            target[key] = _convert_to_round_trip(value)
        else:
            target[key] = copy.deepcopy(value)


def to_plain(value: Any) -> Any:
    """Strip round-trip wrapper types so the value can be JSON encoded."""

    if isinstance(value, Mapping):
        return {str(key): to_plain(sub_value) for key, sub_value in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes)):
        return [to_plain(item) for item in value]
    if isinstance(value, ScalarBoolean):
        return bool(value)
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, str):
        return str(value)
    if isinstance(value, int):
        return int(value)
    if isinstance(value, float):
        return float(value)
    return value


def get_auth_credentials(
    doc: Mapping[str, Any] | None,
    fallback: tuple[str, str] = DEFAULT_FALLBACK_CREDENTIALS,
) -> tuple[str, str]:
    """Basic-auth pair for the relay query API.

    Prefers ``authInternalUsers[0]``, then the legacy ``paths.all.readUser`` /
    ``readPass`` pair, then ``fallback``. Missing halves fall back individually.
    """

    user, password = fallback
    if not isinstance(doc, Mapping):
        return user, password

    users = doc.get(AUTH_USERS_KEY)
    if isinstance(users, Sequence) and not isinstance(users, (str, bytes)) and users:
        first = users[0]
        if isinstance(first, Mapping):
            return str(first.get("user") or user), str(first.get("pass") or password)
        return user, password

    paths = doc.get(PATHS_KEY)
    if isinstance(paths, Mapping):
        all_paths = paths.get("all")
        if isinstance(all_paths, Mapping):
            return (
                str(all_paths.get("readUser") or user),
                str(all_paths.get("readPass") or password),
            )
    return user, password


def _validate_name(name: Any) -> str:
    if not isinstance(name, str) or not name.strip():
        raise InvalidInput(
            "Invalid camera name",
            details="Camera name is required and must be a non-empty string",
        )
    return name


class CameraStore:
    """Camera CRUD over the relay document at ``path``."""

    def __init__(
        self,
        path: str | Path,
        *,
        fallback_credentials: tuple[str, str] = DEFAULT_FALLBACK_CREDENTIALS,
    ) -> None:
        self.path = Path(path)
        self.fallback_credentials = fallback_credentials
        self._lock = _lock_for(self.path.expanduser().resolve())

    # -- whole document -------------------------------------------------

    def load(self) -> CommentedMap:
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                data = _ROUND_TRIP_YAML.load(handle)
        except FileNotFoundError as exc:
            raise ConfigIOError("Failed to read configuration file", details=str(exc)) from exc
        except OSError as exc:
            raise ConfigIOError("Failed to read configuration file", details=str(exc)) from exc
        except YAMLError as exc:
            raise ConfigIOError("Failed to parse configuration file", details=str(exc)) from exc
        if data is None:
            return CommentedMap()
        if not isinstance(data, CommentedMap):
            raise ConfigIOError(
                "Failed to parse configuration file",
                details="Configuration root must be a mapping",
            )
        paths = data.get(PATHS_KEY)
        if paths is not None and not isinstance(paths, Mapping):
            raise ConfigIOError(
                "Failed to parse configuration file",
                details=f"{PATHS_KEY!r} must be a mapping",
            )
        return data

    def save(self, doc: Mapping[str, Any]) -> None:
        if not isinstance(doc, Mapping):
            raise InvalidInput("Configuration root must be a mapping")
        payload = _convert_to_round_trip(doc)
        buffer = io.StringIO()
        try:
            _ROUND_TRIP_YAML.dump(payload, buffer)
        except (YAMLError, TypeError, ValueError) as exc:
            raise ConfigIOError("Failed to serialize configuration", details=str(exc)) from exc
        with self._lock:
            try:
                # Written in place: the document is usually a bind-mounted
                # file, which cannot be replaced by rename.
                with self.path.open("w", encoding="utf-8") as handle:
                    handle.write(buffer.getvalue())
            except OSError as exc:
                raise ConfigIOError(
                    "Failed to update configuration file", details=str(exc)
                ) from exc
        log.debug("Wrote relay configuration to %s", self.path)

    def update(self, mutator: Callable[[CommentedMap], bool]) -> bool:
        """Run ``mutator`` against a fresh copy of the document and persist it.

        The mutator returns True when it changed something; nothing is written
        otherwise. The whole sequence holds the writer lock.
        """

        with self._lock:
            doc = self.load()
            changed = bool(mutator(doc))
            if changed:
                self.save(doc)
            return changed

    # -- cameras --------------------------------------------------------

    def cameras(self) -> CommentedMap:
        doc = self.load()
        paths = doc.get(PATHS_KEY)
        if paths is None:
            return CommentedMap()
        return paths

    def get_camera(self, name: str) -> CommentedMap:
        _validate_name(name)
        paths = self.cameras()
        if name not in paths:
            raise NotFound("Camera not found", details=f"Camera '{name}' does not exist in the configuration")
        entry = paths[name]
        if entry is None:
            return CommentedMap()
        if not isinstance(entry, Mapping):
            raise ConfigIOError(
                "Failed to parse configuration file",
                details=f"Camera '{name}' is not a mapping",
            )
        return entry

    def upsert_camera(
        self,
        name: str,
        entry: Mapping[str, Any],
        *,
        create: bool,
    ) -> dict[str, Any]:
        """Add (``create=True``) or edit a camera entry.

        Adding fails with AlreadyExists if the name is taken; editing fails with
        NotFound if it is not. Edits merge into the stored entry so unknown keys
        are kept.
        """

        _validate_name(name)
        if not isinstance(entry, Mapping):
            raise InvalidInput("Camera entry must be a mapping")
        result: dict[str, Any] = {}

        def _mutate(doc: CommentedMap) -> bool:
            paths = _ensure_mapping(doc, PATHS_KEY)
            exists = name in paths
            if create and exists:
                raise AlreadyExists("Camera with this name already exists", details=name)
            if not create and not exists:
                raise NotFound("Camera not found", details=f"Camera '{name}' does not exist in the configuration")
            if create:
                paths[name] = _convert_to_round_trip(entry)
            else:
                target = _ensure_mapping(paths, name)
                _replace_mapping(target, entry, prune=False)
            result.update(to_plain(paths[name]))
            return True

        self.update(_mutate)
        log.info("Camera %s %s", name, "added" if create else "updated")
        return result

    def mutate_camera(
        self,
        name: str,
        mutator: Callable[[CommentedMap], bool],
    ) -> tuple[dict[str, Any], bool]:
        """Apply ``mutator`` to one camera entry in place.

        Returns a plain copy of the resulting entry and whether it was written.
        """

        _validate_name(name)
        result: dict[str, Any] = {}

        def _mutate(doc: CommentedMap) -> bool:
            paths = doc.get(PATHS_KEY)
            if not isinstance(paths, MutableMapping) or name not in paths:
                raise NotFound("Camera not found", details=f"Camera '{name}' does not exist in the configuration")
            entry = _ensure_mapping(paths, name)
            changed = bool(mutator(entry))
            result.update(to_plain(entry))
            return changed

        changed = self.update(_mutate)
        return result, changed

    def delete_camera(self, name: str) -> None:
        _validate_name(name)

        def _mutate(doc: CommentedMap) -> bool:
            paths = doc.get(PATHS_KEY)
            if not isinstance(paths, MutableMapping) or name not in paths:
                raise NotFound("Camera not found", details=f"Camera '{name}' does not exist in the configuration")
            del paths[name]
            return True

        self.update(_mutate)
        log.info("Camera %s removed from configuration", name)

    # -- credentials ----------------------------------------------------

    def auth_credentials(self) -> tuple[str, str]:
        try:
            doc = self.load()
        except ConfigIOError as exc:
            log.warning("Using fallback relay API credentials: %s", exc.details or exc)
            return self.fallback_credentials
        return get_auth_credentials(doc, self.fallback_credentials)
