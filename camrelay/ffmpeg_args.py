"""Helpers for reading and rewriting the ffmpeg invocation stored in runOnReady.

The relay stores each camera's transcoder as one flat command line. We treat
it as an ordered list of tokens: a handful of recognised flags, each owning
exactly one value token, and everything else passed through untouched. Edits
overwrite a flag's value in place or, when the flag is missing, insert the
pair right before the ``-an`` anchor so the output URL and reconnect options
stay at the tail of the command.
"""

from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass
from typing import Any, Iterable, Iterator, Mapping

from .errors import InvalidInput

log = logging.getLogger("camrelay.ffmpeg_args")

FFMPEG_BINARY = "/usr/bin/ffmpeg"
NO_AUDIO_ANCHOR = "-an"

FLAG_KIND = "flag"
VALUE_KIND = "value"
ARG_KIND = "arg"

# flag -> StreamSettings field it encodes
RECOGNIZED_FLAGS: dict[str, str] = {
    "-vf": "resolution",
    "-maxrate": "bitrate",
    "-bufsize": "bitrate",
    "-r": "framerate",
    "-crf": "quality",
    "-preset": "preset",
}

SETTINGS_FIELDS: tuple[str, ...] = ("resolution", "bitrate", "framerate", "quality", "preset")

X264_PRESETS: frozenset[str] = frozenset(
    {
        "ultrafast",
        "superfast",
        "veryfast",
        "faster",
        "fast",
        "medium",
        "slow",
        "slower",
        "veryslow",
        "placebo",
    }
)

_SCALE_PATTERN = re.compile(r"scale=(\d+:\d+)")
_RESOLUTION_PATTERN = re.compile(r"^\d+:\d+$")
_RTMP_PATTERN = re.compile(r"rtmp://([^\s\"']+)")
_VIDEO_BITRATE_PATTERN = re.compile(r"-b:v\s+(\d+)k")


@dataclass(frozen=True, slots=True)
class ArgumentToken:
    text: str
    kind: str = ARG_KIND

    @property
    def is_flag(self) -> bool:
        return self.kind == FLAG_KIND


@dataclass(slots=True)
class StreamSettings:
    """Flattened transcode parameters; every field is kept as a string."""

    resolution: str = "640:360"
    bitrate: str = "400"
    framerate: str = "15"
    quality: str = "32"
    preset: str = "veryfast"

    def to_payload(self) -> dict[str, str]:
        return asdict(self)


DEFAULT_SETTINGS = StreamSettings()


def tokenize(command: str | None) -> list[ArgumentToken]:
    """Split a command line on whitespace and tag recognised flag/value pairs."""

    if not isinstance(command, str):
        return []
    tokens: list[ArgumentToken] = []
    expect_value = False
    for word in command.split():
        if expect_value:
            tokens.append(ArgumentToken(word, VALUE_KIND))
            expect_value = False
        elif word in RECOGNIZED_FLAGS:
            tokens.append(ArgumentToken(word, FLAG_KIND))
            expect_value = True
        else:
            tokens.append(ArgumentToken(word, ARG_KIND))
    return tokens


class ArgumentList:
    """Ordered, editable view of a tokenised command line."""

    def __init__(self, tokens: Iterable[ArgumentToken] = ()) -> None:
        self._tokens: list[ArgumentToken] = list(tokens)

    @classmethod
    def parse(cls, command: str | None) -> "ArgumentList":
        return cls(tokenize(command))

    def __iter__(self) -> Iterator[ArgumentToken]:
        return iter(self._tokens)

    def __len__(self) -> int:
        return len(self._tokens)

    @property
    def tokens(self) -> list[ArgumentToken]:
        return list(self._tokens)

    def render(self) -> str:
        return " ".join(token.text for token in self._tokens)

    def index_of(self, flag: str) -> int | None:
        for index, token in enumerate(self._tokens):
            if token.is_flag and token.text == flag:
                return index
        return None

    def anchor_index(self, anchor: str = NO_AUDIO_ANCHOR) -> int | None:
        for index, token in enumerate(self._tokens):
            if token.kind == ARG_KIND and token.text == anchor:
                return index
        return None

    def value_of(self, flag: str) -> str | None:
        index = self.index_of(flag)
        if index is None or index + 1 >= len(self._tokens):
            return None
        following = self._tokens[index + 1]
        if following.kind != VALUE_KIND:
            return None
        return following.text

    def set_value(self, flag: str, value: str) -> bool:
        """Overwrite the value of an existing flag. Returns False if absent."""

        index = self.index_of(flag)
        if index is None:
            return False
        replacement = ArgumentToken(value, VALUE_KIND)
        if index + 1 < len(self._tokens) and self._tokens[index + 1].kind == VALUE_KIND:
            self._tokens[index + 1] = replacement
        else:
            self._tokens.insert(index + 1, replacement)
        return True

    def insert_before(self, anchor: str, flag: str, value: str) -> bool:
        index = self.anchor_index(anchor)
        if index is None:
            return False
        self._tokens[index:index] = [
            ArgumentToken(flag, FLAG_KIND),
            ArgumentToken(value, VALUE_KIND),
        ]
        return True

    def apply(self, flag: str, value: str, *, anchor: str = NO_AUDIO_ANCHOR) -> bool:
        """Set ``flag`` to ``value``, inserting the pair before ``anchor`` if needed."""

        if self.set_value(flag, value):
            return True
        if self.insert_before(anchor, flag, value):
            return True
        log.warning("Cannot add %s %s: anchor %s not found in command", flag, value, anchor)
        return False


def _strip_kbit_suffix(value: str) -> str:
    if value[-1:] in ("k", "K"):
        return value[:-1]
    return value


def read_settings(command: str | None) -> StreamSettings:
    """Recover StreamSettings from a command, defaulting each field on its own."""

    args = ArgumentList.parse(command)
    settings = StreamSettings()

    vf = args.value_of("-vf")
    if vf:
        match = _SCALE_PATTERN.search(vf)
        if match:
            settings.resolution = match.group(1)

    maxrate = args.value_of("-maxrate")
    if maxrate:
        settings.bitrate = _strip_kbit_suffix(maxrate)

    framerate = args.value_of("-r")
    if framerate:
        settings.framerate = framerate

    crf = args.value_of("-crf")
    if crf:
        settings.quality = crf

    preset = args.value_of("-preset")
    if preset:
        settings.preset = preset

    return settings


def _scale_filter(current: str | None, resolution: str) -> str:
    replacement = f"scale={resolution}"
    if not current:
        return replacement
    if _SCALE_PATTERN.search(current):
        return _SCALE_PATTERN.sub(replacement, current, count=1)
    return f"{replacement},{current}"


def apply_settings(command: str, changes: Mapping[str, str]) -> str:
    """Return ``command`` with the requested StreamSettings fields rewritten.

    ``changes`` may hold any subset of the settings fields. Bitrate drives both
    ``-maxrate`` and ``-bufsize`` (twice the bitrate).
    """

    args = ArgumentList.parse(command)

    resolution = changes.get("resolution")
    if resolution:
        args.apply("-vf", _scale_filter(args.value_of("-vf"), resolution))

    bitrate = changes.get("bitrate")
    if bitrate:
        args.apply("-maxrate", f"{bitrate}k")
        args.apply("-bufsize", f"{int(bitrate) * 2}k")

    framerate = changes.get("framerate")
    if framerate:
        args.apply("-r", str(framerate))

    quality = changes.get("quality")
    if quality:
        args.apply("-crf", str(quality))

    preset = changes.get("preset")
    if preset:
        args.apply("-preset", preset)

    return args.render()


def _as_text(value: Any) -> str | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, str)):
        text = str(value).strip()
        return text or None
    return None


def _is_ascii_int(text: str) -> bool:
    return text.isascii() and text.isdigit()


def normalize_settings_payload(payload: Any) -> tuple[dict[str, str], list[str]]:
    """Validate a stream-settings request body.

    Returns the accepted subset of fields and a list of human readable errors.
    Unknown keys are ignored.
    """

    if not isinstance(payload, Mapping):
        return {}, ["Request body must be a JSON object"]

    normalized: dict[str, str] = {}
    errors: list[str] = []

    for field in SETTINGS_FIELDS:
        raw = payload.get(field)
        if raw is None or raw == "":
            continue
        text = _as_text(raw)
        if text is None:
            errors.append(f"{field} must be a string or number")
            continue
        if field == "resolution":
            text = text.replace("x", ":")
            if not _RESOLUTION_PATTERN.match(text):
                errors.append("resolution must look like WIDTH:HEIGHT")
                continue
        elif field in ("bitrate", "framerate"):
            if not _is_ascii_int(text) or int(text) <= 0:
                errors.append(f"{field} must be a positive integer")
                continue
            text = str(int(text))
        elif field == "quality":
            if not _is_ascii_int(text) or not 0 <= int(text) <= 51:
                errors.append("quality must be an integer between 0 and 51")
                continue
            text = str(int(text))
        elif field == "preset":
            if text not in X264_PRESETS:
                errors.append(f"preset must be one of: {', '.join(sorted(X264_PRESETS))}")
                continue
        normalized[field] = text

    return normalized, errors


def build_run_on_ready(
    rtsp_url: str,
    rtmp_url: str,
    settings: StreamSettings | None = None,
) -> str:
    """Default relay invocation: RTSP in, H.264 FLV out to ``rtmp_url``."""

    base = DEFAULT_SETTINGS
    command = " ".join(
        [
            FFMPEG_BINARY,
            "-rtsp_transport tcp",
            f"-i {rtsp_url}",
            "-c:v libx264",
            f"-preset {base.preset}",
            f"-crf {base.quality}",
            f"-maxrate {base.bitrate}k",
            f"-bufsize {int(base.bitrate) * 2}k",
            "-g 30",
            "-keyint_min 15",
            f"-vf scale={base.resolution}",
            f"-r {base.framerate}",
            NO_AUDIO_ANCHOR,
            f"-f flv {rtmp_url}",
            "-y",
            "-reconnect 1",
            "-reconnect_at_eof 1",
            "-reconnect_streamed 1",
            "-reconnect_delay_max 2",
            "-timeout 5000000",
        ]
    )
    if settings is None or settings == base:
        return command
    changes = {
        key: value
        for key, value in settings.to_payload().items()
        if value != getattr(base, key)
    }
    return apply_settings(command, changes)


def extract_rtmp_target(command: str | None) -> str | None:
    """Return the ``rtmp://`` output URL embedded in a command, if any."""

    if not isinstance(command, str):
        return None
    match = _RTMP_PATTERN.search(command)
    if not match:
        return None
    return f"rtmp://{match.group(1)}"


def extract_video_bitrate(command: str | None) -> int | None:
    """Explicit ``-b:v <n>k`` value in kbps, if the command sets one."""

    if not isinstance(command, str):
        return None
    match = _VIDEO_BITRATE_PATTERN.search(command)
    if not match:
        return None
    return int(match.group(1))


def validate_stream_urls(rtsp_url: Any, rtmp_url: Any) -> None:
    if not isinstance(rtsp_url, str) or not rtsp_url.startswith("rtsp://"):
        raise InvalidInput("RTSP URL must start with rtsp://")
    if not isinstance(rtmp_url, str) or not rtmp_url.startswith("rtmp://"):
        raise InvalidInput("RTMP URL must start with rtmp://")
    if any(ch.isspace() for ch in rtsp_url + rtmp_url):
        raise InvalidInput("Stream URLs must not contain whitespace")
