from __future__ import annotations

import logging

import pytest

from camrelay import ffmpeg_args
from camrelay.errors import InvalidInput
from camrelay.ffmpeg_args import (
    ArgumentList,
    StreamSettings,
    apply_settings,
    build_run_on_ready,
    extract_rtmp_target,
    normalize_settings_payload,
    read_settings,
    tokenize,
)

from conftest import CAM1_COMMAND

TAIL = "-f flv rtmp://live.example.com/app/cam1 -y -reconnect 1 -reconnect_at_eof 1"


def test_tokenize_tags_flag_value_pairs():
    tokens = tokenize("ffmpeg -i in -r 15 -an out")
    assert [t.kind for t in tokens] == ["arg", "arg", "arg", "flag", "value", "arg", "arg"]
    assert tokens[4].text == "15"


def test_tokenize_handles_missing_command():
    assert tokenize(None) == []
    assert ArgumentList.parse(None).render() == ""


def test_read_settings_from_default_command():
    settings = read_settings(CAM1_COMMAND)
    assert settings == StreamSettings("640:360", "400", "15", "32", "veryfast")


def test_read_settings_defaults_each_field_independently():
    settings = read_settings("ffmpeg -i in -vf scale=1920:1080 -maxrate 900k -an out")
    assert settings.resolution == "1920:1080"
    assert settings.bitrate == "900"
    assert settings.framerate == "15"
    assert settings.quality == "32"
    assert settings.preset == "veryfast"


def test_read_settings_with_trailing_flag_and_no_value():
    settings = read_settings("ffmpeg -i in -an out -crf")
    assert settings.quality == "32"


def test_read_settings_with_absent_command_returns_defaults():
    assert read_settings(None) == StreamSettings()
    assert read_settings("") == StreamSettings()


def test_settings_round_trip_through_command():
    requested = {
        "resolution": "1280:720",
        "bitrate": "800",
        "framerate": "20",
        "quality": "23",
        "preset": "fast",
    }
    updated = apply_settings(CAM1_COMMAND, requested)
    assert read_settings(updated).to_payload() == requested


def test_bitrate_update_recomputes_bufsize():
    updated = apply_settings(CAM1_COMMAND, {"bitrate": "500"})
    args = ArgumentList.parse(updated)
    assert args.value_of("-maxrate") == "500k"
    assert args.value_of("-bufsize") == "1000k"


def test_values_are_overwritten_in_place():
    updated = apply_settings(CAM1_COMMAND, {"framerate": "25", "preset": "medium"})
    before = CAM1_COMMAND.split()
    after = updated.split()
    assert len(before) == len(after)
    changed = [i for i, (a, b) in enumerate(zip(before, after)) if a != b]
    assert [before[i - 1] for i in changed] == ["-preset", "-r"]


def test_missing_flags_are_inserted_before_anchor():
    command = f"/usr/bin/ffmpeg -i rtsp://cam/1 -c:v libx264 -an {TAIL}"
    updated = apply_settings(command, {"resolution": "1280:720", "framerate": "20"})
    assert updated == (
        "/usr/bin/ffmpeg -i rtsp://cam/1 -c:v libx264 "
        f"-vf scale=1280:720 -r 20 -an {TAIL}"
    )
    assert updated.endswith("-an " + TAIL)


def test_bitrate_insertion_adds_both_rate_flags_before_anchor():
    command = f"ffmpeg -i in -an {TAIL}"
    updated = apply_settings(command, {"bitrate": "300"})
    assert updated == f"ffmpeg -i in -maxrate 300k -bufsize 600k -an {TAIL}"


def test_missing_anchor_skips_insertion(caplog):
    command = "ffmpeg -i in -crf 30 -f flv rtmp://host/app"
    with caplog.at_level(logging.WARNING, logger="camrelay.ffmpeg_args"):
        updated = apply_settings(command, {"framerate": "10", "quality": "20"})
    assert updated == "ffmpeg -i in -crf 20 -f flv rtmp://host/app"
    assert "anchor -an not found" in caplog.text


def test_resolution_only_touches_scale_component():
    command = "ffmpeg -i in -vf scale=640:360,fps=15 -an out"
    updated = apply_settings(command, {"resolution": "320:240"})
    assert ArgumentList.parse(updated).value_of("-vf") == "scale=320:240,fps=15"


def test_resolution_prepends_scale_to_existing_filter_chain():
    command = "ffmpeg -i in -vf fps=15 -an out"
    updated = apply_settings(command, {"resolution": "320:240"})
    assert ArgumentList.parse(updated).value_of("-vf") == "scale=320:240,fps=15"


def test_unknown_tokens_are_preserved_verbatim():
    command = "ffmpeg -hide_banner -i in -x264-params keyint=60 -an -f flv rtmp://h/a -rw_timeout 5"
    updated = apply_settings(command, {"quality": "28"})
    assert updated == (
        "ffmpeg -hide_banner -i in -x264-params keyint=60 -crf 28 -an -f flv rtmp://h/a -rw_timeout 5"
    )


def test_reconnect_flag_is_not_mistaken_for_framerate():
    args = ArgumentList.parse(CAM1_COMMAND)
    assert args.value_of("-r") == "15"
    updated = apply_settings(CAM1_COMMAND, {"framerate": "30"})
    assert "-reconnect 1" in updated
    assert "-reconnect_delay_max 2" in updated


def test_build_run_on_ready_matches_default_template():
    command = build_run_on_ready("rtsp://10.0.0.5:554/stream1", "rtmp://live.example.com/app/cam1")
    assert command == CAM1_COMMAND


def test_build_run_on_ready_applies_custom_settings():
    settings = StreamSettings(resolution="1280:720", bitrate="1000")
    command = build_run_on_ready("rtsp://a/1", "rtmp://b/2", settings)
    assert read_settings(command) == settings
    assert extract_rtmp_target(command) == "rtmp://b/2"


def test_extract_rtmp_target():
    assert extract_rtmp_target(CAM1_COMMAND) == "rtmp://live.example.com/app/cam1"
    assert extract_rtmp_target("ffmpeg -i in out.mp4") is None
    assert extract_rtmp_target(None) is None


def test_extract_video_bitrate():
    assert ffmpeg_args.extract_video_bitrate("ffmpeg -b:v 750k -an") == 750
    assert ffmpeg_args.extract_video_bitrate(CAM1_COMMAND) is None


def test_normalize_settings_payload_accepts_numbers_and_subsets():
    normalized, errors = normalize_settings_payload({"framerate": 20, "preset": "slow", "extra": 1})
    assert errors == []
    assert normalized == {"framerate": "20", "preset": "slow"}


@pytest.mark.parametrize(
    "payload, message",
    [
        ({"resolution": "wide"}, "resolution"),
        ({"bitrate": "-5"}, "bitrate"),
        ({"bitrate": "²"}, "bitrate"),
        ({"framerate": "٣٠"}, "framerate"),
        ({"quality": "¹²"}, "quality"),
        ({"quality": "70"}, "quality"),
        ({"preset": "warp"}, "preset"),
        ([], "JSON object"),
    ],
)
def test_normalize_settings_payload_rejects_invalid_values(payload, message):
    normalized, errors = normalize_settings_payload(payload)
    assert normalized == {}
    assert message in errors[0]


def test_validate_stream_urls():
    ffmpeg_args.validate_stream_urls("rtsp://a/1", "rtmp://b/2")
    with pytest.raises(InvalidInput, match="RTSP URL"):
        ffmpeg_args.validate_stream_urls("http://a/1", "rtmp://b/2")
    with pytest.raises(InvalidInput, match="RTMP URL"):
        ffmpeg_args.validate_stream_urls("rtsp://a/1", "rtsp://b/2")
