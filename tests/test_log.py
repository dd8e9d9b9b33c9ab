import io
import time

import pytest

from rmcast import log as rlog
from rmcast.log import (
    LISTEN_INDEX,
    MULTICAST_INDEX,
    NIL_INDEX,
    LogLevel,
    color,
    format_index,
    get_log_level,
    get_start_time,
    index_color,
    log,
    set_level_from_env,
    set_log_file,
    set_log_level,
    set_start_time,
    use_color,
)


@pytest.fixture(autouse=True)
def output():
    stream = io.StringIO()
    use_color(False)
    set_log_file(stream)
    set_log_level(LogLevel.NONE)
    yield stream
    set_log_level(LogLevel.NONE)
    use_color(None)
    set_log_file(None)


def test_level_round_trip():
    set_log_level(LogLevel.INFO)
    assert get_log_level() == LogLevel.INFO
    set_log_level(6)
    assert get_log_level() == LogLevel.DEBUG


@pytest.mark.parametrize("bad", [-1, 7])
def test_illegal_level_raises_and_keeps_level(bad, output):
    set_log_level(LogLevel.COMMENT)
    with pytest.raises(ValueError):
        set_log_level(bad)
    assert get_log_level() == LogLevel.COMMENT
    assert "Illegal log level" in output.getvalue()


def test_level_from_env():
    assert set_level_from_env({"RMC_LOG_LEVEL": "4"}) == LogLevel.INFO
    assert get_log_level() == LogLevel.INFO


def test_level_from_env_unset_leaves_level():
    set_log_level(LogLevel.ERROR)
    assert set_level_from_env({}) is None
    assert get_log_level() == LogLevel.ERROR


def test_level_from_env_non_numeric_means_none():
    set_log_level(LogLevel.ERROR)
    set_level_from_env({"RMC_LOG_LEVEL": "abc"})
    assert get_log_level() == LogLevel.NONE


def test_color_on_and_off():
    use_color(True)
    assert color("red") == "\033[38;2;192;0;0m"
    use_color(False)
    assert color("red") == ""


def test_unknown_color_raises():
    with pytest.raises(ValueError):
        color("purple")


def test_index_colors():
    use_color(True)
    assert index_color(-1) == color("faint")
    assert index_color(0) == color("dark_blue")
    assert index_color(8) == color("red")
    assert index_color(99) == color("none")


def test_format_index():
    assert format_index(NIL_INDEX) == "     "
    assert format_index(MULTICAST_INDEX) == "[UDP]"
    assert format_index(LISTEN_INDEX) == "[CTL]"
    assert format_index(7) == "[007]"


def test_format_index_colored_wraps_index():
    use_color(True)
    text = format_index(3)
    assert text.startswith(index_color(3))
    assert text.endswith(color("none"))


def test_log_filtered_by_level(output):
    set_log_level(LogLevel.WARNING)
    log(LogLevel.DEBUG, "hidden", NIL_INDEX, "f.c", 1)
    log(LogLevel.INFO, "hidden", NIL_INDEX, "f.c", 1)
    assert output.getvalue() == ""


def test_log_line_layout(output):
    set_log_level(LogLevel.WARNING)
    log(LogLevel.WARNING, "hello", NIL_INDEX, "f.c", 12)
    line = output.getvalue()
    assert line.startswith("[W] ")
    assert line.endswith(" " + format_index(NIL_INDEX) + " f.c:12 hello\n")


def test_log_tags_per_level(output):
    set_log_level(LogLevel.DEBUG)
    log(LogLevel.ERROR, "e", 2, "f.c", 1)
    log(LogLevel.DEBUG, "d", 2, "f.c", 2)
    lines = output.getvalue().splitlines()
    assert lines[0].startswith("[E]")
    assert lines[1].startswith("[D]")
    assert format_index(2) in lines[0]


def test_log_defaults_to_caller_location(output):
    set_log_level(LogLevel.INFO)
    log(LogLevel.INFO, "where")
    line = output.getvalue()
    assert "test_log.py:" in line
    assert line.endswith(" where\n")


def test_start_time_and_elapsed(output):
    before = time.monotonic_ns() // 1000
    set_start_time()
    assert get_start_time() >= before
    set_log_level(LogLevel.INFO)
    log(LogLevel.INFO, "tick", NIL_INDEX, "f.c", 1)
    assert output.getvalue().split()[1].isdigit()


def test_auto_color_disabled_for_non_tty(output):
    use_color(None)
    set_log_level(LogLevel.WARNING)
    log(LogLevel.WARNING, "plain", NIL_INDEX, "f.c", 1)
    assert "\033" not in output.getvalue()
    assert color("red") == ""


def test_explicit_color_survives_file_change():
    use_color(True)
    set_log_file(io.StringIO())
    assert color("green") == rlog._COLORS["green"]