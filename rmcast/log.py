"""Small levelled logger with optional terminal colours and connection indexes."""

from __future__ import annotations

import enum
import inspect
import os
import re
import sys
import time
from contextlib import suppress
from dataclasses import dataclass
from typing import IO, Mapping, Optional


class LogLevel(enum.IntEnum):
    NONE = 0
    FATAL = 1
    ERROR = 2
    WARNING = 3
    INFO = 4
    COMMENT = 5
    DEBUG = 6


NIL_INDEX = 0x7FFF
MULTICAST_INDEX = 0x7FFE
LISTEN_INDEX = 0x7FFD

ENV_VARIABLE = "RMC_LOG_LEVEL"

_COLORS = {
    "flashing_red": "\033[5;38;2;192;0;0m",
    "light_red": "\033[38;2;255;204;204m",
    "red": "\033[38;2;192;0;0m",
    "dark_red": "\033[38;2;255;0;0m",
    "orange": "\033[38;2;255;128;0m",
    "yellow": "\033[38;2;255;255;0m",
    "light_blue": "\033[38;2;0;255;255m",
    "blue": "\033[38;2;0;128;255m",
    "dark_blue": "\033[38;2;0;0;255m",
    "light_green": "\033[38;2;153;255;153m",
    "green": "\033[38;2;0;255;0m",
    "dark_green": "\033[38;2;0;204;0m",
    "faint": "\033[2m",
    "none": "\033[0m",
}

_INDEX_COLORS = {
    -1: "faint",
    0: "dark_blue",
    1: "dark_green",
    2: "light_blue",
    3: "light_green",
    4: "light_red",
    5: "green",
    6: "blue",
    7: "dark_red",
    8: "red",
}

_LEVEL_STYLES = {
    LogLevel.DEBUG: ("none", "[D]"),
    LogLevel.COMMENT: ("green", "[C]"),
    LogLevel.INFO: ("blue", "[I]"),
    LogLevel.WARNING: ("orange", "[W]"),
    LogLevel.ERROR: ("red", "[E]"),
    LogLevel.FATAL: ("flashing_red", "[F]"),
}


@dataclass
class _State:
    level: LogLevel = LogLevel.NONE
    # -1: decide from the output file on first use, 0: off, 1: on.
    use_color: int = -1
    color_calculated: bool = False
    file: Optional[IO[str]] = None
    start_time: int = 0


_state = _State()


def _monotonic_usec():
    return time.monotonic_ns() // 1000


def _atoi(text):
    match = re.match(r"\s*([+-]?\d+)", text)
    return int(match.group(1)) if match else 0


def _output():
    return _state.file if _state.file is not None else sys.stdout


def _isatty(stream):
    isatty = getattr(stream, "isatty", None)
    if isatty is None:
        return False
    try:
        return bool(isatty())
    except (ValueError, OSError):
        return False


def set_log_level(level):
    """Set the current log level; raise ValueError if it is out of range."""
    value = int(level)
    if not LogLevel.NONE <= value <= LogLevel.DEBUG:
        frame = inspect.currentframe()
        _emit(
            LogLevel.WARNING,
            f"Illegal log level: {value}. Legal values "
            f"[{int(LogLevel.NONE)}-{int(LogLevel.DEBUG)}]",
            NIL_INDEX,
            os.path.basename(__file__),
            frame.f_lineno if frame else 0,
        )
        raise ValueError(f"illegal log level: {value}")
    _state.level = LogLevel(value)


def get_log_level():
    """Return the current log level."""
    return _state.level


def set_level_from_env(environ=None):
    """Set the log level from RMC_LOG_LEVEL; return it, or None if unset."""
    env = os.environ if environ is None else environ
    raw = env.get(ENV_VARIABLE)
    if raw is None:
        return None
    set_log_level(_atoi(raw))
    return _state.level


def set_start_time():
    """Start the clock that log lines report elapsed milliseconds against."""
    _state.start_time = _monotonic_usec()


def get_start_time():
    """Return the start time in microseconds, or 0 if never set."""
    return _state.start_time


def use_color(flag):
    """Turn colours on or off; None decides from the output file."""
    _state.use_color = -1 if flag is None else int(bool(flag))
    _state.color_calculated = False


def set_log_file(file):
    """Direct log output to ``file``; None means standard output."""
    _state.file = file
    if _state.color_calculated:
        _state.use_color = 1 if _isatty(_output()) else 0


def color(name):
    """Return the escape sequence for a named colour, or '' if colours are off."""
    try:
        code = _COLORS[name]
    except KeyError:
        raise ValueError(f"unknown colour: {name!r}") from None
    return code if _state.use_color else ""


def index_color(index):
    """Return the colour used for a connection index."""
    return color(_INDEX_COLORS.get(index, "none"))


def _pad3(number):
    sign = "-" if number < 0 else ""
    return f"{sign}{abs(number):03d}"


def format_index(index):
    """Return the column that identifies a connection index in a log line."""
    if index == NIL_INDEX:
        return "     "
    if index == MULTICAST_INDEX:
        return f"{color('orange')}[UDP]{color('none')}"
    if index == LISTEN_INDEX:
        return f"{color('yellow')}[CTL]{color('none')}"
    return f"{index_color(index)}[{_pad3(index)}]{color('none')}"


def _emit(level, message, index, file, line):
    out = _output()
    if _state.use_color == -1:
        _state.color_calculated = True
        _state.use_color = 1 if _isatty(out) else 0

    color_name, tag = _LEVEL_STYLES.get(level, ("none", "[?]"))
    start = _state.start_time
    elapsed = (_monotonic_usec() - start) // 1000 if start else 0

    out.write(
        f"{color(color_name)}{tag}{color('none')} {elapsed} "
        f"{format_index(index)} {color('faint')}{file}:{line}{color('none')} "
        f"{message}\n"
    )


def log(level, message, index=NIL_INDEX, file=None, line=None):
    """Write ``message`` if ``level`` is enabled by the current log level."""
    if _state.level < level:
        return
    if file is None or line is None:
        frame = inspect.currentframe()
        caller = frame.f_back if frame else None
        if file is None:
            file = os.path.basename(caller.f_code.co_filename) if caller else "?"
        if line is None:
            line = caller.f_lineno if caller else 0
    _emit(level, message, index, file, line)


with suppress(ValueError):
    set_level_from_env()