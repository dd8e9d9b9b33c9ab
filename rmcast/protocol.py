"""Wire formats of the control protocol and TCP command reading and writing."""

from __future__ import annotations

import enum
import errno
import os
import struct
from dataclasses import dataclass
from typing import Any, Callable, ClassVar, Mapping

from rmcast.connection import Connection, ConnectionVector
from rmcast.log import LogLevel, log

ENODATA = getattr(errno, "ENODATA", 61)
EPROTO = getattr(errno, "EPROTO", 71)

MAX_PAYLOAD = 0xFFFF

CommandHandler = Callable[[Connection, Any], Any]


class Command(enum.IntEnum):
    """Command bytes that start each message on a TCP control connection."""

    PACKET = 1
    ACK_INTERVAL = 2
    CONTROL_MESSAGE = 3


class OpResult(enum.Enum):
    """What a read or write operation on a descriptor turned out to do."""

    ERROR = enum.auto()
    READ_MULTICAST = enum.auto()
    READ_MULTICAST_LOOPBACK = enum.auto()
    READ_MULTICAST_NEW = enum.auto()
    READ_MULTICAST_NOT_READY = enum.auto()
    READ_TCP = enum.auto()
    READ_ACCEPT = enum.auto()
    READ_DISCONNECT = enum.auto()
    WRITE_MULTICAST = enum.auto()
    COMPLETE_CONNECTION = enum.auto()
    WRITE_TCP = enum.auto()


class ProtocolError(OSError):
    """A protocol operation failed.

    ``errno`` holds the reason and ``op_result`` what the operation was
    found to be doing when it failed.
    """

    def __init__(self, code, message=None, op_result=OpResult.ERROR):
        super().__init__(code, message or os.strerror(code))
        self.op_result = op_result


def _pack(layout, *values):
    try:
        return layout.pack(*values)
    except struct.error as exc:
        raise ValueError(str(exc)) from exc


def _unpack(layout, data, name):
    if len(data) < layout.size:
        raise ValueError(
            f"{name} needs {layout.size} bytes, got {len(data)}"
        )
    return layout.unpack_from(data)


@dataclass(frozen=True)
class PacketHeader:
    """Header in front of every multicast or resent packet (20 bytes)."""

    pid: int
    node_id: int
    payload_len: int
    listen_ip: int
    listen_port: int

    _LAYOUT: ClassVar[struct.Struct] = struct.Struct("<QIHIH")
    SIZE: ClassVar[int] = _LAYOUT.size

    def pack(self):
        """Return the header in wire format."""
        return _pack(
            self._LAYOUT,
            self.pid,
            self.node_id,
            self.payload_len,
            self.listen_ip,
            self.listen_port,
        )

    @classmethod
    def unpack(cls, data):
        """Read a header from the start of ``data``."""
        return cls(*_unpack(cls._LAYOUT, data, "packet header"))


@dataclass(frozen=True)
class AckInterval:
    """Acknowledgement of every packet id from ``first_pid`` to ``last_pid``."""

    first_pid: int
    last_pid: int

    _LAYOUT: ClassVar[struct.Struct] = struct.Struct("<QQ")
    SIZE: ClassVar[int] = _LAYOUT.size

    def pack(self):
        """Return the interval in wire format."""
        return _pack(self._LAYOUT, self.first_pid, self.last_pid)

    @classmethod
    def unpack(cls, data):
        """Read an interval from the start of ``data``."""
        return cls(*_unpack(cls._LAYOUT, data, "ack interval"))


@dataclass(frozen=True)
class ControlMessage:
    """A length-prefixed control payload."""

    payload: bytes

    _LENGTH: ClassVar[struct.Struct] = struct.Struct("<H")
    HEADER_SIZE: ClassVar[int] = _LENGTH.size

    def pack(self):
        """Return the length prefix followed by the payload."""
        payload = bytes(self.payload)
        if len(payload) > MAX_PAYLOAD:
            raise ValueError(
                f"control payload of {len(payload)} bytes exceeds {MAX_PAYLOAD}"
            )
        return self._LENGTH.pack(len(payload)) + payload

    @classmethod
    def unpack(cls, data):
        """Read a control message from the start of ``data``."""
        (length,) = _unpack(cls._LENGTH, data, "control message header")
        end = cls.HEADER_SIZE + length
        if len(data) < end:
            raise ValueError(
                f"control message needs {end} bytes, got {len(data)}"
            )
        return cls(bytes(data[cls.HEADER_SIZE:end]))


def process_tcp_write(conn):
    """Send as much of the write buffer as the socket takes.

    Returns the number of bytes still waiting to be sent. Raises
    ProtocolError with ENODATA if there was nothing to send.
    """
    first, second = conn.write_buf.read_segments(conn.write_buf.size)
    if not len(first):
        raise ProtocolError(ENODATA, op_result=OpResult.WRITE_TCP)

    buffers = [first, second] if len(second) else [first]
    try:
        sent = conn.socket.sendmsg(buffers)
    except OSError as exc:
        log(LogLevel.INFO, f"sendmsg: {exc.strerror}", conn.index)
        raise ProtocolError(
            exc.errno or errno.EIO, op_result=OpResult.WRITE_TCP
        ) from exc
    finally:
        first.release()
        second.release()

    if sent == 0:
        log(LogLevel.INFO, "Failed to send data", conn.index)
        return conn.write_buf.in_use()

    left = conn.write_buf.free(sent)
    log(LogLevel.DEBUG, f"wrote [{sent}] bytes", conn.index)
    return left


def _connection(conn_vec, index):
    conn = conn_vec.find_by_index(index)
    if conn is None:
        raise ProtocolError(errno.ENOTCONN)
    return conn


def process_tcp_read(conn_vec, index, dispatch_table, user_data=None):
    """Run every complete command in the read buffer of connection ``index``.

    ``dispatch_table`` maps command bytes to ``handler(conn, user_data)``.
    A handler either consumes the command byte and its payload from
    ``conn.read_buf``, or returns False, leaving the buffer untouched, when
    the command is not complete yet.

    Returns True if the buffer was drained and False if a partial command
    awaits more data.
    """
    conn = _connection(conn_vec, index)

    while True:
        head = conn.read_buf.read(1)
        if not head:
            return True
        command = head[0]

        handler = dispatch_table.get(command)
        if handler is None:
            log(LogLevel.ERROR, f"Unknown command byte: {command}", index)
            raise ProtocolError(EPROTO, f"unknown command byte: {command}")

        try:
            done = handler(conn, user_data)
        except ProtocolError as exc:
            log(LogLevel.ERROR, f"Dispatch failed: {exc.strerror}", index)
            exc.op_result = OpResult.ERROR
            raise
        except OSError as exc:
            log(LogLevel.ERROR, f"Dispatch failed: {exc.strerror}", index)
            raise ProtocolError(exc.errno or errno.EIO) from exc

        if done is False:
            log(LogLevel.DEBUG, "Dispatch needs more data", index)
            return False


def tcp_read(conn_vec, index, dispatch_table, user_data=None):
    """Read what the socket of connection ``index`` holds and process it.

    Returns as ``process_tcp_read``. Raises ProtocolError with EPIPE and
    ``op_result`` READ_DISCONNECT if the peer has gone, and with ENOMEM if
    the read buffer is full.
    """
    conn = _connection(conn_vec, index)
    read_buf = conn.read_buf
    available = read_buf.available()
    orig_in_use = read_buf.in_use()

    if not available:
        raise ProtocolError(errno.ENOMEM, "read buffer is full")

    first, second = read_buf.alloc(available)
    buffers = [first, second] if len(second) else [first]
    try:
        received = conn.socket.recvmsg_into(buffers)[0]
        failure = None
    except OSError as exc:
        received = -1
        failure = exc
    finally:
        first.release()
        second.release()

    log(
        LogLevel.DEBUG,
        f"recvmsg_into(): Wanted {available} bytes. Got {received} "
        f"{failure.strerror if failure else ''}",
        index,
    )

    if received <= 0:
        read_buf.trim(orig_in_use)
        error = ProtocolError(errno.EPIPE, op_result=OpResult.READ_DISCONNECT)
        if failure is not None:
            raise error from failure
        raise error

    read_buf.trim(orig_in_use + received)
    return process_tcp_read(conn_vec, index, dispatch_table, user_data)