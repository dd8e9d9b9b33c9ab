"""Fixed-size table of non-blocking TCP connections with poll callbacks."""

from __future__ import annotations

import enum
import errno
import ipaddress
import os
import socket
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from rmcast.circular_buffer import CircularBuffer
from rmcast.log import LISTEN_INDEX, LogLevel, log

CONNECTION_BUFFER_SIZE = 65536

PollAdd = Callable[[int, int, "PollAction"], None]
PollModify = Callable[[int, int, "PollAction", "PollAction"], None]
PollRemove = Callable[[int, int], None]


class ConnectionMode(enum.Enum):
    CLOSED = 0
    CONNECTING = 1
    CONNECTED = 2


class PollAction(enum.IntFlag):
    NONE = 0
    READ = 1
    WRITE = 2


class ConnectionError_(OSError):
    """A connection operation failed; ``errno`` holds the reason."""

    def __init__(self, code, message=None):
        super().__init__(code, message or os.strerror(code))


def _address_str(address):
    return str(ipaddress.IPv4Address(address))


@dataclass(eq=False)
class Connection:
    """One slot of a connection vector."""

    index: int
    socket: Optional[socket.socket] = None
    node_id: int = 0
    mode: ConnectionMode = ConnectionMode.CLOSED
    action: PollAction = PollAction.NONE
    remote_address: int = 0
    remote_port: int = 0
    read_buf: CircularBuffer = field(
        default_factory=lambda: CircularBuffer(CONNECTION_BUFFER_SIZE)
    )
    write_buf: CircularBuffer = field(
        default_factory=lambda: CircularBuffer(CONNECTION_BUFFER_SIZE)
    )

    @property
    def descriptor(self):
        """File descriptor of the socket, or -1 if the slot is free."""
        if self.socket is None:
            return -1
        return self.socket.fileno()

    @property
    def in_use(self):
        return self.socket is not None

    def pending_send_length(self):
        """Number of bytes waiting in the write buffer."""
        return self.write_buf.in_use()

    def reset(self):
        """Return the slot to its free, closed state."""
        self.action = PollAction.NONE
        self.socket = None
        self.node_id = 0
        self.mode = ConnectionMode.CLOSED
        self.read_buf = CircularBuffer(CONNECTION_BUFFER_SIZE)
        self.write_buf = CircularBuffer(CONNECTION_BUFFER_SIZE)
        self.remote_address = 0
        self.remote_port = 0


class ConnectionVector:
    """A fixed number of connection slots.

    The poll callbacks are told when a socket needs to be watched, when the
    events it is watched for change, and when it is to be forgotten:
    ``poll_add(descriptor, index, action)``,
    ``poll_modify(descriptor, index, old_action, new_action)`` and
    ``poll_remove(descriptor, index)``.
    """

    def __init__(self, size, poll_add=None, poll_modify=None, poll_remove=None):
        if size < 0:
            raise ValueError(f"size must not be negative, got {size}")
        self.size = size
        self.connections: List[Connection] = [Connection(i) for i in range(size)]
        self.poll_add = poll_add
        self.poll_modify = poll_modify
        self.poll_remove = poll_remove
        self._max_index: Optional[int] = None
        self._active = 0

    def __repr__(self):
        return (
            f"ConnectionVector(size={self.size}, max_index={self._max_index}, "
            f"active={self._active})"
        )

    def _used(self):
        if self._max_index is None:
            return []
        return self.connections[: self._max_index + 1]

    def find_by_address(self, address, port):
        """Return the open connection to ``address``:``port``, or None."""
        return next(
            (
                conn
                for conn in self._used()
                if conn.in_use
                and conn.remote_address == address
                and conn.remote_port == port
            ),
            None,
        )

    def find_by_index(self, index):
        """Return the connection in slot ``index`` unless it is closed."""
        if index < 0 or index >= self.size:
            return None
        conn = self.connections[index]
        if conn.mode is ConnectionMode.CLOSED:
            return None
        return conn

    def find_by_node_id(self, node_id):
        """Return the open connection to node ``node_id``, or None."""
        return next(
            (conn for conn in self._used() if conn.in_use and conn.node_id == node_id),
            None,
        )

    def _free_slot(self):
        for conn in self.connections:
            if not conn.in_use:
                if self._max_index is None or self._max_index < conn.index:
                    self._max_index = conn.index
                log(
                    LogLevel.DEBUG,
                    f"Allocating slot {conn.index}. max is {self._max_index}",
                )
                return conn
        raise ConnectionError_(errno.ENOMEM, "no free connection slot")

    def _reset_max_index(self):
        self._max_index = next(
            (conn.index for conn in reversed(self.connections) if conn.in_use),
            None,
        )

    def complete_connection(self, conn):
        """Finish an asynchronous connect once the socket is writable."""
        if conn is None or conn.socket is None:
            raise ConnectionError_(errno.EINVAL)

        peer = f"{_address_str(conn.remote_address)}:{conn.remote_port}"
        try:
            sock_err = conn.socket.getsockopt(socket.SOL_SOCKET, socket.SO_ERROR)
        except OSError as exc:
            log(
                LogLevel.WARNING,
                f"addr[{peer}]: getsockopt(): {exc.strerror}",
                conn.index,
            )
            self.close_connection(conn.index)
            raise ConnectionError_(exc.errno or errno.EIO) from exc

        log(
            LogLevel.COMMENT,
            f"complete_connection(): addr[{peer}]: {os.strerror(sock_err)}",
            conn.index,
        )

        if sock_err:
            log(
                LogLevel.INFO,
                f"complete_connection(): addr[{peer}]: connect failed: "
                f"{os.strerror(sock_err)}",
                conn.index,
            )
            self.close_connection(conn.index)
            raise ConnectionError_(sock_err)

        # Acks are latency sensitive; do not batch small writes.
        try:
            conn.socket.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        except OSError as exc:
            log(
                LogLevel.INFO,
                f"complete_connection(): addr[{peer}]: setsockopt() failed: "
                f"{exc.strerror}",
                conn.index,
            )
            self.close_connection(conn.index)
            raise ConnectionError_(exc.errno or errno.EIO) from exc

        conn.mode = ConnectionMode.CONNECTED
        old_action = conn.action
        conn.action = PollAction.READ
        if self.poll_modify:
            self.poll_modify(conn.descriptor, conn.index, old_action, conn.action)

    def connect_tcp(self, address, port, node_id):
        """Start a non-blocking connect to ``address``:``port``.

        ``address`` is an IPv4 address as an integer. Returns the slot index,
        or None if the connect failed at once.
        """
        conn = self._free_slot()
        try:
            sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        except OSError:
            self._reset_max_index()
            raise
        sock.setblocking(False)
        conn.socket = sock

        host = _address_str(address)
        log(LogLevel.COMMENT, f"Connecting to control tcp addr[{host}:{port}]", conn.index)

        res = sock.connect_ex((host, port))
        conn.remote_address = address
        conn.node_id = node_id
        if res not in (0, errno.EINPROGRESS, errno.EWOULDBLOCK, errno.EAGAIN):
            log(LogLevel.INFO, f"Failed to connect: {os.strerror(res)}")
            sock.close()
            conn.reset()
            self._reset_max_index()
            return None

        conn.remote_port = port
        conn.mode = ConnectionMode.CONNECTING
        conn.action = PollAction.WRITE
        if self.poll_add:
            self.poll_add(conn.descriptor, conn.index, conn.action)

        self._active += 1
        return conn.index

    def accept(self, listen_socket):
        """Accept a pending connection on ``listen_socket``; return its index."""
        conn = self._free_slot()
        try:
            sock, (host, port) = listen_socket.accept()
        except OSError:
            self._reset_max_index()
            raise
        sock.setblocking(False)
        conn.socket = sock

        log(LogLevel.COMMENT, f"{host}:{port} assigned to index {conn.index}", conn.index)

        try:
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        except OSError as exc:
            sock.close()
            conn.reset()
            self._reset_max_index()
            raise ConnectionError_(exc.errno or errno.EIO) from exc

        conn.mode = ConnectionMode.CONNECTED
        conn.remote_address = int(ipaddress.IPv4Address(host))
        conn.remote_port = port
        conn.action = PollAction.READ
        if self.poll_add:
            self.poll_add(conn.descriptor, conn.index, conn.action)
        if self.poll_modify:
            self.poll_modify(
                listen_socket.fileno(), LISTEN_INDEX, PollAction.READ, PollAction.READ
            )

        self._active += 1
        return conn.index

    def close_connection(self, index):
        """Shut down and close the connection in slot ``index``."""
        if index < 0 or index >= self.size:
            raise ConnectionError_(errno.EINVAL)

        conn = self.connections[index]
        if conn.mode is ConnectionMode.CLOSED:
            raise ConnectionError_(errno.ENOTCONN)

        conn.mode = ConnectionMode.CLOSED
        log(
            LogLevel.INFO,
            f"Closing connection. [{conn.write_buf.in_use()}] bytes will be discarded.",
            index,
        )

        sock = conn.socket
        descriptor = conn.descriptor
        if sock is not None:
            # Fails harmlessly while a connect is still in progress.
            with suppress(OSError):
                sock.shutdown(socket.SHUT_RDWR)

        if self.poll_remove:
            self.poll_remove(descriptor, index)

        if sock is not None:
            try:
                sock.close()
            except OSError as exc:
                log(
                    LogLevel.WARNING,
                    f"Could not close descriptor {descriptor}: {exc.strerror}",
                )

        conn.reset()
        if index == self._max_index:
            self._reset_max_index()
        self._active -= 1

    def max_index_in_use(self):
        """Highest slot index in use, or None if no slot is in use."""
        return self._max_index

    def active_connection_count(self):
        """Number of connections opened and not yet closed."""
        return self._active

    def vector_size(self):
        """Number of slots in the vector."""
        return self.size