import errno
import socket

import pytest

from rmcast.connection import ConnectionMode, ConnectionVector
from rmcast.protocol import (
    EPROTO,
    AckInterval,
    Command,
    ControlMessage,
    OpResult,
    PacketHeader,
    ProtocolError,
    process_tcp_read,
    process_tcp_write,
    tcp_read,
)


@pytest.fixture
def linked():
    vec = ConnectionVector(4)
    ours, peer = socket.socketpair()
    ours.setblocking(False)
    conn = vec.connections[0]
    conn.socket = ours
    conn.mode = ConnectionMode.CONNECTED
    yield vec, conn, peer
    ours.close()
    peer.close()


def _ack_handler(conn, received):
    need = 1 + AckInterval.SIZE
    if conn.read_buf.in_use() < need:
        return False
    data = conn.read_buf.read(need)
    conn.read_buf.free(need)
    received.append(AckInterval.unpack(data[1:]))
    return True


def _ack_bytes(first, last):
    return bytes([Command.ACK_INTERVAL]) + AckInterval(first, last).pack()


def test_command_bytes(linked):
    vec, conn, _ = linked
    seen = []

    def handler_for(cmd):
        def handler(conn, user_data):
            conn.read_buf.free(1)
            seen.append(cmd)
            return True

        return handler

    table = {cmd: handler_for(cmd) for cmd in Command}
    conn.read_buf.write(bytes([1, 2, 3]))
    process_tcp_read(vec, 0, table)
    assert [int(c) for c in seen] == [1, 2, 3]
    assert conn.read_buf.in_use() == 0


def test_packet_header_wire_format():
    header = PacketHeader(pid=1, node_id=2, payload_len=3, listen_ip=4, listen_port=5)
    packed = header.pack()
    assert len(packed) == PacketHeader.SIZE == 20
    assert packed == bytes.fromhex("0100000000000000" "02000000" "0300" "04000000" "0500")


def test_packet_header_round_trip():
    header = PacketHeader(pid=2**63 + 7, node_id=0xDEAD, payload_len=1400,
                          listen_ip=0x7F000001, listen_port=4723)
    assert PacketHeader.unpack(header.pack() + b"extra") == header


def test_packet_header_short_data():
    with pytest.raises(ValueError):
        PacketHeader.unpack(b"\x00" * 19)


def test_packet_header_out_of_range():
    with pytest.raises(ValueError):
        PacketHeader(pid=1, node_id=1, payload_len=70000, listen_ip=0, listen_port=0).pack()


def test_ack_interval_round_trip():
    interval = AckInterval(10, 20)
    packed = interval.pack()
    assert len(packed) == AckInterval.SIZE == 16
    assert AckInterval.unpack(packed) == interval


def test_control_message_round_trip():
    message = ControlMessage(b"hello")
    packed = message.pack()
    assert packed[:2] == b"\x05\x00"
    assert ControlMessage.unpack(packed) == message


def test_control_message_truncated():
    with pytest.raises(ValueError):
        ControlMessage.unpack(b"\x05\x00abc")


def test_process_tcp_write_sends_all(linked):
    _, conn, peer = linked
    conn.write_buf.write(b"payload")
    assert process_tcp_write(conn) == 0
    assert peer.recv(100) == b"payload"
    assert conn.pending_send_length() == 0


def test_process_tcp_write_wrapped(linked):
    _, conn, peer = linked
    buf = conn.write_buf
    buf.write(bytes(buf.size - 6))
    buf.free(buf.size - 16)
    buf.write(b"0123456789" * 2)
    first, second = buf.read_segments(buf.size)
    assert len(second) > 0
    expected = buf.read(buf.in_use())
    first.release()
    second.release()

    assert process_tcp_write(conn) == 0
    got = b""
    while len(got) < len(expected):
        got += peer.recv(1000)
    assert got == expected


def test_process_tcp_write_no_data(linked):
    _, conn, _ = linked
    with pytest.raises(ProtocolError) as info:
        process_tcp_write(conn)
    assert info.value.op_result is OpResult.WRITE_TCP


def test_tcp_read_dispatches_commands(linked):
    vec, _, peer = linked
    peer.sendall(_ack_bytes(1, 3) + _ack_bytes(4, 9))
    received = []
    table = {Command.ACK_INTERVAL: _ack_handler}
    assert tcp_read(vec, 0, table, received) is True
    assert received == [AckInterval(1, 3), AckInterval(4, 9)]
    assert vec.connections[0].read_buf.in_use() == 0


def test_tcp_read_partial_command_waits(linked):
    vec, conn, peer = linked
    data = _ack_bytes(5, 6)
    received = []
    table = {Command.ACK_INTERVAL: _ack_handler}

    peer.sendall(data[:7])
    assert tcp_read(vec, 0, table, received) is False
    assert received == []
    assert conn.read_buf.in_use() == 7

    peer.sendall(data[7:])
    assert tcp_read(vec, 0, table, received) is True
    assert received == [AckInterval(5, 6)]


def test_unknown_command(linked):
    vec, conn, _ = linked
    conn.read_buf.write(b"\x09rest")
    with pytest.raises(ProtocolError) as info:
        process_tcp_read(vec, 0, {Command.ACK_INTERVAL: _ack_handler})
    assert info.value.errno == EPROTO
    assert info.value.op_result is OpResult.ERROR


def test_handler_error_is_reported(linked):
    vec, conn, _ = linked
    conn.read_buf.write(bytes([Command.CONTROL_MESSAGE]))

    def failing(conn, user_data):
        raise OSError(errno.EINVAL, "bad")

    with pytest.raises(ProtocolError) as info:
        process_tcp_read(vec, 0, {Command.CONTROL_MESSAGE: failing})
    assert info.value.errno == errno.EINVAL
    assert info.value.op_result is OpResult.ERROR


def test_tcp_read_disconnect(linked):
    vec, conn, peer = linked
    conn.read_buf.write(b"\x02")
    peer.close()
    with pytest.raises(ProtocolError) as info:
        tcp_read(vec, 0, {})
    assert info.value.errno == errno.EPIPE
    assert info.value.op_result is OpResult.READ_DISCONNECT
    assert conn.read_buf.in_use() == 1


def test_tcp_read_closed_slot():
    vec = ConnectionVector(2)
    with pytest.raises(ProtocolError) as info:
        tcp_read(vec, 1, {})
    assert info.value.errno == errno.ENOTCONN