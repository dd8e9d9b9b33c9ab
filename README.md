# rmcast

Building blocks for a reliable multicast transport. In this design,
publishers send packets over UDP multicast. Subscribers acknowledge them over
TCP control connections, and packets that go unacknowledged for too long can
be sent again. This package holds the parts that do not depend on a particular
event loop: a byte ring buffer, publisher-side bookkeeping, a table of TCP
connections, and the control-protocol wire formats.

The package needs only the standard library.

## Modules

### `rmcast.circular_buffer`

`CircularBuffer(size)` is a fixed-size ring of bytes. One byte is always held
back, so a buffer of size `n` stores at most `n - 1` bytes.

- `in_use()` / `len(buf)` returns the bytes stored. `available()` returns the
  bytes that can still be allocated.
- `alloc(length)` reserves space at the end of the data. It returns two
  writable `memoryview`s, and the second is empty unless the space wraps
  around. If the space does not fit, it raises `BufferFullError`.
- `write(data)` appends bytes.
- `read(size)` and `read_offset(offset, size)` copy bytes out without
  discarding them. `read_segments(size)` returns the front of the data as two
  `memoryview`s.
- `free(size)` discards bytes from the front and returns how many remain. When
  everything is freed, the buffer resets to index 0.
- `trim(target_len)` shortens the data from its end.

### `rmcast.log`

This is a small levelled logger. It writes lines of this form:
`[tag] elapsed-ms index file:line message`.

- `LogLevel` runs from `NONE` (0) to `DEBUG` (6).
- `set_log_level` raises `ValueError` for an out-of-range level.
  `get_log_level` returns the current level.
- `set_level_from_env(environ=None)` reads `RMC_LOG_LEVEL`. It is also applied
  once when the module is imported.
- `use_color(flag)` turns colours on or off. Passing `None` decides from
  whether the output is a terminal. `set_log_file(file)` sets the output,
  which is standard output by default.
- `set_start_time()` starts the clock that log lines report elapsed time
  against. `get_start_time()` returns it.
- The helpers `color(name)`, `index_color(index)` and `format_index(index)`
  build the parts of a line.
- `log(level, message, index, file, line)` writes the line. If `file` and
  `line` are omitted, it takes them from the caller.

### `rmcast.pub`

`PubContext` keeps the publisher's packets. Queued and in-flight packets are
held as `PubPacket` objects in ascending packet id order.

- `add_subscriber(user_data)` returns a `PubSubscriber`.
- `queue_packet(payload, user_data)` assigns the next packet id, starting at 1.
  `queue_no_acknowledge_packet` queues a packet with id 0, which is never put
  in flight.
- `next_queued_packet()` returns the queued packet with the lowest id.
  `packet_sent(packet, send_ts)` moves it in flight for every subscriber.
- `PubSubscriber.ack(pid, payload_free)` acknowledges a packet. When every
  subscriber has acknowledged it, the packet is dropped and
  `payload_free(payload, user_data)` is called. Unknown ids are ignored.
- `PubSubscriber.reset(payload_free)` acknowledges everything the subscriber
  has in flight and removes the subscriber from the context.
- `timed_out_subscribers(current_ts, timeout_period)`,
  `PubSubscriber.timed_out_packets(...)`, `oldest_unacknowledged_send_ts()`,
  `unacknowledged_packet_count()` and `queue_size()` report on timeouts and
  backlog.

### `rmcast.connection`

`ConnectionVector(size, poll_add, poll_modify, poll_remove)` is a fixed number
of `Connection` slots for non-blocking TCP sockets. Each slot has a 64 KiB
read buffer and a 64 KiB write buffer. The poll callbacks are called as:

- `poll_add(descriptor, index, action)`
- `poll_modify(descriptor, index, old_action, new_action)`
- `poll_remove(descriptor, index)`

`action` is a `PollAction` flag (`READ`, `WRITE`). The methods are:

- `connect_tcp(address, port, node_id)` starts a connect. `address` is an IPv4
  address as an integer. It returns the slot index, or `None` if the connect
  failed at once.
- `complete_connection(conn)` finishes the connect once the socket is writable.
- `accept(listen_socket)` takes an incoming connection.
- `close_connection(index)` closes a slot.
- `find_by_index`, `find_by_address` and `find_by_node_id` look up slots.
  `max_index_in_use`, `active_connection_count` and `vector_size` report on
  the table.

Failures raise `ConnectionError_`, an `OSError` carrying an `errno`. For
example, `ENOMEM` is raised when no slot is free and `ENOTCONN` when closing a
closed slot.

### `rmcast.protocol`

- `Command` holds the command bytes `PACKET`, `ACK_INTERVAL` and
  `CONTROL_MESSAGE`. `OpResult` describes what an operation did.
- The wire formats are little-endian and each has `pack()` and
  `unpack(data)`:
  - `PacketHeader` is 20 bytes: pid, node_id, payload_len, listen_ip and
    listen_port.
  - `AckInterval` is 16 bytes: first_pid and last_pid.
  - `ControlMessage` is a 2-byte length followed by the payload.
- `process_tcp_write(conn)` sends as much of the write buffer as the socket
  takes and returns the bytes still waiting.
- `tcp_read(conn_vec, index, dispatch_table, user_data)` reads from the socket
  into the read buffer, then calls `process_tcp_read` for the same
  connection.
- `process_tcp_read(conn_vec, index, dispatch_table, user_data)` runs the
  commands in the read buffer.
  - `dispatch_table` maps a command byte to `handler(conn, user_data)`.
  - A handler consumes its command from `conn.read_buf`. If the command is not
    complete yet, the handler returns `False` and leaves the buffer untouched.
  - The function returns `True` when the buffer was drained and `False` when a
    partial command is waiting.
- Errors raise `ProtocolError`, an `OSError` carrying `errno` and
  `op_result`:
  - `EPROTO` for an unknown command byte.
  - `EPIPE` with `READ_DISCONNECT` when the peer has gone.
  - `ENODATA` when there is nothing to write.

## Example

```python
from rmcast.circular_buffer import CircularBuffer
from rmcast.pub import PubContext

buf = CircularBuffer(16)
buf.write(b"hello")
assert buf.read(5) == b"hello"
assert buf.free(5) == 0

ctx = PubContext()
sub = ctx.add_subscriber(user_data=None)
pid = ctx.queue_packet(b"payload", user_data=None)
packet = ctx.next_queued_packet()
ctx.packet_sent(packet, send_ts=1)
sub.ack(pid, payload_free=None)
assert ctx.unacknowledged_packet_count() == 0
```

## What the package does not do

There is no complete publisher or subscriber here, only the parts listed
above. The package:

- does not open multicast sockets or send and receive multicast packets;
- does not reorder or dispatch packets on the subscriber side;
- runs no event loop; you supply the polling through the callbacks;
- has no command-line program.

## Tests

```
pip install -e .[test]
pytest
```