"""Publisher-side bookkeeping of queued and in-flight packets per subscriber."""

from __future__ import annotations

from bisect import insort
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

PayloadFree = Callable[[Any, Any], None]


@dataclass(eq=False)
class PubPacket:
    """A packet queued or in flight from a publisher.

    A ``pid`` of 0 marks a packet that subscribers never acknowledge.
    """

    pid: int
    payload: Any
    user_data: Any = None
    send_ts: int = 0
    ref_count: int = 0

    @property
    def payload_len(self):
        return len(self.payload)


def _by_pid(packet):
    return packet.pid


@dataclass(eq=False)
class PubSubscriber:
    """A subscriber and the packets it has yet to acknowledge.

    ``inflight`` is kept in ascending packet id order, oldest first.
    """

    context: "PubContext"
    user_data: Any = None
    inflight: List[PubPacket] = field(default_factory=list)

    def ack(self, pid, payload_free=None):
        """Acknowledge packet ``pid``; release it once every subscriber has.

        ``payload_free(payload, user_data)`` is called when the packet is
        released. Unknown packet ids are ignored.
        """
        packet = next((p for p in self.inflight if p.pid == pid), None)
        if packet is None:
            # Already acknowledged, or dropped after a resend.
            return

        self.inflight.remove(packet)
        packet.ref_count -= 1
        if packet.ref_count:
            return

        inflight = self.context.inflight
        for position, candidate in enumerate(inflight):
            if candidate is packet:
                del inflight[position]
                break

        if payload_free is not None:
            payload_free(packet.payload, packet.user_data)

    def reset(self, payload_free=None):
        """Acknowledge everything in flight and detach from the context."""
        while self.inflight:
            self.ack(self.inflight[0].pid, payload_free)

        subscribers = self.context.subscribers
        for position, candidate in enumerate(subscribers):
            if candidate is self:
                del subscribers[position]
                return
        raise ValueError("subscriber is not registered with its context")

    def timed_out_packets(self, current_ts, timeout_period):
        """Return in-flight packets, newest first, sent at least
        ``timeout_period`` before ``current_ts``; stop at the first that is not.
        """
        result = []
        for packet in reversed(self.inflight):
            if packet.send_ts + timeout_period > current_ts:
                break
            result.append(packet)
        return result


class PubContext:
    """Queue of outgoing packets and the subscribers that must acknowledge them.

    ``queued`` and ``inflight`` are kept in ascending packet id order.
    """

    def __init__(self):
        self.subscribers: List[PubSubscriber] = []
        self.queued: List[PubPacket] = []
        self.inflight: List[PubPacket] = []
        self.next_pid = 1

    def __repr__(self):
        return (
            f"PubContext(next_pid={self.next_pid}, queued={len(self.queued)}, "
            f"inflight={len(self.inflight)}, subscribers={len(self.subscribers)})"
        )

    def add_subscriber(self, user_data=None):
        """Register and return a new subscriber."""
        subscriber = PubSubscriber(self, user_data)
        self.subscribers.append(subscriber)
        return subscriber

    def _queue(self, pid, payload, user_data):
        if payload is None:
            raise ValueError("payload must not be None")
        packet = PubPacket(pid=pid, payload=payload, user_data=user_data)
        insort(self.queued, packet, key=_by_pid)
        return packet.pid

    def queue_packet(self, payload, user_data=None):
        """Queue ``payload`` under the next packet id and return that id."""
        pid = self.next_pid
        self.next_pid += 1
        return self._queue(pid, payload, user_data)

    def queue_no_acknowledge_packet(self, payload, user_data=None):
        """Queue ``payload`` as a packet that needs no acknowledgement (pid 0)."""
        return self._queue(0, payload, user_data)

    def queue_size(self):
        """Number of packets waiting to be sent."""
        return len(self.queued)

    def next_queued_packet(self):
        """Return the queued packet with the lowest id, or None."""
        return self.queued[0] if self.queued else None

    def packet_sent(self, packet, send_ts):
        """Move ``packet`` from the queue to in flight for all subscribers."""
        packet.send_ts = send_ts
        for position, candidate in enumerate(self.queued):
            if candidate is packet:
                del self.queued[position]
                break
        else:
            raise ValueError(f"packet {packet.pid} is not queued")

        if not packet.pid:
            return

        insort(self.inflight, packet, key=_by_pid)
        for subscriber in self.subscribers:
            insort(subscriber.inflight, packet, key=_by_pid)
            packet.ref_count += 1

    def unacknowledged_packet_count(self):
        """Number of sent packets not yet acknowledged by every subscriber."""
        return len(self.inflight)

    def timed_out_subscribers(self, current_ts, timeout_period):
        """Return subscribers whose oldest in-flight packet has timed out."""
        return [
            subscriber
            for subscriber in self.subscribers
            if subscriber.inflight
            and subscriber.inflight[0].send_ts + timeout_period <= current_ts
        ]

    def oldest_unacknowledged_send_ts(self):
        """Send time of the oldest unacknowledged packet, or None if none."""
        oldest = None
        for subscriber in self.subscribers:
            if not subscriber.inflight:
                continue
            ts = subscriber.inflight[0].send_ts
            if oldest is None or ts < oldest:
                oldest = ts
        return oldest