"""Fixed-size circular byte buffer with split-segment allocation and reads."""

from __future__ import annotations


class BufferFullError(Exception):
    """Raised when an allocation does not fit in the free space of the buffer."""


class CircularBuffer:
    """A ring of bytes.

    ``start`` is the index of the first byte in use and ``stop`` the index
    just after the last byte in use. One byte is always kept free so that a
    full buffer can be told apart from an empty one.
    """

    def __init__(self, size):
        if size < 1:
            raise ValueError(f"buffer size must be positive, got {size}")
        self.size = size
        self.buffer = bytearray(size)
        self.start = 0
        self.stop = 0

    def __len__(self):
        return self.in_use()

    def __repr__(self):
        return (
            f"CircularBuffer(size={self.size}, start={self.start}, "
            f"stop={self.stop}, in_use={self.in_use()})"
        )

    def in_use(self):
        """Number of bytes currently stored."""
        if self.stop >= self.start:
            return self.stop - self.start
        return self.size - self.start + self.stop

    def available(self):
        """Number of bytes that can still be allocated."""
        return self.size - self.in_use() - 1

    def alloc(self, length):
        """Reserve ``length`` bytes at the end of the data.

        Returns two writable memoryviews into the buffer; the second one is
        empty unless the reservation wraps around the end of the buffer.
        """
        if length < 0:
            raise ValueError(f"length must not be negative, got {length}")
        if self.available() < length:
            raise BufferFullError(
                f"cannot allocate {length} bytes, {self.available()} available"
            )

        view = memoryview(self.buffer)
        if self.size - self.stop >= length:
            first = view[self.stop:self.stop + length]
            self.stop += length
            return first, view[0:0]

        first = view[self.stop:]
        rest = length - len(first)
        self.stop = rest
        return first, view[:rest]

    def write(self, data):
        """Append ``data`` to the buffer."""
        data = bytes(data)
        first, second = self.alloc(len(data))
        split = len(first)
        first[:] = data[:split]
        second[:] = data[split:]

    def trim(self, target_len):
        """Shorten the data in use from its end to ``target_len`` bytes."""
        in_use = self.in_use()
        if in_use <= target_len:
            return

        if self.stop > target_len:
            self.stop -= in_use - target_len
            return

        self.stop = (self.start + target_len) % self.size

    def free(self, size):
        """Discard ``size`` bytes from the front; return the bytes left in use."""
        if not size:
            return self.in_use()

        in_use = self.in_use()
        if size >= in_use:
            # Resetting improves the chance that later operations fit
            # in one contiguous segment.
            self.start = 0
            self.stop = 0
            return 0

        self.start = (self.start + size) % self.size
        return in_use - size

    def read(self, size):
        """Copy up to ``size`` bytes from the front without discarding them."""
        return self.read_offset(0, size)

    def read_offset(self, offset, size):
        """Copy up to ``size`` bytes starting ``offset`` bytes into the data."""
        in_use = self.in_use()
        if offset < 0 or offset > in_use:
            raise ValueError(f"offset {offset} outside of data in use ({in_use})")
        if size < 0:
            raise ValueError(f"size must not be negative, got {size}")

        length = min(size, in_use - offset)
        begin = (self.start + offset) % self.size
        end = begin + length
        if end <= self.size:
            return bytes(self.buffer[begin:end])
        return bytes(self.buffer[begin:]) + bytes(self.buffer[:end - self.size])

    def read_segments(self, size):
        """Return up to ``size`` bytes from the front as two memoryviews."""
        view = memoryview(self.buffer)
        if self.stop == self.start:
            return view[0:0], view[0:0]

        length = min(self.in_use(), size)
        first_len = min(length, self.size - self.start)
        first = view[self.start:self.start + first_len]
        return first, view[:length - first_len]