"""Building blocks for reliable multicast: ring buffer, logging, publisher bookkeeping, TCP connections and wire formats."""

__version__ = "0.1.0"
__all__ = ["circular_buffer", "log", "pub", "connection", "protocol"]