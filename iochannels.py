"""One-way channels between a machine and its driver.

A `Channel` is a thread-safe FIFO with one of three capacities:

- 0: rendezvous, `put` returns only once a receiver took the item;
- N > 0: buffered, `put` blocks while N items are pending;
- None: unbounded, `put` never blocks.

All channels of a `ChannelSet` share one condition variable and one
sequence counter, so `ChannelSet.read` can hand out output values and
signals in the exact order the machine produced them.
"""

from __future__ import annotations

import itertools
import logging
import threading
from collections import deque
from collections.abc import Iterator
from typing import Any

from isa import Signal


class ChannelClosed(Exception):
    """Raised by put/get on a channel that was closed."""

    pass


class Channel:
    """Thread-safe FIFO with rendezvous, bounded or unbounded capacity."""

    name: str
    capacity: int | None
    closed: bool

    def __init__(
        self,
        name: str,
        capacity: int | None = 0,
        cond: threading.Condition | None = None,
        counter: Iterator[int] | None = None,
    ) -> None:
        if capacity is not None and capacity < 0:
            msg = f"channel {name}: capacity must be non-negative or None"
            raise ValueError(msg)
        self.name = name
        self.capacity = capacity
        self.closed = False
        self._cond = cond if cond is not None else threading.Condition()
        self._counter = counter if counter is not None else itertools.count()
        self._items: deque[tuple[int, Any]] = deque()
        self._put_count = 0
        self._taken = 0

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)

    def _full(self) -> bool:
        if self.capacity is None:
            return False
        return len(self._items) >= max(self.capacity, 1)

    def head_stamp(self) -> int | None:
        """Sequence stamp of the oldest pending item (caller holds the lock)."""
        if not self._items:
            return None
        return self._items[0][0]

    def put(self, item: Any, timeout: float | None = None) -> None:
        """Send one item.

        Raises ChannelClosed if the channel is (or becomes) closed before
        the item is accepted and TimeoutError if `timeout` expires.
        """
        with self._cond:
            if not self._cond.wait_for(lambda: self.closed or not self._full(), timeout):
                msg = f"channel {self.name}: put timed out"
                raise TimeoutError(msg)
            if self.closed:
                msg = f"channel {self.name} is closed"
                raise ChannelClosed(msg)
            stamp = next(self._counter)
            self._items.append((stamp, item))
            self._put_count += 1
            ticket = self._put_count
            self._cond.notify_all()
            if self.capacity != 0:
                return

            # rendezvous: wait for a receiver to take this very item
            taken = self._cond.wait_for(lambda: self.closed or self._taken >= ticket, timeout)
            if self._taken >= ticket:
                return
            self._withdraw(stamp)
            if not taken:
                msg = f"channel {self.name}: put timed out waiting for a receiver"
                raise TimeoutError(msg)
            msg = f"channel {self.name} closed before the item was received"
            raise ChannelClosed(msg)

    def _withdraw(self, stamp: int) -> None:
        for entry in self._items:
            if entry[0] == stamp:
                self._items.remove(entry)
                self._put_count -= 1
                self._cond.notify_all()
                return

    def take(self) -> Any:
        """Pop the oldest pending item (caller holds the lock)."""
        _, item = self._items.popleft()
        self._taken += 1
        self._cond.notify_all()
        return item

    def get(self, timeout: float | None = None) -> Any:
        """Receive one item.

        Items pending at close time are still delivered; afterwards
        ChannelClosed is raised.
        """
        with self._cond:
            if not self._cond.wait_for(lambda: self.closed or bool(self._items), timeout):
                msg = f"channel {self.name}: get timed out"
                raise TimeoutError(msg)
            if self._items:
                return self.take()
            msg = f"channel {self.name} is closed"
            raise ChannelClosed(msg)

    def close(self) -> None:
        with self._cond:
            self.closed = True
            self._cond.notify_all()


class ChannelSet:
    """The input/output/signal/error quartet of one machine."""

    def __init__(self, input_buffer: int = 0, output_buffer: int = 0) -> None:
        self._cond = threading.Condition()
        self.closed = False
        counter = itertools.count()
        self.input = Channel("input", input_buffer, self._cond, counter)
        self.output = Channel("output", output_buffer, self._cond, counter)
        # signalling never blocks the machine; ordering comes from the stamps
        self.signal = Channel("signal", None, self._cond, counter)
        self.error = Channel("error", 1, self._cond, counter)

    def _readable(self) -> bool:
        return self.output.closed or self.output.head_stamp() is not None or self.signal.head_stamp() is not None

    def read(self, timeout: float | None = None) -> tuple[int | None, Signal, str | None]:
        """Return the next output value or signal, oldest first.

        Returns (value, Signal.NONE, None) for an output value,
        (None, signal, None) for a signal and (None, Signal.ERRORED, detail)
        for an error. Raises ChannelClosed once everything pending has been
        read from a closed set and TimeoutError if `timeout` expires.
        """
        with self._cond:
            ready = self._cond.wait_for(self._readable, timeout)
            if not ready:
                msg = "read timed out"
                raise TimeoutError(msg)

            out_stamp = self.output.head_stamp()
            sig_stamp = self.signal.head_stamp()
            if out_stamp is None and sig_stamp is None:
                msg = "channels are closed"
                raise ChannelClosed(msg)

            if sig_stamp is None or (out_stamp is not None and out_stamp < sig_stamp):
                return int(self.output.take()), Signal.NONE, None

            sig = Signal(self.signal.take())
            if sig != Signal.ERRORED:
                return None, sig, None
            detail = self.error.take() if self.error.head_stamp() is not None else None
            return None, sig, detail

    def send_error(self, detail: str) -> None:
        """Publish an error detail followed by the ERRORED signal."""
        self.error.put(detail)
        self.signal.put(Signal.ERRORED)

    def close(self) -> None:
        """Close all four channels; blocked senders/receivers get ChannelClosed."""
        with self._cond:
            self.closed = True
            for ch in (self.input, self.output, self.signal, self.error):
                ch.closed = True
            self._cond.notify_all()
        logging.debug("ChannelSet: closed")
