"""Sequence numbering and request/response correlation.

The RVR+ does not echo a request token, so responses are matched by
command id only. Waiters for the same command id are queued and resolved
oldest first, which keeps concurrent requests from stealing each other's
responses when they are issued in order.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections import deque
from dataclasses import dataclass, field

from .framing import Frame

logger = logging.getLogger(__name__)


class SequenceCounter:
    """8-bit sequence number, advanced after every send."""

    def __init__(self, start: int = 0) -> None:
        self._value = start & 0xFF

    def next(self) -> int:
        """Return the current sequence number and advance (mod 256)."""
        value = self._value
        self._value = (self._value + 1) & 0xFF
        return value

    def peek(self) -> int:
        return self._value

    def reset(self, value: int = 0) -> None:
        self._value = value & 0xFF


@dataclass
class PendingResponse:
    """A caller waiting for a frame carrying ``command_id``."""

    token: int
    command_id: int
    future: asyncio.Future = field(repr=False)

    @property
    def done(self) -> bool:
        return self.future.done()


class ResponseCorrelator:
    """Match inbound frames to outstanding requests by command id."""

    def __init__(self) -> None:
        self._waiters: dict[int, deque[PendingResponse]] = {}
        self._tokens = itertools.count(1)

    @property
    def outstanding(self) -> int:
        return sum(
            1 for queue in self._waiters.values() for p in queue if not p.done
        )

    def expect(self, command_id: int) -> PendingResponse:
        """Register interest in the next frame carrying ``command_id``.

        Must be called from inside the running event loop, before the
        request is written, so a fast response cannot be missed.
        """
        future = asyncio.get_running_loop().create_future()
        pending = PendingResponse(next(self._tokens), command_id & 0xFF, future)
        self._waiters.setdefault(pending.command_id, deque()).append(pending)
        logger.debug(
            "Awaiting CID 0x%02X (token %d)", pending.command_id, pending.token
        )
        return pending

    def resolve(self, frame: Frame) -> bool:
        """Hand ``frame`` to the oldest live waiter for its command id.

        Returns:
            True if a waiter was resolved.
        """
        command_id = frame.correlation_id
        if command_id is None:
            return False
        queue = self._waiters.get(command_id)
        while queue:
            pending = queue.popleft()
            if pending.done:
                continue
            pending.future.set_result(frame)
            logger.debug(
                "Resolved CID 0x%02X (token %d)", command_id, pending.token
            )
            if not queue:
                del self._waiters[command_id]
            return True
        self._waiters.pop(command_id, None)
        return False

    async def wait(self, pending: PendingResponse, timeout: float) -> Frame | None:
        """Wait for ``pending`` to resolve.

        Returns:
            The matching frame, or None if nothing arrived within ``timeout``
            seconds.
        """
        try:
            return await asyncio.wait_for(pending.future, timeout)
        except asyncio.TimeoutError:
            logger.debug(
                "No response for CID 0x%02X within %.2fs",
                pending.command_id,
                timeout,
            )
            return None
        finally:
            self.discard(pending)

    def discard(self, pending: PendingResponse) -> None:
        """Forget ``pending`` without resolving it."""
        if not pending.future.done():
            pending.future.cancel()
        queue = self._waiters.get(pending.command_id)
        if queue is None:
            return
        if pending in queue:
            queue.remove(pending)
        if not queue:
            del self._waiters[pending.command_id]

    def cancel_all(self) -> None:
        """Release every waiter with no data (used on disconnect)."""
        for queue in self._waiters.values():
            for pending in queue:
                if not pending.future.done():
                    pending.future.set_result(None)
        self._waiters.clear()
