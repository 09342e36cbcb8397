"""Transport contract consumed by the controller.

A transport moves whole byte strings to the robot and hands every inbound
notification, unframed, to a single data handler. Failures are reported by
return value; nothing here raises for a rejected write.
"""

from __future__ import annotations

from typing import Callable, Protocol, runtime_checkable

DataHandler = Callable[[bytes], None]


@runtime_checkable
class Transport(Protocol):
    async def connect(self) -> bool:
        """Open the link. Returns False if the robot could not be reached."""
        ...

    async def send_command(self, data: bytes) -> bool:
        """Write one frame. Returns True if the write was accepted."""
        ...

    async def disconnect(self) -> None:
        ...

    def set_data_handler(self, handler: DataHandler | None) -> None:
        """Register the callback that receives inbound notification bytes."""
        ...

    @property
    def is_connected(self) -> bool:
        ...
