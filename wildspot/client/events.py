import asyncio
from dataclasses import dataclass
from typing import AsyncIterator, List


@dataclass(frozen=True)
class Notification:
    message: str
    success: bool = True


class NotificationChannel:
    """One-shot notifications delivered in emission order to a single consumer"""

    def __init__(self):
        self._queue: "asyncio.Queue[Notification]" = asyncio.Queue()
        self._listening = False

    def emit(self, message: str, success: bool = True) -> Notification:
        notification = Notification(message, success)
        self._queue.put_nowait(notification)
        return notification

    async def next(self) -> Notification:
        return await self._queue.get()

    def drain(self) -> List[Notification]:
        """Everything emitted so far that nobody has consumed yet"""
        pending = []
        while not self._queue.empty():
            pending.append(self._queue.get_nowait())
        return pending

    async def listen(self) -> AsyncIterator[Notification]:
        if self._listening:
            raise RuntimeError("Notification channel already has a consumer")
        self._listening = True
        try:
            while True:
                yield await self._queue.get()
        finally:
            self._listening = False
