import asyncio
from dataclasses import dataclass
from typing import List, Literal


ChannelKind = Literal["text", "notice", "marker"]

_CLOSED = object()


@dataclass(frozen=True)
class ChannelEvent:
    kind: ChannelKind
    text: str


class OutputChannel:
    """Ordered stream of output produced during a turn.

    The agent sends; one consumer iterates with ``async for`` until ``close()``.
    ``maxsize`` bounds the buffer so a slow consumer pushes back on the producer.
    """

    def __init__(self, maxsize: int = 0):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize)
        self._closed = False
        self._drained = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, text: str, kind: ChannelKind = "text") -> None:
        if self._closed:
            raise RuntimeError("output channel is closed")
        if not text:
            return
        await self._queue.put(ChannelEvent(kind=kind, text=text))

    async def notice(self, text: str) -> None:
        await self.send(text, kind="notice")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._queue.put(_CLOSED)

    def __aiter__(self) -> "OutputChannel":
        return self

    async def __anext__(self) -> ChannelEvent:
        if self._drained:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            self._drained = True
            raise StopAsyncIteration
        return item

    async def collect(self) -> List[ChannelEvent]:
        """Close the channel and return everything still buffered."""
        await self.close()
        return [event async for event in self]
