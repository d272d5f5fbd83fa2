from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Literal

import orjson

EventKind = Literal["progress", "complete", "error"]


@dataclass(frozen=True)
class ProgressEvent:
    event: EventKind
    status: str
    progress: int
    message: str
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def terminal(self) -> bool:
        return self.event != "progress"

    def as_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "status": self.status,
            "progress": self.progress,
            "message": self.message,
        }
        if self.data:
            out["metadata" if self.event == "progress" else "data"] = self.data
        return out

    def to_sse(self) -> bytes:
        return b"event: " + self.event.encode("utf-8") + b"\ndata: " + orjson.dumps(
            self.as_dict(), default=str
        ) + b"\n\n"


class ProgressChannel:
    """Bounded producer/consumer channel for one battle run.

    Progress never goes backwards, exactly one terminal event is accepted,
    and a slow or vanished consumer never blocks the producer: when the queue
    is full the oldest progress event is dropped.
    """

    def __init__(self, *, maxsize: int = 64):
        self._queue: asyncio.Queue[ProgressEvent] = asyncio.Queue(maxsize=max(2, int(maxsize)))
        self._last_progress = 0
        self._terminal: ProgressEvent | None = None
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._terminal is not None

    def _put(self, event: ProgressEvent) -> None:
        while True:
            try:
                self._queue.put_nowait(event)
                return
            except asyncio.QueueFull:
                try:
                    self._queue.get_nowait()
                    self.dropped += 1
                except asyncio.QueueEmpty:
                    pass

    def emit(
        self,
        status: str,
        progress: int | float,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        if self.closed:
            return
        value = max(self._last_progress, min(100, max(0, int(progress))))
        self._last_progress = value
        self._put(
            ProgressEvent(
                event="progress",
                status=str(status),
                progress=value,
                message=str(message),
                data=dict(metadata or {}),
            )
        )

    def complete(self, result: dict[str, Any], *, message: str = "Battle complete!") -> bool:
        return self._finish(
            ProgressEvent(
                event="complete", status="complete", progress=100, message=message, data=result
            )
        )

    def fail(self, message: str, *, code: str = "error") -> bool:
        return self._finish(
            ProgressEvent(
                event="error",
                status="error",
                progress=100,
                message=str(message),
                data={"message": str(message), "code": str(code)},
            )
        )

    def _finish(self, event: ProgressEvent) -> bool:
        if self.closed:
            return False
        self._terminal = event
        self._last_progress = 100
        self._put(event)
        return True

    async def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        while True:
            event = await self._queue.get()
            yield event
            if event.terminal:
                return
