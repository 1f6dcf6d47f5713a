import asyncio
import json
import logging
import threading
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import AsyncIterator, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    UPLOADED = "uploaded"
    TRANSCRIBING = "transcribing"
    ANALYZING_VISUALS = "analyzing-visuals"
    SCORING = "scoring"
    RENDERING_ARTIFACT = "rendering-artifact"
    PERSISTING = "persisting"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (Stage.COMPLETED, Stage.FAILED)


@dataclass
class ProgressEvent:
    correlation_id: str
    stage: str
    percentage: int
    message: str
    timestamp: float

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)

    def sse(self) -> str:
        return f"data: {json.dumps(self.to_dict(), ensure_ascii=False)}\n\n"


def _offer(queue: "asyncio.Queue[ProgressEvent]", event: ProgressEvent) -> None:
    try:
        queue.put_nowait(event)
    except asyncio.QueueFull:
        logger.debug("Dropping progress event for %s: subscriber queue full", event.correlation_id)


class ProgressBroadcaster:
    """
    Best-effort fan-out of progress events keyed by correlation id.

    `publish` may be called from worker threads; events are handed to each
    subscriber's event loop. Nothing is stored for ids without subscribers.
    """

    def __init__(self, max_queue: int = 100) -> None:
        self.max_queue = max_queue
        self._subs: Dict[str, List[Tuple[asyncio.AbstractEventLoop, "asyncio.Queue[ProgressEvent]"]]] = {}
        self._lock = threading.Lock()

    def subscribe(self, correlation_id: str) -> "asyncio.Queue[ProgressEvent]":
        loop = asyncio.get_running_loop()
        queue: "asyncio.Queue[ProgressEvent]" = asyncio.Queue(maxsize=self.max_queue)
        with self._lock:
            self._subs.setdefault(correlation_id, []).append((loop, queue))
        logger.debug("Subscriber attached to %s", correlation_id)
        return queue

    def unsubscribe(self, correlation_id: str, queue: "asyncio.Queue[ProgressEvent]") -> None:
        with self._lock:
            subs = [s for s in self._subs.get(correlation_id, []) if s[1] is not queue]
            if subs:
                self._subs[correlation_id] = subs
            else:
                self._subs.pop(correlation_id, None)

    def subscriber_count(self, correlation_id: str) -> int:
        with self._lock:
            return len(self._subs.get(correlation_id, []))

    def publish(self, correlation_id: str, stage: Stage, percentage: int, message: str = "") -> ProgressEvent:
        event = ProgressEvent(
            correlation_id=correlation_id,
            stage=Stage(stage).value,
            percentage=int(percentage),
            message=message,
            timestamp=time.time(),
        )
        with self._lock:
            targets = list(self._subs.get(correlation_id, []))
        for loop, queue in targets:
            if loop.is_closed():
                continue
            try:
                running: Optional[asyncio.AbstractEventLoop] = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is loop:
                _offer(queue, event)
            else:
                loop.call_soon_threadsafe(_offer, queue, event)
        return event

    async def stream(self, correlation_id: str) -> AsyncIterator[str]:
        """Yield SSE frames until a terminal event arrives."""
        queue = self.subscribe(correlation_id)
        try:
            while True:
                event = await queue.get()
                yield event.sse()
                if Stage(event.stage).terminal:
                    break
        finally:
            self.unsubscribe(correlation_id, queue)
