"""
Real-time notification channel to the dashboard.

Events are fanned out to in-process handlers and to per-client asyncio queues
that back the SSE endpoint (GET /api/v1/events). Emitters run in worker
threads, so events reach a subscriber queue through its own event loop.
Delivery is best effort: the UI is only notified, the durable record lives
in the stores.

Usage:
    notifier = RealtimeNotifier()
    notifier.emit("agent.config_error", {"campaignId": "c1", "reason": "ambiguous"})

    q = notifier.subscribe(asyncio.get_running_loop())
    event = await q.get()
"""

import asyncio
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from campaign_engine.logger import logger
from campaign_engine.settings import settings


# Event names
CONFIG_ERROR = "agent.config_error"
NODE_ERROR = "agent.node_error"
LEAD_UPDATED = "lead.updated"
LEAD_HANDOFF = "lead.handoff"
LEAD_TRANSFERRED = "lead.transferred"
LEAD_STATUS_CHANGED = "lead.status_changed"
LEAD_PRESENCE = "lead.presence"
SESSION_STATUS = "session.status"
MESSAGE_SENT = "message.sent"


@dataclass
class RealtimeEvent:
    name: str
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {"event": self.name, "payload": self.payload, "timestamp": self.timestamp}


EventHandler = Callable[[RealtimeEvent], None]


class RealtimeNotifier:
    """
    Thread-safe fan-out of engine events.

    Handlers run synchronously in the emitting thread; a failing handler is
    logged and skipped. Subscriber queues are bounded; a full queue drops the
    event for that subscriber only. Subscribers never hold a worker thread.
    """

    def __init__(self, queue_size: Optional[int] = None, history_size: int = 100):
        self._queue_size = queue_size or settings.realtime.queue_size
        self._handlers: List[EventHandler] = []
        self._subscribers: List[Tuple[asyncio.AbstractEventLoop, asyncio.Queue]] = []
        self._history: List[RealtimeEvent] = []
        self._history_size = history_size
        self._lock = threading.Lock()

    def add_handler(self, handler: EventHandler) -> None:
        with self._lock:
            self._handlers.append(handler)

    def subscribe(self, loop: asyncio.AbstractEventLoop) -> asyncio.Queue:
        """Bounded queue filled on `loop`; call from a coroutine running on it."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        with self._lock:
            self._subscribers.append((loop, queue))
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        with self._lock:
            self._subscribers = [s for s in self._subscribers if s[1] is not queue]

    def emit(self, name: str, payload: Optional[Dict[str, Any]] = None) -> RealtimeEvent:
        event = RealtimeEvent(name=name, payload=dict(payload or {}))
        with self._lock:
            self._history.append(event)
            if len(self._history) > self._history_size:
                self._history.pop(0)
            handlers = list(self._handlers)
            subscribers = list(self._subscribers)

        logger.event("realtime_emit", name=name)

        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                logger.error("Realtime handler failed", name=name, error=str(e))

        for loop, queue in subscribers:
            try:
                loop.call_soon_threadsafe(self._offer, queue, event)
            except RuntimeError:
                logger.warning("Realtime subscriber loop closed, dropping event", name=name)

        return event

    @staticmethod
    def _offer(queue: asyncio.Queue, event: RealtimeEvent) -> None:
        try:
            queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Realtime subscriber queue full, dropping event", name=event.name)

    def get_history(self, name: Optional[str] = None, limit: int = 10) -> List[RealtimeEvent]:
        with self._lock:
            events = list(self._history)
        if name:
            events = [e for e in events if e.name == name]
        return events[-limit:]

    def clear_history(self) -> None:
        with self._lock:
            self._history.clear()
