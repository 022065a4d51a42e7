from __future__ import annotations

import asyncio
import logging
import queue
import threading
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional

from shadowswap.core.models import SettlementEvent, SettlementEventType, now_ms
from shadowswap.observability.metrics import inc, inc_labelled


logger = logging.getLogger(__name__)

Handler = Callable[[SettlementEvent], None]

DEFAULT_MAX_EVENTS_PER_INTENT = 50
DEFAULT_EVENT_TTL_MS = 5 * 60 * 1000
DEFAULT_SWEEP_INTERVAL_MS = 60 * 1000
DEFAULT_STREAM_QUEUE_SIZE = 256

_CLOSED = object()


@dataclass(eq=False)
class Subscription:
    intent_id: Optional[str]
    handler: Handler
    active: bool = True

    def matches(self, event: SettlementEvent) -> bool:
        return self.active and (self.intent_id is None or self.intent_id == event.intent_id)


class EventStream:
    """Per-subscriber buffered channel.

    The broadcaster only ever does a non-blocking put, so a slow reader never
    stalls ``publish``. A reader that falls ``maxsize`` events behind is cut
    off: the stream closes after the events already buffered, and the reader
    reconnects to get the retained history replayed.
    """

    def __init__(self, broadcaster: "EventBroadcaster", intent_id: str, maxsize: int):
        self.intent_id = intent_id
        self._broadcaster = broadcaster
        self.maxsize = max(1, int(maxsize))
        # unbounded so the close sentinel always fits; maxsize is enforced in _offer
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._closed = threading.Event()
        self.subscription: Optional[Subscription] = None
        self.overflowed = False

    def _offer(self, event: SettlementEvent) -> None:
        if self._closed.is_set():
            return
        if self._queue.qsize() >= self.maxsize:
            self.overflowed = True
            inc("stream_overflows", 1)
            logger.warning(
                "event stream overflowed after %d buffered events; closing",
                self.maxsize,
                extra={"intent_id": self.intent_id},
            )
            self.close()
            return
        self._queue.put_nowait(event)

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def get(self, timeout: Optional[float] = None) -> Optional[SettlementEvent]:
        """Next event, or None on timeout or once the stream is closed."""
        try:
            item = self._queue.get(timeout=timeout) if timeout != 0 else self._queue.get_nowait()
        except queue.Empty:
            return None
        if item is _CLOSED:
            # keep the sentinel visible for any other waiter
            self._queue.put_nowait(_CLOSED)
            return None
        return item

    def drain(self) -> List[SettlementEvent]:
        out: List[SettlementEvent] = []
        while True:
            ev = self.get(timeout=0)
            if ev is None:
                return out
            out.append(ev)

    async def next_event(self, timeout: Optional[float] = None) -> Optional[SettlementEvent]:
        return await asyncio.to_thread(self.get, timeout)

    def __iter__(self) -> Iterator[SettlementEvent]:
        while not self._closed.is_set() or not self._queue.empty():
            ev = self.get(timeout=0.5)
            if ev is None:
                if self._closed.is_set():
                    return
                continue
            yield ev

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        self._broadcaster._forget_stream(self)
        self._queue.put_nowait(_CLOSED)

    def __enter__(self) -> "EventStream":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class EventBroadcaster:
    """Publish/subscribe channel for settlement lifecycle events, keyed by intent id.

    Keeps a bounded, time-boxed history per intent so that late subscribers can
    replay what they missed. Subscribers run synchronously inside ``publish``,
    in subscription order; an exception in one handler is logged and does not
    affect the others.
    """

    def __init__(
        self,
        max_events_per_intent: int = DEFAULT_MAX_EVENTS_PER_INTENT,
        event_ttl_ms: int = DEFAULT_EVENT_TTL_MS,
        stream_queue_size: int = DEFAULT_STREAM_QUEUE_SIZE,
        clock: Callable[[], int] = now_ms,
    ):
        self.max_events_per_intent = max(1, int(max_events_per_intent))
        self.event_ttl_ms = max(0, int(event_ttl_ms))
        # a fresh stream must be able to hold CONNECTED plus a full replay
        self.stream_queue_size = max(int(stream_queue_size), self.max_events_per_intent + 1)
        self._clock = clock
        self._lock = threading.RLock()
        self._history: Dict[str, Deque[SettlementEvent]] = {}
        self._subscriptions: List[Subscription] = []
        self._streams: List[EventStream] = []

    def publish(
        self,
        type: SettlementEventType,
        intent_id: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> SettlementEvent:
        event = SettlementEvent(type=type, intent_id=intent_id, timestamp=self._clock(), data=dict(data) if data else None)
        with self._lock:
            hist = self._history.get(intent_id)
            if hist is None:
                hist = deque(maxlen=self.max_events_per_intent)
                self._history[intent_id] = hist
            hist.append(event)
            targets = [s for s in self._subscriptions if s.matches(event)]
        inc_labelled("events_published", {"type": type.value}, 1)
        logger.debug("event %s", type.value, extra={"intent_id": intent_id, "event_type": type.value})
        for sub in targets:
            try:
                sub.handler(event)
            except Exception:
                inc("subscriber_errors", 1)
                logger.exception("subscriber failed on %s", type.value, extra={"intent_id": intent_id})
        return event

    def subscribe(self, intent_id: Optional[str], handler: Handler) -> Subscription:
        """Register ``handler`` for future events of ``intent_id`` (None = every intent)."""
        sub = Subscription(intent_id=intent_id, handler=handler)
        with self._lock:
            self._subscriptions.append(sub)
        return sub

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subscription.active = False
            try:
                self._subscriptions.remove(subscription)
            except ValueError:
                pass

    def get_history(self, intent_id: str) -> List[SettlementEvent]:
        with self._lock:
            return list(self._history.get(intent_id, ()))

    def open_stream(self, intent_id: str) -> EventStream:
        """Open a channel that yields CONNECTED, then retained history, then live events.

        Replay and registration happen under the broadcaster lock, so no event
        is both replayed and delivered live, and none falls between the two.
        A reader that lets ``stream_queue_size`` events pile up is closed
        rather than silently skipped; reopening replays the retained history.
        """
        stream = EventStream(self, intent_id, self.stream_queue_size)
        with self._lock:
            stream._offer(
                SettlementEvent(
                    type=SettlementEventType.CONNECTED,
                    intent_id=intent_id,
                    timestamp=self._clock(),
                    data={"message": "Connected to settlement events"},
                )
            )
            for ev in self._history.get(intent_id, ()):
                stream._offer(ev)
            stream.subscription = Subscription(intent_id=intent_id, handler=stream._offer)
            self._subscriptions.append(stream.subscription)
            self._streams.append(stream)
        return stream

    def _forget_stream(self, stream: EventStream) -> None:
        with self._lock:
            if stream.subscription is not None:
                self.unsubscribe(stream.subscription)
            try:
                self._streams.remove(stream)
            except ValueError:
                pass

    def close_streams(self) -> None:
        with self._lock:
            streams = list(self._streams)
        for s in streams:
            s.close()

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def sweep(self, now: Optional[int] = None) -> int:
        """Drop events older than the TTL; return how many were removed."""
        now = self._clock() if now is None else now
        removed = 0
        with self._lock:
            for intent_id in list(self._history.keys()):
                hist = self._history[intent_id]
                keep = [e for e in hist if now - e.timestamp < self.event_ttl_ms]
                removed += len(hist) - len(keep)
                if not keep:
                    del self._history[intent_id]
                elif len(keep) != len(hist):
                    self._history[intent_id] = deque(keep, maxlen=self.max_events_per_intent)
        if removed:
            logger.debug("swept %d expired events", removed)
        return removed

    async def run_sweeper(self, interval_ms: int = DEFAULT_SWEEP_INTERVAL_MS) -> None:
        interval_s = max(1, int(interval_ms)) / 1000.0
        while True:
            await asyncio.sleep(interval_s)
            try:
                self.sweep()
            except Exception:
                logger.exception("event sweep failed")
