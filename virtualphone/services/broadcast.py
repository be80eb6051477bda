from __future__ import annotations
from typing import Any, Callable, Dict, Optional, Tuple
import itertools
import threading
import time

from virtualphone.utils.logger import ServiceLogger

Handler = Callable[[str, Dict[str, Any]], None]

# Repeats of the same (callId, status) inside this window are dropped
DEDUP_WINDOW_SECONDS = 3.0
DEDUP_EXPIRY_SECONDS = 5.0


class EventDeduplicator:
    """Short-window suppression of repeated call events keyed by (callId, status)."""

    def __init__(
        self,
        window: float = DEDUP_WINDOW_SECONDS,
        expiry: float = DEDUP_EXPIRY_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.window = window
        self.expiry = expiry
        self._clock = clock
        self._seen: Dict[Tuple[str, str], float] = {}
        self._lock = threading.Lock()

    @staticmethod
    def key_for(payload: Dict[str, Any]) -> Optional[Tuple[str, str]]:
        call_id = payload.get("callId")
        if not call_id:
            return None
        return str(call_id), str(payload.get("status", ""))

    def should_emit(self, payload: Dict[str, Any]) -> bool:
        """Return True and remember the key unless it was emitted within the window."""
        key = self.key_for(payload)
        if key is None:
            return True

        now = self._clock()
        with self._lock:
            self._purge(now)
            last = self._seen.get(key)
            if last is not None and now - last < self.window:
                return False
            self._seen[key] = now
            return True

    def _purge(self, now: float) -> None:
        expired = [k for k, ts in self._seen.items() if now - ts >= self.expiry]
        for k in expired:
            del self._seen[k]

    def pending(self) -> int:
        with self._lock:
            self._purge(self._clock())
            return len(self._seen)


class Broadcaster:
    """Thread-safe publish/subscribe fan-out for push events.

    Handlers receive ``(event, payload)``. A failing handler is logged and
    skipped; publishing never raises.
    """

    def __init__(
        self,
        deduplicator: Optional[EventDeduplicator] = None,
        logger: Optional[ServiceLogger] = None,
    ) -> None:
        self.deduplicator = deduplicator or EventDeduplicator()
        self.logger = logger or ServiceLogger("broadcast", log_dir=None)
        self._handlers: Dict[int, Handler] = {}
        self._tokens = itertools.count(1)
        self._lock = threading.Lock()

    def subscribe(self, handler: Handler) -> int:
        with self._lock:
            token = next(self._tokens)
            self._handlers[token] = handler
        return token

    def unsubscribe(self, token: int) -> bool:
        with self._lock:
            return self._handlers.pop(token, None) is not None

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._handlers)

    def emit(self, event: str, payload: Dict[str, Any]) -> bool:
        """Publish unless an identical call event went out within the dedup window."""
        if not self.deduplicator.should_emit(payload):
            self.logger.debug(
                f"Suppressed duplicate {event}",
                call_id=payload.get("callId"),
                status=payload.get("status"),
            )
            return False
        self.publish(event, payload)
        return True

    def publish(self, event: str, payload: Dict[str, Any]) -> None:
        """Deliver to every subscriber without deduplication."""
        with self._lock:
            handlers = list(self._handlers.items())

        for token, handler in handlers:
            try:
                handler(event, payload)
            except Exception as e:
                self.logger.error(f"Subscriber {token} failed on {event}: {e}", exc_info=True)
