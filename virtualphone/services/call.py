from __future__ import annotations
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple
import threading
import time

from virtualphone.services.broadcast import Broadcaster
from virtualphone.services.errors import CallNotFoundError, CallStateError, ValidationError
from virtualphone.services.records import RecordStatus, RecordStore
from virtualphone.utils.logger import ServiceLogger

RINGING = "ringing"
ACTIVE = "active"
ENDED = "ended"

# A repeated start for the same number inside this window returns the existing call
START_REUSE_WINDOW_MS = 5000
HISTORY_SIZE = 200


@dataclass
class Call:
    call_id: str
    phone_number: str
    status: str  # 'ringing', 'active', 'ended'
    start_time: int  # epoch millis
    answer_time: Optional[int] = None
    end_time: Optional[int] = None
    duration: Optional[int] = None  # in seconds

    @property
    def is_active(self) -> bool:
        return self.status == ACTIVE

    def finish(self, end_time: int) -> None:
        self.status = ENDED
        self.end_time = end_time
        connected_at = self.answer_time if self.answer_time is not None else self.start_time
        self.duration = max(0, round((end_time - connected_at) / 1000))

    def elapsed_seconds(self, now: int) -> int:
        if self.duration is not None:
            return self.duration
        connected_at = self.answer_time if self.answer_time is not None else self.start_time
        return max(0, (now - connected_at) // 1000)

    def to_dict(self, now: Optional[int] = None) -> Dict[str, Any]:
        return {
            "callId": self.call_id,
            "phoneNumber": self.phone_number,
            "status": self.status,
            "startTime": self.start_time,
            "answerTime": self.answer_time,
            "duration": self.elapsed_seconds(now) if now is not None else self.duration,
            "isActive": self.is_active,
        }


class CallRegistry:
    """In-memory set of live calls plus a bounded history of ended ones."""

    def __init__(self, history_size: int = HISTORY_SIZE) -> None:
        self.active_calls: Dict[str, Call] = {}
        self.call_history: Deque[Call] = deque(maxlen=history_size)
        self._last_call_id = 0

    def next_call_id(self, now: int) -> str:
        call_id = now if now > self._last_call_id else self._last_call_id + 1
        self._last_call_id = call_id
        return str(call_id)

    def add(self, call: Call) -> None:
        self.active_calls[call.call_id] = call

    def get(self, call_id: str) -> Optional[Call]:
        return self.active_calls.get(call_id)

    def find_recent_for_number(self, phone_number: str, now: int, window_ms: int) -> Optional[Call]:
        for call in self.active_calls.values():
            if (call.phone_number == phone_number
                    and call.status in (RINGING, ACTIVE)
                    and now - call.start_time <= window_ms):
                return call
        return None

    def retire(self, call_id: str) -> Optional[Call]:
        call = self.active_calls.pop(call_id, None)
        if call is not None:
            self.call_history.append(call)
        return call

    def find_in_history(self, call_id: str) -> Optional[Call]:
        for call in reversed(self.call_history):
            if call.call_id == call_id:
                return call
        return None

    def active(self) -> List[Call]:
        return [c for c in self.active_calls.values() if c.status != ENDED]

    def clear(self) -> None:
        self.active_calls.clear()
        self.call_history.clear()


class CallService:
    """Drives the simulated call lifecycle: ringing -> active -> ended.

    Every transition writes the matching record and pushes a call_status
    event. Registry operations are serialized by one lock; the record store
    is always entered after it.
    """

    def __init__(
        self,
        store: RecordStore,
        broadcaster: Broadcaster,
        registry: Optional[CallRegistry] = None,
        logger: Optional[ServiceLogger] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.broadcaster = broadcaster
        self.registry = registry or CallRegistry()
        self.logger = logger or ServiceLogger("calls", log_dir=None)
        self._clock = clock
        self._lock = threading.RLock()
        self.total_started = 0

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _emit_status(self, call_id: str, phone_number: str, status: str, command: str,
                     duration: Optional[int] = None) -> bool:
        payload: Dict[str, Any] = {
            "callId": call_id,
            "phoneNumber": phone_number,
            "status": status,
            "command": command,
            "timestamp": self.now_ms(),
        }
        if duration is not None:
            payload["duration"] = duration
        return self.broadcaster.emit("call_status", payload)

    def _upsert_record(self, phone_number: str, status: RecordStatus, update_only: bool,
                       duration: Optional[int] = None, call_id: Optional[str] = None):
        record = self.store.add_or_update(
            phone_number, status, duration=duration, update_only=True, call_id=call_id
        )
        if record is None and not update_only:
            record = self.store.add_or_update(phone_number, status, duration=duration, call_id=call_id)
        return record

    def start_call(self, phone_number: Optional[str]) -> Call:
        """Create a ringing call, or return one started for this number moments ago."""
        return self.open_call(phone_number)[0]

    def open_call(self, phone_number: Optional[str]) -> Tuple[Call, bool]:
        """Like start_call, also reporting whether a new call was created."""
        phone_number = (phone_number or "").strip()
        if not phone_number:
            raise ValidationError("phoneNumber is required")

        with self._lock:
            now = self.now_ms()
            existing = self.registry.find_recent_for_number(phone_number, now, START_REUSE_WINDOW_MS)
            if existing is not None:
                self.logger.info(f"Reusing call {existing.call_id} for {phone_number}")
                return existing, False

            call = Call(
                call_id=self.registry.next_call_id(now),
                phone_number=phone_number,
                status=RINGING,
                start_time=now,
            )
            self.registry.add(call)
            self.total_started += 1
            self.logger.info(f"Call {call.call_id} ringing", phone=phone_number)

            self.store.add_or_update(phone_number, RecordStatus.INITIATED, call_id=call.call_id)
            self._emit_status(call.call_id, phone_number, RINGING, "ring")
            return call, True

    def answer(self, call_id: str, update_only: bool = False) -> Call:
        with self._lock:
            call = self.registry.get(call_id)
            if call is None:
                raise CallNotFoundError(call_id)
            if call.status == ACTIVE:
                self.logger.info(f"Call {call_id} already active, ignoring repeated answer")
                return call
            if call.status != RINGING:
                raise CallStateError(f"Call {call_id} cannot be answered while {call.status}")

            call.status = ACTIVE
            call.answer_time = self.now_ms()
            self.logger.info(f"Call {call_id} answered", phone=call.phone_number)

            self._upsert_record(call.phone_number, RecordStatus.ANSWERED, update_only, call_id=call_id)
            self._emit_status(call_id, call.phone_number, ACTIVE, "answer")
            return call

    def hangup(self, call_id: str, update_only: bool = False) -> Dict[str, Any]:
        """End a call. Unknown call IDs still succeed so no client stays stuck in a call."""
        with self._lock:
            now = self.now_ms()
            call = self.registry.get(call_id)
            if call is not None:
                call.finish(now)
                self.registry.retire(call_id)
                self.logger.info(f"Call {call_id} ended after {call.duration}s", phone=call.phone_number)
                if update_only:
                    self.store.add_or_update(call.phone_number, RecordStatus.ENDED,
                                             duration=call.duration, update_only=True, call_id=call_id)
                else:
                    self.store.add_or_update(call.phone_number, RecordStatus.ENDED,
                                             duration=call.duration, call_id=call_id)
                self._emit_status(call_id, call.phone_number, ENDED, "hangup", call.duration)
                return {"callId": call_id, "phoneNumber": call.phone_number,
                        "duration": call.duration, "found": True}

            phone_number, duration = self._lookup_history(call_id)
            if phone_number is None:
                self.logger.warning(f"Hangup for unknown call {call_id}")
                return {"callId": call_id, "phoneNumber": None, "duration": None, "found": False}

            self.logger.info(f"Hangup for retired call {call_id}, replaying ended state",
                             phone=phone_number)
            self._upsert_record(phone_number, RecordStatus.ENDED, update_only,
                                duration=duration, call_id=call_id)
            self._emit_status(call_id, phone_number, ENDED, "hangup", duration)
            return {"callId": call_id, "phoneNumber": phone_number,
                    "duration": duration, "found": True}

    def _lookup_history(self, call_id: str):
        past = self.registry.find_in_history(call_id)
        if past is not None:
            return past.phone_number, past.duration
        record = self.store.find_by_call_id(call_id)
        if record is not None:
            return record.phone_number, record.duration
        return None, None

    def list_active(self) -> List[Call]:
        with self._lock:
            return list(self.registry.active())

    def get_call(self, call_id: str) -> Optional[Call]:
        with self._lock:
            return self.registry.get(call_id) or self.registry.find_in_history(call_id)

    def clear_history(self) -> None:
        """Drop every live call, the call history and the whole record log."""
        with self._lock:
            dropped = len(self.registry.active_calls)
            self.registry.clear()
            self.store.clear()
        self.logger.info(f"History cleared, dropped {dropped} live calls")

    def stats(self) -> dict:
        with self._lock:
            ended = [c for c in self.registry.call_history if c.duration is not None]
            avg_duration = sum(c.duration for c in ended) / len(ended) if ended else 0
            return {
                "active_calls": len(self.registry.active_calls),
                "total_calls": self.total_started,
                "ended_calls": len(ended),
                "avg_duration_seconds": round(avg_duration, 1),
            }
