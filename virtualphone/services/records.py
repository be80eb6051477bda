from __future__ import annotations
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional
import json
import os
import secrets
import tempfile
import threading
import time

from virtualphone.services.broadcast import Broadcaster
from virtualphone.services.errors import PersistenceError
from virtualphone.utils.logger import ServiceLogger

MAX_RECORDS = 1000
UPDATE_WINDOW_MS = 2 * 60 * 1000
DUPLICATE_WINDOW_MS = 30 * 1000
# 9999-12-31T23:59:59.999Z
MAX_TIMESTAMP_MS = 253402300799999


class RecordStatus(str, Enum):
    # Call-control outcomes
    INITIATED = "已发起"
    ANSWERED = "已接通"
    ENDED = "已挂断"
    # Outcomes reported by client sync
    DIALED = "已拨打"
    RECEIVED = "已接听"
    MISSED = "未接听"


_COMPATIBLE = {
    RecordStatus.INITIATED: {RecordStatus.INITIATED, RecordStatus.ANSWERED},
    RecordStatus.ANSWERED: {RecordStatus.INITIATED, RecordStatus.ANSWERED},
}


def statuses_compatible(a: RecordStatus, b: RecordStatus) -> bool:
    """Same status, or both describe a call still in progress."""
    return b in _COMPATIBLE.get(a, {a})


def new_record_id(timestamp_ms: int) -> str:
    return f"{timestamp_ms}_{secrets.token_hex(4)}"


@dataclass
class Record:
    id: str
    phone_number: str
    timestamp: int  # epoch millis
    status: RecordStatus
    duration: Optional[int] = None  # seconds
    call_id: Optional[str] = None

    @property
    def display_time(self) -> str:
        try:
            return datetime.fromtimestamp(self.timestamp / 1000).strftime("%Y-%m-%d %H:%M:%S")
        except (ValueError, OverflowError, OSError):
            return ""

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "phoneNumber": self.phone_number,
            "timestamp": self.timestamp,
            "time": self.display_time,
            "status": self.status.value,
        }
        if self.duration is not None:
            data["duration"] = self.duration
        if self.call_id is not None:
            data["callId"] = self.call_id
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Record":
        """Build a record from its JSON form. Raises KeyError/ValueError on bad input."""
        duration = data.get("duration")
        return cls(
            id=str(data["id"]),
            phone_number=str(data["phoneNumber"]),
            timestamp=int(data["timestamp"]),
            status=RecordStatus(data["status"]),
            duration=int(duration) if duration is not None else None,
            call_id=data.get("callId"),
        )


class RecordStore:
    """File-backed call-record log, newest first.

    Every mutation rewrites the whole JSON file. Persistence is best effort:
    a failed write is retried once in the system temp directory on a background
    thread and otherwise only logged.
    """

    def __init__(
        self,
        path: str,
        broadcaster: Optional[Broadcaster] = None,
        logger: Optional[ServiceLogger] = None,
        clock: Callable[[], float] = time.time,
        max_records: int = MAX_RECORDS,
    ) -> None:
        self.path = Path(path)
        self.broadcaster = broadcaster
        self.logger = logger or ServiceLogger("records", log_dir=None)
        self.max_records = max_records
        self.last_persist_path: Optional[Path] = None
        self._fallback_pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="records-fallback")
        self._pending: Optional[Future] = None
        self._clock = clock
        self._lock = threading.RLock()
        self._records: List[Record] = []
        self._load()

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    # -- persistence -----------------------------------------------------

    def _load(self) -> None:
        if not self.path.exists():
            self.logger.info(f"No record file at {self.path}, starting empty")
            return
        try:
            raw = json.loads(self.path.read_text("utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            self.logger.warning(f"Could not read record file {self.path}: {e}")
            return
        if not isinstance(raw, list):
            self.logger.warning(f"Record file {self.path} does not hold a JSON array")
            return

        for item in raw:
            try:
                self._records.append(Record.from_dict(item))
            except (KeyError, ValueError, TypeError) as e:
                self.logger.warning(f"Skipping malformed record: {e}", record=item)
        self._normalize()
        self.logger.info(f"Loaded {len(self._records)} call records from {self.path}")

    @staticmethod
    def _write(path: Path, payload: List[Dict[str, Any]]) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_name(path.name + ".tmp")
            tmp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), "utf-8")
            os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(f"Failed to write {path}: {e}") from e

    def _snapshot(self) -> List[Dict[str, Any]]:
        with self._lock:
            try:
                return [r.to_dict() for r in self._records]
            except (AttributeError, TypeError, ValueError, OverflowError) as e:
                raise PersistenceError(f"Failed to serialize call records: {e}") from e

    def persist(self) -> bool:
        """Write the log to disk. Never raises.

        Returns True when the primary file was written. On a write failure a
        retry into the system temp directory is queued in the background and
        False is returned; see flush().
        """
        try:
            payload = self._snapshot()
        except PersistenceError as e:
            self.logger.error(str(e))
            return False

        try:
            self._write(self.path, payload)
            self.last_persist_path = self.path
            return True
        except PersistenceError as e:
            self.logger.error(str(e))

        fallback = Path(tempfile.gettempdir()) / self.path.name
        if fallback != self.path:
            self._pending = self._fallback_pool.submit(self._write_fallback, fallback, payload)
        return False

    def _write_fallback(self, fallback: Path, payload: List[Dict[str, Any]]) -> bool:
        try:
            self._write(fallback, payload)
        except PersistenceError as e:
            self.logger.error(f"Fallback write failed: {e}")
            return False
        self.last_persist_path = fallback
        self.logger.warning(f"Record log written to fallback location {fallback}")
        return True

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait for a queued fallback write. True if nothing is pending or it succeeded."""
        pending = self._pending
        if pending is None:
            return True
        return pending.result(timeout=timeout)

    # -- internal helpers ------------------------------------------------

    def _normalize(self) -> None:
        self._records.sort(key=lambda r: r.timestamp, reverse=True)
        if len(self._records) > self.max_records:
            evicted = len(self._records) - self.max_records
            del self._records[self.max_records:]
            self.logger.info(f"Evicted {evicted} oldest records")

    def _most_recent_for(self, phone_number: str, now: int, window_ms: int) -> Optional[Record]:
        for record in self._records:
            if record.phone_number == phone_number and now - record.timestamp <= window_ms:
                return record
        return None

    def _collapse_around(self, kept: Record) -> None:
        """Drop rows for the same number and a compatible status within the duplicate window."""
        doomed = [
            r for r in self._records
            if r is not kept
            and r.phone_number == kept.phone_number
            and abs(kept.timestamp - r.timestamp) <= DUPLICATE_WINDOW_MS
            and statuses_compatible(kept.status, r.status)
        ]
        for r in doomed:
            self._records.remove(r)
            self.logger.info(f"Collapsed record {r.id} into {kept.id}")

    def _merged_view(self) -> List[Record]:
        seen = set()
        merged = []
        for record in self._records:
            if not record.phone_number or record.phone_number in seen:
                continue
            seen.add(record.phone_number)
            merged.append(record)
        return merged

    def _publish(self, event: str, payload: Dict[str, Any]) -> None:
        if self.broadcaster is not None:
            self.broadcaster.publish(event, payload)

    def _announce(self, record: Record) -> None:
        self._publish("call_record_update", record.to_dict())
        self._publish("merged_records_updated", self.merged_payload())

    # -- operations ------------------------------------------------------

    def add_or_update(
        self,
        phone_number: str,
        status: RecordStatus,
        duration: Optional[int] = None,
        update_only: bool = False,
        call_id: Optional[str] = None,
    ) -> Optional[Record]:
        """Update the recent record for a number or append a new one.

        Returns None when nothing changed: update-only with no recent record,
        or a duplicate inside the 30 second guard.
        """
        with self._lock:
            now = self.now_ms()
            recent = self._most_recent_for(phone_number, now, UPDATE_WINDOW_MS)

            if recent is not None and (update_only or status == RecordStatus.ENDED):
                recent.status = status
                recent.timestamp = now
                recent.duration = duration
                if call_id is not None:
                    recent.call_id = call_id
                record = recent
                self._collapse_around(record)
                self.logger.info(f"Updated record {record.id} to {status.value}", phone=phone_number)
            elif update_only:
                self.logger.debug(f"No recent record to update for {phone_number}")
                return None
            else:
                for existing in self._records:
                    if now - existing.timestamp > DUPLICATE_WINDOW_MS:
                        break
                    if (existing.phone_number == phone_number
                            and statuses_compatible(status, existing.status)):
                        self.logger.info(
                            f"Suppressed duplicate {status.value} record for {phone_number}",
                            existing=existing.id,
                        )
                        return None
                record = Record(
                    id=new_record_id(now),
                    phone_number=phone_number,
                    timestamp=now,
                    status=status,
                    duration=duration,
                    call_id=call_id,
                )
                self._records.insert(0, record)
                self.logger.info(f"Added record {record.id} ({status.value})", phone=phone_number)

            self._normalize()
            self.persist()
            self._announce(record)
            return record

    def get_all(self) -> List[Record]:
        with self._lock:
            return list(self._records)

    def get_merged(self) -> List[Record]:
        with self._lock:
            return self._merged_view()

    def merged_payload(self) -> Dict[str, Any]:
        return {
            "records": [r.to_dict() for r in self.get_merged()],
            "syncTime": self.now_ms(),
        }

    def find_by_call_id(self, call_id: str) -> Optional[Record]:
        with self._lock:
            for record in self._records:
                if record.call_id == call_id:
                    return record
        return None

    def count(self) -> int:
        with self._lock:
            return len(self._records)

    def clear(self) -> None:
        with self._lock:
            removed = len(self._records)
            self._records.clear()
            self.persist()
        self.logger.info(f"Cleared {removed} call records")
        self._publish("records_cleared", {"timestamp": self.now_ms()})

    @contextmanager
    def mutate(self) -> Iterator[List[Record]]:
        """Exclusive access to the live record list for batch changes.

        On exit the list is re-sorted and capped, and persisted if it changed.
        """
        with self._lock:
            before = [(r.id, r.timestamp, r.status) for r in self._records]
            yield self._records
            self._normalize()
            after = [(r.id, r.timestamp, r.status) for r in self._records]
            if after != before:
                self.persist()
