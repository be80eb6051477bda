from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Union
import math

from virtualphone.services.records import (
    MAX_TIMESTAMP_MS,
    Record,
    RecordStatus,
    RecordStore,
    new_record_id,
)
from virtualphone.utils.logger import ServiceLogger

# Two records for one number this close together describe the same call
SAME_CALL_WINDOW_MS = 60 * 1000

CALL_TYPE_STATUS = {
    "outgoing": RecordStatus.DIALED,
    "incoming": RecordStatus.RECEIVED,
    "missed": RecordStatus.MISSED,
}


def parse_client_timestamp(value: Union[str, int, float, None]) -> Optional[int]:
    """Epoch millis from a client date: numbers, numeric strings or ISO-8601.

    Numbers below 1e11 are taken as epoch seconds. Returns None if the value
    is unparseable or lies outside 1970 through 9999.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            number = float(value)
        except OverflowError:
            return None
    else:
        text = str(value).strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            try:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
                millis = parsed.timestamp() * 1000
            except (ValueError, OverflowError, OSError):
                return None
            return int(millis) if 0 <= millis <= MAX_TIMESTAMP_MS else None
    if not math.isfinite(number):
        return None
    if abs(number) < 1e11:
        number *= 1000
    if not 0 <= number <= MAX_TIMESTAMP_MS:
        return None
    return int(number)


@dataclass
class ClientRecord:
    """A call-history row as cached on a phone."""
    phone_number: str
    timestamp: Optional[int]
    call_type: str
    duration: Optional[int] = None
    id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClientRecord":
        phone = data.get("phoneNumber") or data.get("number") or ""
        raw_date = data.get("timestamp") if data.get("timestamp") is not None else data.get("date")
        duration = data.get("duration")
        try:
            duration = int(duration) if duration is not None else None
        except (TypeError, ValueError):
            duration = None
        client_id = data.get("id")
        return cls(
            phone_number=str(phone).strip(),
            timestamp=parse_client_timestamp(raw_date),
            call_type=str(data.get("type") or "outgoing").lower(),
            duration=duration,
            id=str(client_id) if client_id not in (None, "") else None,
        )

    @property
    def status(self) -> RecordStatus:
        return CALL_TYPE_STATUS.get(self.call_type, RecordStatus.DIALED)


class SyncReconciler:
    """Merges client-submitted call history into the record store."""

    def __init__(self, store: RecordStore, logger: Optional[ServiceLogger] = None) -> None:
        self.store = store
        self.logger = logger or ServiceLogger("sync", log_dir=None)

    def _to_record(self, client: ClientRecord, now: int) -> Record:
        timestamp = client.timestamp
        if timestamp is None:
            self.logger.warning(f"Unparseable date for {client.phone_number}, using server time")
            timestamp = now
        return Record(
            id=client.id or new_record_id(timestamp),
            phone_number=client.phone_number,
            timestamp=timestamp,
            status=client.status,
            duration=client.duration,
        )

    @staticmethod
    def _is_known(candidate: Record, existing: List[Record]) -> bool:
        for record in existing:
            if record.id == candidate.id:
                return True
        for record in existing:
            if (record.phone_number == candidate.phone_number
                    and abs(record.timestamp - candidate.timestamp) <= SAME_CALL_WINDOW_MS):
                return True
        return False

    def reconcile(self, client_records: Iterable[Union[ClientRecord, Dict[str, Any]]]) -> List[Record]:
        """Merge a batch and return the full, deduplicated record set."""
        batch = [c if isinstance(c, ClientRecord) else ClientRecord.from_dict(c)
                 for c in client_records]
        now = self.store.now_ms()
        added = 0

        with self.store.mutate() as records:
            for client in batch:
                if not client.phone_number:
                    continue
                candidate = self._to_record(client, now)
                if self._is_known(candidate, records):
                    continue
                records.insert(0, candidate)
                added += 1
            total = len(records)

        self.logger.info(f"Reconciled {len(batch)} client records, {added} new", total=total)
        # Sent even when nothing was added so a stale client still re-pulls
        if self.store.broadcaster is not None:
            self.store.broadcaster.publish("records_updated", {
                "count": self.store.count(),
                "added": added,
                "timestamp": self.store.now_ms(),
            })
        return self.reconciled_view()

    def reconciled_view(self) -> List[Record]:
        """Every stored record once, keyed by id and by (phoneNumber, timestamp)."""
        seen_ids = set()
        seen_keys = set()
        result = []
        for record in self.store.get_all():
            key = (record.phone_number, record.timestamp)
            if record.id in seen_ids or key in seen_keys:
                continue
            seen_ids.add(record.id)
            seen_keys.add(key)
            result.append(record)
        return result
