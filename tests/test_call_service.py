"""Tests for the call lifecycle service."""
import pytest

from virtualphone.services.call import ACTIVE, RINGING, CallRegistry, CallService
from virtualphone.services.errors import CallNotFoundError, CallStateError, ValidationError
from virtualphone.services.records import RecordStatus

ORDER = {"ringing": 0, "active": 1, "ended": 2}


def call_events(events, call_id=None):
    return [p for name, p in events
            if name == "call_status" and (call_id is None or p["callId"] == call_id)]


def test_start_call_registers_ringing_call(call_svc, store, events):
    call = call_svc.start_call("13800138000")

    assert call.status == RINGING
    assert [c.call_id for c in call_svc.list_active()] == [call.call_id]

    records = store.get_all()
    assert len(records) == 1
    assert records[0].status == RecordStatus.INITIATED
    assert records[0].call_id == call.call_id

    ringing = call_events(events)
    assert len(ringing) == 1
    assert ringing[0]["status"] == "ringing"
    assert ringing[0]["command"] == "ring"
    assert ringing[0]["phoneNumber"] == "13800138000"


@pytest.mark.parametrize("number", ["", "   ", None])
def test_start_call_requires_number(call_svc, number):
    with pytest.raises(ValidationError):
        call_svc.start_call(number)


def test_repeat_start_within_window_reuses_call(call_svc, clock, events):
    """Two starts two seconds apart yield one call."""
    first = call_svc.start_call("13912345678")
    clock.advance(2)
    second = call_svc.start_call("13912345678")

    assert second.call_id == first.call_id
    assert len(call_svc.list_active()) == 1
    assert len(call_events(events)) == 1


def test_open_call_reports_whether_call_is_new(call_svc, clock):
    first, created = call_svc.open_call("13912345678")
    clock.advance(1)
    again, created_again = call_svc.open_call("13912345678")

    assert created is True
    assert created_again is False
    assert again is first
    assert call_svc.stats()["total_calls"] == 1


def test_start_after_reuse_window_creates_new_call(call_svc, clock):
    first = call_svc.start_call("13912345678")
    clock.advance(6)
    second = call_svc.start_call("13912345678")

    assert second.call_id != first.call_id
    assert len(call_svc.list_active()) == 2


def test_call_ids_strictly_increase_within_same_millisecond(call_svc):
    ids = [int(call_svc.start_call(f"1380000000{i}").call_id) for i in range(5)]
    assert ids == sorted(ids)
    assert len(set(ids)) == 5


def test_full_lifecycle_collapses_to_one_record(call_svc, store, clock, events):
    """Start, answer and a hangup 30 seconds later leave one ended row."""
    call = call_svc.start_call("13800138000")
    clock.advance(1)

    answered = call_svc.answer(call.call_id)
    assert answered.status == ACTIVE
    assert answered.answer_time == store.now_ms()
    assert [r.status for r in store.get_all()] == [RecordStatus.ANSWERED]

    clock.advance(30)
    result = call_svc.hangup(call.call_id)

    assert result["found"] is True
    assert call_svc.list_active() == []
    records = store.get_all()
    assert len(records) == 1
    assert records[0].status == RecordStatus.ENDED
    assert records[0].duration == 30

    statuses = [p["status"] for p in call_events(events, call.call_id)]
    assert statuses == ["ringing", "active", "ended"]
    hangup_event = call_events(events, call.call_id)[-1]
    assert hangup_event["command"] == "hangup"
    assert hangup_event["duration"] == 30


def test_hangup_without_answer_measures_from_start(call_svc, store, clock):
    call = call_svc.start_call("13800138000")
    clock.advance(12)

    call_svc.hangup(call.call_id)

    assert store.get_all()[0].duration == 12
    assert call_svc.get_call(call.call_id).duration == 12


def test_answer_unknown_call(call_svc):
    with pytest.raises(CallNotFoundError):
        call_svc.answer("404")


def test_repeat_answer_is_ignored(call_svc, store, clock, events):
    call = call_svc.start_call("13800138000")
    call_svc.answer(call.call_id)
    clock.advance(10)

    again = call_svc.answer(call.call_id)

    assert again.status == ACTIVE
    assert [p["status"] for p in call_events(events)] == ["ringing", "active"]
    assert store.count() == 1


def test_answer_requires_ringing(call_svc):
    call = call_svc.start_call("13800138000")
    call.status = "ended"

    with pytest.raises(CallStateError):
        call_svc.answer(call.call_id)


def test_answer_update_only_without_record_adds_nothing(call_svc, store, clock):
    call = call_svc.start_call("13800138000")
    store.clear()

    call_svc.answer(call.call_id, update_only=True)

    assert store.count() == 0


def test_answer_appends_when_no_recent_record(call_svc, store):
    call = call_svc.start_call("13800138000")
    store.clear()

    call_svc.answer(call.call_id)

    assert [r.status for r in store.get_all()] == [RecordStatus.ANSWERED]


def test_hangup_of_retired_call_replays_ended(call_svc, store, clock, events):
    """A callId only known from history still yields an ended record and event."""
    call = call_svc.start_call("13800138000")
    clock.advance(20)
    call_svc.hangup(call.call_id)
    clock.advance(4)

    result = call_svc.hangup(call.call_id)

    assert result == {"callId": call.call_id, "phoneNumber": "13800138000",
                      "duration": 20, "found": True}
    records = store.get_all()
    assert len(records) == 1
    assert records[0].status == RecordStatus.ENDED
    ended = [p for p in call_events(events, call.call_id) if p["status"] == "ended"]
    assert len(ended) == 2
    assert all(p["command"] == "hangup" for p in ended)


def test_hangup_falls_back_to_record_log(store, broadcaster, clock, events):
    """After a restart only the record log knows the call."""
    store.add_or_update("13800138000", RecordStatus.INITIATED, call_id="1699999999000")
    fresh = CallService(store, broadcaster, registry=CallRegistry(), clock=clock)
    clock.advance(40)

    result = fresh.hangup("1699999999000")

    assert result["found"] is True
    assert result["phoneNumber"] == "13800138000"
    assert [r.status for r in store.get_all()] == [RecordStatus.ENDED]
    assert call_events(events)[-1]["command"] == "hangup"


def test_hangup_of_unknown_call_succeeds_quietly(call_svc, store, events):
    result = call_svc.hangup("nope")

    assert result["found"] is False
    assert store.count() == 0
    assert call_events(events) == []


def test_quick_duplicate_hangup_event_is_suppressed(call_svc, clock, events):
    call = call_svc.start_call("13800138000")
    call_svc.hangup(call.call_id)
    clock.advance(1)
    call_svc.hangup(call.call_id)

    ended = [p for p in call_events(events) if p["status"] == "ended"]
    assert len(ended) == 1


def test_lifecycle_events_never_go_backwards(call_svc, clock, events):
    """Interleaved traffic keeps every call's status sequence monotonic."""
    calls = [call_svc.start_call(f"1370000000{i}") for i in range(4)]
    clock.advance(1)
    call_svc.answer(calls[0].call_id)
    call_svc.answer(calls[2].call_id)
    clock.advance(4)
    for call in calls:
        call_svc.hangup(call.call_id)
    clock.advance(4)
    call_svc.hangup(calls[1].call_id)
    with pytest.raises(CallNotFoundError):
        call_svc.answer(calls[3].call_id)

    for call in calls:
        seq = [ORDER[p["status"]] for p in call_events(events, call.call_id)]
        assert seq[0] == 0
        assert all(a <= b for a, b in zip(seq, seq[1:]))


def test_clear_history_drops_calls_and_records(call_svc, store, events):
    call_svc.start_call("13800138000")
    call_svc.start_call("13900139000")

    call_svc.clear_history()

    assert call_svc.list_active() == []
    assert store.count() == 0
    assert events[-1][0] == "records_cleared"


def test_stats(call_svc, clock):
    call = call_svc.start_call("13800138000")
    call_svc.start_call("13900139000")
    clock.advance(10)
    call_svc.hangup(call.call_id)

    stats = call_svc.stats()

    assert stats["active_calls"] == 1
    assert stats["total_calls"] == 2
    assert stats["ended_calls"] == 1
    assert stats["avg_duration_seconds"] == 10.0
