#!/usr/bin/env python3
"""Demo client that walks through the Call service HTTP API."""
import sys
import time
from datetime import datetime, timedelta

from virtualphone.client import PhoneClient
from virtualphone.config import get_service_url

CALL_URL = get_service_url("call")


def demo_session(client: PhoneClient):
    """Dial, answer and hang up a call, then sync some phone history."""
    phone = "13800138000"

    print("\n" + "=" * 70)
    print("📞 VIRTUAL TELEPHONE DEMO")
    print("=" * 70)
    print(f"\nServer: {client.base_url}")
    print(f"Number: {phone}\n")

    call_id = client.start_call(phone)
    print(f"✓ Ringing (ID: {call_id})")
    time.sleep(1)

    client.answer(call_id)
    print("✓ Answered")
    time.sleep(2)

    client.hangup(call_id)
    print("✓ Hung up")

    # Local history as a phone would cache it
    now = datetime.now()
    history = [
        {"id": "local-1", "number": "13912345678", "date": (now - timedelta(hours=1)).isoformat(), "type": "incoming"},
        {"id": "local-2", "number": "13712345678", "date": (now - timedelta(minutes=5)).isoformat(), "type": "missed"},
    ]
    print(f"\n🔄 Syncing {len(history)} local records...")
    records = client.sync_records(history)
    if records is None:
        print("⚠️  Sync failed")
    else:
        print(f"✓ Server now holds {len(records)} records")

    print("\n" + "=" * 70)
    print("📋 MERGED CALL RECORDS")
    print("=" * 70)
    for record in client.get_merged_records():
        duration = f" ({record['duration']}s)" if record.get("duration") is not None else ""
        print(f"  {record['time']}  {record['phoneNumber']:<14} {record['status']}{duration}")

    print("\n" + "=" * 70)
    print("✅ Demo completed!")
    print("=" * 70)


if __name__ == "__main__":
    client = PhoneClient(sys.argv[1] if len(sys.argv) > 1 else CALL_URL)

    print("\nWaking up call service...")
    if not client.warmup():
        print("\n❌ Call service is not responding!")
        print("Please start it first: python3 -m services.call.service\n")
        sys.exit(1)
    print("✓ Call service is ready")

    demo_session(client)
