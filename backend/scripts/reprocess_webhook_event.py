"""
Reprocess a webhook event (manual retry with a fresh attempt budget).

Usage (from backend/):
  python -m scripts.reprocess_webhook_event --event-id <event_id>
  python -m scripts.reprocess_webhook_event --email buyer@example.com   # latest failed event for the email
"""
import asyncio
import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from database import database
from models import EventStatus


async def run(event_id: str = None, email: str = None) -> bool:
    from services.errors import EventNotReprocessableError
    from services.reconciliation_pipeline import ReconciliationPipeline, reprocess_event

    store = database.get_store()
    if not event_id and email:
        events = await store.list_events(
            {"email": email.strip().lower(), "status": EventStatus.ERROR.value}, limit=1
        )
        if not events:
            print(f"No failed webhook event found for email={email}")
            return False
        event_id = events[0]["event_id"]
        print(f"Using event_id={event_id} (attempts={events[0].get('attempts')})")
    if not event_id:
        print("Provide --event-id or --email")
        return False

    pipeline = ReconciliationPipeline(store)
    try:
        outcome = await reprocess_event(pipeline, event_id, actor_id="cli")
    except EventNotReprocessableError as e:
        print(str(e))
        return False
    if outcome is None:
        print(f"Webhook event {event_id} not found")
        return False
    print(f"Event {event_id} status after run: {outcome.get('status')}")
    if outcome.get("error"):
        print(f"Error: {outcome['error']}")
    return outcome.get("status") == EventStatus.PROCESSED.value


def main():
    parser = argparse.ArgumentParser(description="Reprocess a webhook event")
    parser.add_argument("--event-id", help="Webhook event ID")
    parser.add_argument("--email", help="Buyer email (use latest failed event for this email)")
    args = parser.parse_args()

    async def _():
        await database.connect()
        try:
            return await run(event_id=args.event_id, email=args.email)
        finally:
            await database.close()

    ok = asyncio.run(_())
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
