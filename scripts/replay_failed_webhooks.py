"""Replay Polar webhook events that were recorded but never processed.

Usage: python -m scripts.replay_failed_webhooks [--limit N]
"""

import argparse
import asyncio

from app.core.config import get_settings
from app.core.logging import configure_structlog
from app.db import Database, SqlDocumentStore
from app.services.reconciliation_service import EntityReconciler
from app.services.webhook_ledger import IdempotencyLedger
from app.services.webhook_service import WebhookDispatcher


async def main(limit: int) -> None:
    settings = get_settings()
    configure_structlog(log_level="INFO", json_logs=not settings.debug)

    database = Database(settings.database_url, echo=False)
    store = SqlDocumentStore(database)
    dispatcher = WebhookDispatcher(
        ledger=IdempotencyLedger(store, claim_ttl_seconds=settings.polar_webhook_claim_ttl_seconds),
        reconciler=EntityReconciler(store),
        secret=settings.polar_webhook_secret,
        tolerance_seconds=settings.polar_webhook_tolerance_seconds,
    )

    try:
        results = await dispatcher.replay_pending(limit=limit)
    finally:
        await database.dispose()

    print(f"Replayed {len(results)} event(s):")
    for result in results:
        status = result.get("code")
        detail = result.get("error") or ""
        print(f"  {result['event_id']} | {status} {detail}".rstrip())

    failed = [r for r in results if not r["ok"]]
    print(f"\n{len(results) - len(failed)} ok, {len(failed)} failed")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--limit", type=int, default=50, help="maximum events to replay")
    args = parser.parse_args()
    asyncio.run(main(args.limit))
