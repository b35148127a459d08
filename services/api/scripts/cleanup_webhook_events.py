#!/usr/bin/env python3
"""Prune webhook_events older than the retention window.

The idempotency guarantee only needs to outlive platform retry schedules
(hours to days), so old audit rows can be dropped.

Usage:
  cd services/api
  python -m scripts.cleanup_webhook_events            # delete
  python -m scripts.cleanup_webhook_events --dry-run  # count only

Optional env vars:
  WEBHOOK_RETENTION_DAYS=90
"""

import asyncio
from datetime import datetime, timedelta, timezone
import os
import sys

# Ensure imports work when executed as a script/module
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from commerce_engine.services.webhooks import prune_events  # noqa: E402
from commerce_engine.settings import get_settings  # noqa: E402
from commerce_engine.stores.postgres import close_db, get_session, init_db, ping_db  # noqa: E402


async def main() -> None:
    dry_run = "--dry-run" in sys.argv[1:]
    retention_days = get_settings().webhook_retention_days
    cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)

    await init_db()
    await ping_db()
    try:
        async with get_session() as session:
            count = await prune_events(session, older_than=cutoff, dry_run=dry_run)
        print(
            {
                "ok": True,
                "dry_run": dry_run,
                "retention_days": retention_days,
                "cutoff": cutoff.isoformat(),
                "deleted" if not dry_run else "would_delete": count,
            }
        )
    finally:
        await close_db()


if __name__ == "__main__":
    asyncio.run(main())
