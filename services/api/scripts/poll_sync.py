#!/usr/bin/env python3
"""Periodic catalog poll for every connected merchant/platform pair.

Webhooks are the primary sync path; this job catches anything a platform
failed to deliver. Each pair runs in its own transaction, so one merchant's
auth or rate-limit failure does not roll back the others.

Run (local / Railway cron):
  cd services/api
  python -m scripts.poll_sync

Optional env vars:
  POLL_PLATFORMS="salla,zid"
  POLL_MAX_PAGES=200
"""

import asyncio
import logging
import os
import sys

# Ensure imports work when executed as a script/module
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from commerce_engine.services.credentials import list_connected  # noqa: E402
from commerce_engine.services.errors import IntegrationError  # noqa: E402
from commerce_engine.services.platforms import Platform, parse_platform  # noqa: E402
from commerce_engine.services.sync import sync_merchant  # noqa: E402
from commerce_engine.stores.postgres import close_db, get_session, init_db, ping_db  # noqa: E402

logger = logging.getLogger("uvicorn.error")


def _parse_csv_env(name: str, default: list[str]) -> list[str]:
    raw = os.getenv(name, "")
    if not raw.strip():
        return default
    return [p.strip() for p in raw.split(",") if p.strip()]


async def run_poll_sync(platforms: list[Platform], *, max_pages: int = 200) -> dict:
    totals = {"pairs": 0, "ok": 0, "failed": 0, "created": 0, "updated": 0, "skipped": 0, "errors": 0}
    failures: list[dict] = []

    async with get_session() as session:
        pairs = [(c.merchant_id, c.platform) for p in platforms for c in await list_connected(session, p)]

    for merchant_id, platform in pairs:
        totals["pairs"] += 1
        try:
            async with get_session() as session:
                stats = await sync_merchant(session, merchant_id, platform, max_pages=max_pages)
        except IntegrationError as e:
            totals["failed"] += 1
            failures.append({"merchant_id": merchant_id, "platform": platform.value, "error": type(e).__name__})
            logger.warning(f"Poll sync {platform.value} merchant={merchant_id} failed: {e}")
            continue
        totals["ok"] += 1
        totals["created"] += stats.created
        totals["updated"] += stats.updated
        totals["skipped"] += stats.skipped
        totals["errors"] += stats.errors

    return {"totals": totals, "failures": failures}


async def main() -> None:
    logging.basicConfig(level=logging.INFO)
    await init_db()
    await ping_db()

    try:
        platforms = [parse_platform(p) for p in _parse_csv_env("POLL_PLATFORMS", ["salla", "zid"])]
        max_pages = int(os.getenv("POLL_MAX_PAGES", "200"))
        result = await run_poll_sync(platforms, max_pages=max_pages)
        print({"ok": True, "platforms": [p.value for p in platforms], **result})
    finally:
        await close_db()


if __name__ == "__main__":
    asyncio.run(main())
