"""Data stores for persistence and rate limiting.

Stores handle:
- PostgreSQL: engine, session lifecycle, schema bootstrap
- Redis: fixed-window counters for click rate limits

No integration or attribution logic in stores - that belongs in services.
"""
