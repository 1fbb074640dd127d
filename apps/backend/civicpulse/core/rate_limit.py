"""
rate_limit.py — Global rate limiter instance.

Uses slowapi (a Starlette-compatible wrapper around the `limits` library).
Requests are keyed by client IP address. Only the ingestion endpoint opts
in; read endpoints are served from memory.

Usage in routes:
    @router.post("")
    @limiter.limit(settings.ingest_rate_limit)
    async def ingest(request: Request, payload: Observation):
        ...
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address)
