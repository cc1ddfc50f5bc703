"""Prometheus scrape endpoint.

Returns every metric declared in progression/core/metrics.py in the
text exposition format.  Restrict it to the scraper's network in
production; ledger rates reveal platform activity.
"""

from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

router = APIRouter(tags=["observability"])


@router.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
