"""Prometheus scrape endpoint.

Besides the request metrics, a scrape reports the depth of the
background queues, read from the task queue at scrape time.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from entitlements.api.dependencies import CoreDep
from entitlements.core.metrics import QUEUE_DEPTH
from entitlements.services.task_queue import SUBSCRIPTION_RECONCILIATION, TERMINAL_PROVISIONING

logger = logging.getLogger(__name__)

router = APIRouter(tags=["observability"])


@router.get("/metrics", include_in_schema=False)
async def metrics(core: CoreDep) -> Response:
    for queue in (TERMINAL_PROVISIONING, SUBSCRIPTION_RECONCILIATION):
        try:
            QUEUE_DEPTH.labels(queue_name=queue).set(await core.tasks.queue_length(queue))
        except Exception:
            logger.warning("Queue depth unavailable: queue=%s", queue, exc_info=True)
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
