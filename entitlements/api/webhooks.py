"""Payment-provider webhook endpoint.

The provider calls this without a bearer token.  Every outcome the
consumer reports (processed, duplicate, ignored, unmatched) is a 200,
so the provider stops redelivering; only a handler failure answers 5xx
and earns a retry.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, Request

from entitlements.api.dependencies import CoreDep
from entitlements.core.errors import ValidationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/payments")
async def payment_event(request: Request, core: CoreDep) -> dict[str, Any]:
    try:
        event = json.loads(await request.body())
    except ValueError:
        raise ValidationError("webhook body must be JSON") from None
    if not isinstance(event, dict):
        raise ValidationError("webhook body must be a JSON object")
    outcome = await core.webhooks.handle(event)
    return {"received": True, "outcome": outcome}
