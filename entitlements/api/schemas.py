"""Response models shared by more than one router."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel

from entitlements.models.batch import SubscriptionBatch
from entitlements.models.bulk import BulkReport
from entitlements.models.subscription import UserSubscription


class SubscriptionOut(BaseModel):
    id: str
    user_id: str
    plan_id: str
    status: str
    source: str  # personal|assigned
    batch_id: str | None
    assignor: str | None
    current_period_start: datetime | None
    current_period_end: datetime | None
    cancel_at_period_end: bool
    cancelled_at: datetime | None
    created_at: datetime


class BatchOut(BaseModel):
    id: str
    purchaser_user_id: str
    plan_id: str
    status: str
    total_quantity: int
    assigned_quantity: int
    available_quantity: int
    group_id: str | None
    current_period_end: datetime | None
    created_at: datetime


class BulkRowOut(BaseModel):
    key: str
    status: str
    code: str | None = None
    message: str = ""


class BulkReportOut(BaseModel):
    succeeded: int
    failed: int
    rows: list[BulkRowOut]
    warnings: list[str]


def subscription_out(sub: UserSubscription) -> SubscriptionOut:
    return SubscriptionOut(
        id=str(sub.id),
        user_id=sub.user_id,
        plan_id=str(sub.plan_id),
        status=sub.status,
        source=sub.source.kind,
        batch_id=str(sub.batch_id) if sub.batch_id else None,
        assignor=sub.assignor,
        current_period_start=sub.current_period_start,
        current_period_end=sub.current_period_end,
        cancel_at_period_end=sub.cancel_at_period_end,
        cancelled_at=sub.cancelled_at,
        created_at=sub.created_at,
    )


def batch_out(batch: SubscriptionBatch) -> BatchOut:
    return BatchOut(
        id=str(batch.id),
        purchaser_user_id=batch.purchaser_user_id,
        plan_id=str(batch.plan_id),
        status=batch.status,
        total_quantity=batch.total_quantity,
        assigned_quantity=batch.assigned_quantity,
        available_quantity=batch.available_quantity,
        group_id=str(batch.group_id) if batch.group_id else None,
        current_period_end=batch.current_period_end,
        created_at=batch.created_at,
    )


def bulk_out(report: BulkReport) -> BulkReportOut:
    return BulkReportOut(
        succeeded=report.succeeded,
        failed=report.failed,
        rows=[
            BulkRowOut(key=r.key, status=r.status, code=r.code, message=r.message)
            for r in report.rows
        ],
        warnings=list(report.warnings),
    )
