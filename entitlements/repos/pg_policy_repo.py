"""PostgreSQL implementations of PolicyRuleRepo and PaymentEventRepo."""

from __future__ import annotations

from sqlalchemy import and_, delete, or_, select
from sqlalchemy.dialects.postgresql import insert

from entitlements.db.engine import repo_session
from entitlements.db.tables import GroupingRow, PolicyRow, ProcessedPaymentEventRow
from entitlements.models.policy import GroupingRule, PolicyRule


class PgPolicyRuleRepo:
    async def load_all(self) -> tuple[list[PolicyRule], list[GroupingRule]]:
        async with repo_session() as session:
            policy_rows = (await session.execute(select(PolicyRow))).scalars().all()
            grouping_rows = (await session.execute(select(GroupingRow))).scalars().all()
        return (
            [PolicyRule(r.subject, r.object, r.action) for r in policy_rows],
            [GroupingRule(r.user_id, r.role) for r in grouping_rows],
        )

    async def add_policy(self, rule: PolicyRule) -> bool:
        stmt = (
            insert(PolicyRow)
            .values(subject=rule.subject, object=rule.object, action=rule.action)
            .on_conflict_do_nothing(index_elements=["subject", "object", "action"])
        )
        async with repo_session() as session:
            result = await session.execute(stmt)
        return result.rowcount > 0

    async def remove_policies(self, rules: list[PolicyRule]) -> int:
        if not rules:
            return 0
        stmt = delete(PolicyRow).where(
            or_(
                *(
                    and_(
                        PolicyRow.subject == r.subject,
                        PolicyRow.object == r.object,
                        PolicyRow.action == r.action,
                    )
                    for r in rules
                )
            )
        )
        async with repo_session() as session:
            result = await session.execute(stmt)
        return result.rowcount

    async def add_grouping(self, rule: GroupingRule) -> bool:
        stmt = (
            insert(GroupingRow)
            .values(user_id=rule.user, role=rule.role)
            .on_conflict_do_nothing(index_elements=["user_id", "role"])
        )
        async with repo_session() as session:
            result = await session.execute(stmt)
        return result.rowcount > 0

    async def remove_groupings(self, rules: list[GroupingRule]) -> int:
        if not rules:
            return 0
        stmt = delete(GroupingRow).where(
            or_(
                *(
                    and_(GroupingRow.user_id == r.user, GroupingRow.role == r.role)
                    for r in rules
                )
            )
        )
        async with repo_session() as session:
            result = await session.execute(stmt)
        return result.rowcount


class PgPaymentEventRepo:
    async def mark_processed(self, event_id: str, event_type: str) -> bool:
        stmt = (
            insert(ProcessedPaymentEventRow)
            .values(event_id=event_id, event_type=event_type)
            .on_conflict_do_nothing(index_elements=["event_id"])
        )
        async with repo_session() as session:
            result = await session.execute(stmt)
        return result.rowcount > 0

    async def release(self, event_id: str) -> None:
        async with repo_session() as session:
            await session.execute(
                delete(ProcessedPaymentEventRow).where(
                    ProcessedPaymentEventRow.event_id == event_id
                )
            )
