"""Usage Meter: caps come from the primary plan, then organization plans."""

from __future__ import annotations

import asyncio

import pytest

from entitlements.core.errors import LimitReachedError, ValidationError
from entitlements.models.usage import NO_SUBSCRIPTION_MESSAGE
from entitlements.wiring import Core
from tests.conftest import add_free_plan, plan_named, principal

URLS = {"success_url": "https://app.test/ok", "cancel_url": "https://app.test/cancel"}


def _subscribe(core: Core, user_id: str, plan_name: str) -> None:
    plan = plan_named(core, plan_name)
    asyncio.run(core.ledger.checkout(user_id, plan.id, **URLS))


def test_no_subscription_refuses_every_check(core: Core) -> None:
    result = asyncio.run(core.usage.check("nobody", "concurrent_terminals", 1))
    assert result.allowed is False
    assert result.limit == 0
    assert result.message == NO_SUBSCRIPTION_MESSAGE


def test_no_subscription_refuses_increment(core: Core) -> None:
    with pytest.raises(LimitReachedError, match="upgrade required"):
        asyncio.run(core.usage.increment("nobody", "concurrent_terminals"))


def test_check_reports_remaining_under_the_cap(core: Core) -> None:
    _subscribe(core, "u1", "trial")
    result = asyncio.run(core.usage.check("u1", "concurrent_terminals", 1))
    assert result.allowed is True
    assert (result.current, result.limit, result.remaining) == (0, 1, 1)


def test_increment_stops_at_the_cap(core: Core) -> None:
    _subscribe(core, "u1", "trial")
    row = asyncio.run(core.usage.increment("u1", "concurrent_terminals"))
    assert row.current_value == 1

    with pytest.raises(LimitReachedError) as exc:
        asyncio.run(core.usage.increment("u1", "concurrent_terminals"))
    assert exc.value.code == "LIMIT_EXCEEDED"
    assert "Current: 1, Limit: 1" in exc.value.message


def test_unlimited_metric_always_allows(core: Core) -> None:
    _subscribe(core, "u1", "trial")
    result = asyncio.run(core.usage.check("u1", "lab_sessions", 10_000))
    assert result.allowed is True
    assert result.limit == -1
    assert result.remaining == -1


def test_decrement_never_goes_negative(core: Core) -> None:
    _subscribe(core, "u1", "trial")
    asyncio.run(core.usage.increment("u1", "concurrent_terminals"))
    row = asyncio.run(core.usage.decrement("u1", "concurrent_terminals", 5))
    assert row.current_value == 0


@pytest.mark.parametrize(
    ("metric", "amount"),
    [("gpu_hours", 1), ("concurrent_terminals", 0)],
)
def test_increment_validates_input(core: Core, metric: str, amount: int) -> None:
    _subscribe(core, "u1", "trial")
    with pytest.raises(ValidationError):
        asyncio.run(core.usage.increment("u1", metric, amount))


def test_concurrent_increments_never_pass_the_cap(core: Core) -> None:
    add_free_plan(core, "lab", max_concurrent_terminals=3)
    _subscribe(core, "u1", "lab")

    async def _race() -> list:
        return await asyncio.gather(
            *(core.usage.increment("u1", "concurrent_terminals") for _ in range(10)),
            return_exceptions=True,
        )

    results = asyncio.run(_race())
    refused = [r for r in results if isinstance(r, LimitReachedError)]
    assert len(refused) == 7
    row = asyncio.run(core.usage.check("u1", "concurrent_terminals", 0))
    assert row.current == 3


def test_org_plan_sets_caps_without_a_personal_subscription(core: Core) -> None:
    team = add_free_plan(core, "team", priority=15, max_concurrent_terminals=4)
    owner = principal("owner")

    async def _setup() -> None:
        org = await core.membership.create_org("owner", "acme")
        await core.membership.add_org_member(org.id, "member-1", "member", owner)
        await core.ledger.subscribe_org(org.id, team.id, owner, **URLS)

    asyncio.run(_setup())
    result = asyncio.run(core.usage.check("member-1", "concurrent_terminals", 4))
    assert result.allowed is True
    assert result.limit == 4


def test_period_reset_zeroes_only_period_metrics(core: Core) -> None:
    add_free_plan(core, "lab", max_concurrent_terminals=3, max_courses=5)
    _subscribe(core, "u1", "lab")

    async def _run() -> dict[str, int]:
        await core.usage.increment("u1", "concurrent_terminals", 2)
        await core.usage.increment("u1", "courses_created", 4)
        await core.usage.reset_period("u1")
        return {m.metric_type: m.current_value for m in await core.usage.list_usage("u1")}

    values = asyncio.run(_run())
    assert values["concurrent_terminals"] == 2
    assert values["courses_created"] == 0
