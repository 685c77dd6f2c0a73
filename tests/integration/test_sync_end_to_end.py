"""
전체 구성 요소를 조립한 동기화 흐름 테스트.

build_context 로 만든 SyncContext 에 메모리 플랫폼 두 개를 연결하고,
잡 제출 → 처리 → 원장/매핑/이벤트 결과를 한 번에 확인한다.
"""
from decimal import Decimal

import pytest

from stocksync.services import events as ev


@pytest.fixture
def recorded_events(ctx):
    seen = []
    ctx.events.subscribe("*", lambda event_type, data: seen.append((event_type, data)))
    return seen


@pytest.mark.integration
class TestInventorySyncFlow:
    @pytest.mark.asyncio
    async def test_lagging_platform_is_corrected(self, ctx, make_mapping, platform_a, platform_b, recorded_events):
        make_mapping("X-1")
        platform_a.quantities["X-1"] = 20
        platform_b.quantities["X-1"] = 8

        view = await ctx.orchestrator.run_sync(type="inventory", triggered_by="test")

        assert view.status == "completed"
        assert view.results["synced"] == 1
        assert view.results["corrected"] == 1
        assert platform_b.writes == [("inventory", "X-1", 20)]

        history = ctx.admin.get_inventory_history("X-1")
        assert len(history) == 1
        assert history[0].transaction_type == "sync"
        assert history[0].new_quantity == 20

        types = [t for t, _ in recorded_events]
        assert types[0] == ev.SYNC_STARTED
        assert ev.SYNC_PROGRESS in types
        assert types[-1] == ev.SYNC_COMPLETED

    @pytest.mark.asyncio
    async def test_second_run_is_a_no_op(self, ctx, make_mapping, platform_a, platform_b):
        make_mapping("X-1")
        platform_a.quantities["X-1"] = 20
        platform_b.quantities["X-1"] = 8
        await ctx.orchestrator.run_sync(type="inventory")

        view = await ctx.orchestrator.run_sync(type="inventory")

        assert view.results["corrected"] == 0
        assert view.results["unchanged"] == 1
        assert platform_b.writes == [("inventory", "X-1", 20)]
        assert len(ctx.ledger.history("X-1")) == 1
        assert ctx.mappings.get_by_sku("X-1").sync_status == "synced"

    @pytest.mark.asyncio
    async def test_equal_quantities_write_nothing(self, ctx, make_mapping, platform_a, platform_b):
        make_mapping("X-1")
        platform_a.quantities["X-1"] = 20
        platform_b.quantities["X-1"] = 20

        view = await ctx.orchestrator.run_sync(type="inventory")

        assert view.results["synced"] == 1
        assert platform_a.writes == [] and platform_b.writes == []
        assert ctx.ledger.history("X-1") == []
        assert ctx.mappings.get_by_sku("X-1").sync_status == "synced"

    @pytest.mark.asyncio
    async def test_sale_then_reconcile(self, ctx, make_mapping, platform_a, platform_b):
        make_mapping("X-1")
        platform_a.quantities["X-1"] = 10
        platform_b.quantities["X-1"] = 10
        await ctx.orchestrator.run_sync(type="inventory")

        # A 에서 3개 판매, 웹훅이 두 번 도착
        platform_a.quantities["X-1"] = 7
        assert await ctx.inventory.apply_sale("X-1", "platform_a", 3, "O-9", "L-1") is True
        assert await ctx.inventory.apply_sale("X-1", "platform_a", 3, "O-9", "L-1") is False

        view = await ctx.orchestrator.run_sync(type="inventory")

        assert platform_b.quantities["X-1"] == 7
        assert view.results["corrected"] == 0

        report = await ctx.admin.get_discrepancy_report()
        assert report["total"] == 0


@pytest.mark.integration
class TestFullSyncFlow:
    @pytest.mark.asyncio
    async def test_full_job_with_manual_rate(self, ctx, make_mapping, platform_a, platform_b):
        make_mapping("P-1", margin_rate=1.15, rounding_strategy="down")
        platform_a.quantities["P-1"] = 5
        platform_b.quantities["P-1"] = 2
        platform_a.prices["P-1"] = Decimal("50000")
        platform_b.prices["P-1"] = Decimal("12.00")
        await ctx.admin.set_manual_exchange_rate(0.00075, valid_hours=1, reason="test")

        job_id = ctx.admin.trigger_manual_sync(job_type="full")
        await ctx.orchestrator.run_pending()

        view = ctx.admin.get_job_status(job_id)
        assert view.status == "completed"
        assert view.priority == "high"
        assert view.results["corrected"] == 1
        assert view.results["price_updated"] == 1
        assert platform_b.quantities["P-1"] == 5
        assert platform_b.prices["P-1"] == Decimal("43.12")

        prices = ctx.admin.get_price_history("P-1")
        assert prices[0].status == "completed"
        assert prices[0].calculated_price == Decimal("43.12")

        assert len(ctx.admin.list_conflicts("price")) == 1
        assert ctx.admin.get_conflict_stats()["by_type"] == {"inventory": 1, "price": 1}

    @pytest.mark.asyncio
    async def test_price_within_tolerance_is_left_alone(self, ctx, make_mapping, platform_a, platform_b):
        make_mapping("P-1")
        platform_a.prices["P-1"] = Decimal("50000")
        platform_b.prices["P-1"] = Decimal("43.00")
        await ctx.rates.set_manual_rate(0.00075)

        view = await ctx.orchestrator.run_sync(type="price")

        assert view.results["price_updated"] == 0
        assert platform_b.writes == []
        assert ctx.price_history.recent("P-1", status="skipped")[0].previous_price == Decimal("43.00")

    @pytest.mark.asyncio
    async def test_price_job_without_rate_source_fails_cleanly(self, ctx, make_mapping, platform_a, platform_b):
        make_mapping("P-1")
        platform_a.prices["P-1"] = Decimal("50000")
        platform_b.prices["P-1"] = Decimal("10.00")

        job_id = ctx.orchestrator.submit(type="price", max_attempts=0)
        await ctx.orchestrator.run_pending()

        view = ctx.admin.get_job_status(job_id)
        assert view.status == "failed"
        assert view.errors[-1]["code"] == "BATCH_DEPENDENCY_UNAVAILABLE"
        assert platform_b.writes == []

    @pytest.mark.asyncio
    async def test_cancel_through_admin(self, ctx, make_mapping):
        make_mapping("X-1")
        job_id = ctx.admin.trigger_manual_sync(sku="X-1")

        assert await ctx.admin.cancel_job(job_id) is True
        assert ctx.admin.get_job_status(job_id).status == "cancelled"
