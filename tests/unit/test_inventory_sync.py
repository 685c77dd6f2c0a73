"""
재고 정합 엔진 테스트.

InMemoryPlatform 두 개로 방향별 기준 수량, 원장 기록, 판매 반영의 멱등성을 확인한다.
"""
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from stocksync.services import events as ev
from stocksync.services.conflict_resolver import STRATEGY_LATEST_TRANSACTION
from stocksync.services.exceptions import (
    LockContentionError,
    NotFoundError,
    TransientNetworkError,
    ValidationError,
)
from stocksync.services.inventory_sync import STRATEGY_BIDIRECTIONAL_MAX
from stocksync.services.ledger import LedgerEntry
from stocksync.services.locks import ProductLock


@pytest.mark.unit
class TestReconcile:
    @pytest.mark.asyncio
    async def test_equal_quantities_write_nothing(self, ctx, make_mapping, platform_a, platform_b):
        mapping = make_mapping("X-1")
        platform_a.quantities["X-1"] = 20
        platform_b.quantities["X-1"] = 20

        result = await ctx.inventory.reconcile(mapping)

        assert result.status == "synced"
        assert result.corrected is False
        assert platform_a.writes == [] and platform_b.writes == []
        assert ctx.ledger.history("X-1") == []

        stored = ctx.mappings.get_by_sku("X-1")
        assert stored.sync_status == "synced"
        assert stored.last_synced_at is not None
        assert stored.inventory_discrepancy == 0

    @pytest.mark.asyncio
    async def test_bidirectional_takes_maximum(self, ctx, make_mapping, platform_a, platform_b):
        mapping = make_mapping("X-1")
        platform_a.quantities["X-1"] = 20
        platform_b.quantities["X-1"] = 8

        result = await ctx.inventory.reconcile(mapping, job_id="job-1")

        assert result.final_quantity == 20
        assert result.strategy == STRATEGY_BIDIRECTIONAL_MAX
        assert result.writes == ["platform_b"]
        assert platform_b.writes == [("inventory", "X-1", 20)]
        assert platform_a.writes == []

        history = ctx.ledger.history("X-1")
        assert len(history) == 1
        assert history[0].transaction_type == "sync"
        assert history[0].platform == "platform_b"
        assert history[0].previous_quantity == 8
        assert history[0].new_quantity == 20
        assert history[0].meta["job_id"] == "job-1"
        assert history[0].meta["discrepancy"] == 12
        assert result.discrepancy == 12

        stored = ctx.mappings.get_by_sku("X-1")
        assert stored.platform_a_quantity == 20
        assert stored.platform_b_quantity == 20
        assert stored.inventory_discrepancy == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "direction,expected,written",
        [
            ("a_to_b", 5, "platform_b"),
            ("b_to_a", 8, "platform_a"),
        ],
    )
    async def test_one_way_directions(self, ctx, make_mapping, platform_a, platform_b, direction, expected, written):
        mapping = make_mapping("X-1", sync_direction=direction)
        platform_a.quantities["X-1"] = 5
        platform_b.quantities["X-1"] = 8

        result = await ctx.inventory.reconcile(mapping)

        assert result.final_quantity == expected
        assert result.writes == [written]
        assert platform_a.quantities["X-1"] == platform_b.quantities["X-1"] == expected

    @pytest.mark.asyncio
    async def test_ledger_since_last_sync_wins_over_maximum(self, ctx, make_mapping, platform_a, platform_b):
        """판매 반영 쓰기가 실패해 B 가 뒤처진 경우, 원장 기록을 기준으로 맞춘다."""
        make_mapping("X-1")
        platform_a.quantities["X-1"] = 10
        platform_b.quantities["X-1"] = 10
        await ctx.inventory.reconcile(ctx.mappings.get_by_sku("X-1"))

        # A 에서 1개 판매 -> A 는 이미 9, B 차감 기록은 남았지만 쓰기는 실패
        platform_a.quantities["X-1"] = 9
        ctx.ledger.record(LedgerEntry(
            sku="X-1",
            platform="platform_b",
            transaction_type="sale",
            previous_quantity=10,
            new_quantity=9,
            order_id="O-1",
            line_item_id="L-1",
            performed_by="webhook",
        ))

        result = await ctx.inventory.reconcile(ctx.mappings.get_by_sku("X-1"))

        assert result.final_quantity == 9
        assert result.strategy == STRATEGY_LATEST_TRANSACTION
        assert platform_b.quantities["X-1"] == 9

    @pytest.mark.asyncio
    async def test_critical_discrepancy_emits_event(self, ctx, make_mapping, platform_a, platform_b):
        seen = []
        ctx.events.subscribe(ev.INVENTORY_DISCREPANCY, lambda event_type, data: seen.append(data))
        mapping = make_mapping("X-1")
        platform_a.quantities["X-1"] = 30
        platform_b.quantities["X-1"] = 5

        result = await ctx.inventory.reconcile(mapping)

        assert result.critical is True
        assert seen == [{"sku": "X-1", "a": 30, "b": 5, "magnitude": 25}]

    @pytest.mark.asyncio
    async def test_dry_run_does_not_write(self, ctx, make_mapping, platform_a, platform_b):
        mapping = make_mapping("X-1")
        platform_a.quantities["X-1"] = 20
        platform_b.quantities["X-1"] = 8

        result = await ctx.inventory.reconcile(mapping, dry_run=True)

        assert result.status == "dry_run"
        assert result.final_quantity == 20
        assert platform_b.writes == []
        assert ctx.ledger.history("X-1") == []
        assert ctx.mappings.get_by_sku("X-1").sync_status == "pending"

    @pytest.mark.asyncio
    async def test_transient_read_errors_are_retried(self, ctx, make_mapping, platform_a, platform_b):
        mapping = make_mapping("X-1")
        platform_a.quantities["X-1"] = 3
        platform_b.quantities["X-1"] = 3
        platform_b.fail_next = [TransientNetworkError("503"), TransientNetworkError("503")]

        result = await ctx.inventory.reconcile(mapping)

        assert result.status == "synced"
        assert platform_b.calls == 3

    @pytest.mark.asyncio
    async def test_failed_write_is_recorded(self, ctx, make_mapping, platform_a, platform_b):
        mapping = make_mapping("X-1")
        platform_a.quantities["X-1"] = 20
        platform_b.quantities["X-1"] = 8
        platform_b.set_quantity = AsyncMock(side_effect=ValidationError("quantity rejected"))

        with pytest.raises(ValidationError):
            await ctx.inventory.reconcile(mapping)

        history = ctx.ledger.history("X-1")
        assert len(history) == 1
        assert history[0].status == "failed"
        assert history[0].error_message == "quantity rejected"

        stored = ctx.mappings.get_by_sku("X-1")
        assert stored.sync_status == "error"
        assert stored.sync_error == "quantity rejected"

    @pytest.mark.asyncio
    async def test_invalid_quantity_from_platform(self, ctx, make_mapping, platform_a, platform_b):
        mapping = make_mapping("X-1")
        platform_a.quantities["X-1"] = -1
        platform_b.quantities["X-1"] = 3

        with pytest.raises(ValidationError):
            await ctx.inventory.reconcile(mapping)

    @pytest.mark.asyncio
    async def test_unknown_product(self, ctx, make_mapping):
        with pytest.raises(NotFoundError):
            await ctx.inventory.reconcile(make_mapping("GHOST"))


@pytest.mark.unit
class TestSalesAndAdjustments:
    @pytest.mark.asyncio
    async def test_sale_is_applied_once(self, ctx, make_mapping, platform_a, platform_b):
        make_mapping("X-1")
        platform_a.quantities["X-1"] = 10
        platform_b.quantities["X-1"] = 10

        first = await ctx.inventory.apply_sale("X-1", "platform_a", 2, "O-1", "L-1")
        second = await ctx.inventory.apply_sale("X-1", "platform_a", 2, "O-1", "L-1")

        assert first is True
        assert second is False
        assert platform_b.quantities["X-1"] == 8
        sales = [t for t in ctx.ledger.history("X-1") if t.transaction_type == "sale"]
        assert len(sales) == 1
        assert sales[0].platform == "platform_b"
        assert sales[0].meta["sold_on"] == "platform_a"

    @pytest.mark.asyncio
    async def test_sale_never_goes_negative(self, ctx, make_mapping, platform_a, platform_b):
        make_mapping("X-1")
        platform_a.quantities["X-1"] = 1
        platform_b.quantities["X-1"] = 1

        await ctx.inventory.apply_sale("X-1", "platform_b", 5, "O-1", "L-1")

        assert platform_a.quantities["X-1"] == 0

    @pytest.mark.asyncio
    async def test_sale_validation(self, ctx, make_mapping):
        make_mapping("X-1")
        with pytest.raises(ValidationError):
            await ctx.inventory.apply_sale("X-1", "platform_a", 0, "O-1", "L-1")
        with pytest.raises(ValidationError):
            await ctx.inventory.apply_sale("X-1", "platform_a", 1, "O-1", "")
        with pytest.raises(ValidationError):
            await ctx.inventory.apply_sale("X-1", "platform_c", 1, "O-1", "L-1")
        with pytest.raises(NotFoundError):
            await ctx.inventory.apply_sale("NOPE", "platform_a", 1, "O-1", "L-1")

    @pytest.mark.asyncio
    async def test_sale_waits_for_no_one_when_locked(self, ctx, make_mapping, platform_a, platform_b):
        make_mapping("X-1")
        platform_a.quantities["X-1"] = 10
        platform_b.quantities["X-1"] = 10
        other = ProductLock(ctx.locks.store, owner="other-worker")
        await other.try_acquire("X-1")

        with pytest.raises(LockContentionError):
            await ctx.inventory.apply_sale("X-1", "platform_a", 2, "O-1", "L-1")
        assert ctx.ledger.exists("O-1", "L-1", "sale") is False

    @pytest.mark.asyncio
    async def test_adjustment_is_mirrored(self, ctx, make_mapping, platform_a, platform_b):
        make_mapping("X-1")
        platform_a.quantities["X-1"] = 10
        platform_b.quantities["X-1"] = 10

        new_quantity = await ctx.inventory.apply_adjustment("X-1", "platform_a", 5, "restock count")

        assert new_quantity == 15
        assert platform_a.quantities["X-1"] == 15
        assert platform_b.quantities["X-1"] == 15
        adjustments = ctx.ledger.history("X-1")
        assert [t.platform for t in adjustments] == ["platform_b", "platform_a"]
        assert all(t.transaction_type == "adjustment" for t in adjustments)

    @pytest.mark.asyncio
    async def test_adjustment_cannot_go_negative(self, ctx, make_mapping, platform_a, platform_b):
        make_mapping("X-1")
        platform_a.quantities["X-1"] = 2
        platform_b.quantities["X-1"] = 2

        with pytest.raises(ValidationError):
            await ctx.inventory.apply_adjustment("X-1", "platform_a", -3, "shrinkage")
        assert platform_a.writes == []


@pytest.mark.unit
class TestSaleFailures:
    @pytest.mark.asyncio
    async def test_failed_sale_write_is_marked_failed(self, ctx, make_mapping, platform_a, platform_b):
        make_mapping("X-1")
        platform_a.quantities["X-1"] = 10
        platform_b.quantities["X-1"] = 10
        platform_b.set_quantity = AsyncMock(side_effect=ValidationError("quantity rejected"))

        with pytest.raises(ValidationError):
            await ctx.inventory.apply_sale("X-1", "platform_a", 3, "O-1", "L-1")

        sale = ctx.ledger.history("X-1")[0]
        assert sale.transaction_type == "sale"
        assert sale.status == "failed"
        assert sale.error_message == "quantity rejected"
        assert ctx.mappings.get_by_sku("X-1").sync_status == "error"

        # 같은 주문 라인은 다시 차감하지 않는다
        assert await ctx.inventory.apply_sale("X-1", "platform_a", 3, "O-1", "L-1") is False

    @pytest.mark.asyncio
    async def test_successful_sale_is_completed(self, ctx, make_mapping, platform_a, platform_b):
        make_mapping("X-1")
        platform_a.quantities["X-1"] = 10
        platform_b.quantities["X-1"] = 10

        await ctx.inventory.apply_sale("X-1", "platform_a", 3, "O-1", "L-1")

        assert ctx.ledger.history("X-1")[0].status == "completed"

    @pytest.mark.asyncio
    async def test_failed_sale_is_repaired_by_reconcile(self, ctx, make_mapping, platform_a, platform_b):
        make_mapping("X-1")
        platform_a.quantities["X-1"] = 20
        platform_b.quantities["X-1"] = 20
        await ctx.inventory.reconcile(ctx.mappings.get_by_sku("X-1"))

        platform_a.quantities["X-1"] = 17
        platform_b.set_quantity = AsyncMock(side_effect=ValidationError("rejected"))
        with pytest.raises(ValidationError):
            await ctx.inventory.apply_sale("X-1", "platform_a", 3, "O-1", "L-1")
        del platform_b.set_quantity

        result = await ctx.inventory.reconcile(ctx.mappings.get_by_sku("X-1"))

        assert result.strategy == STRATEGY_LATEST_TRANSACTION
        assert result.final_quantity == 17
        assert platform_a.quantities["X-1"] == 17
        assert platform_b.quantities["X-1"] == 17

    @pytest.mark.asyncio
    async def test_price_sync_does_not_hide_pending_sales(self, ctx, make_mapping, platform_a, platform_b):
        """가격 동기화가 재고 정합의 원장 조회 기준 시각을 옮기면 판매가 사라진다."""
        make_mapping("X-1")
        platform_a.quantities["X-1"] = 20
        platform_b.quantities["X-1"] = 20
        platform_a.prices["X-1"] = Decimal("50000")
        platform_b.prices["X-1"] = Decimal("10.00")
        await ctx.inventory.reconcile(ctx.mappings.get_by_sku("X-1"))
        synced_at = ctx.mappings.get_by_sku("X-1").last_synced_at

        platform_a.quantities["X-1"] = 17
        platform_b.set_quantity = AsyncMock(side_effect=ValidationError("rejected"))
        with pytest.raises(ValidationError):
            await ctx.inventory.apply_sale("X-1", "platform_a", 3, "O-1", "L-1")
        del platform_b.set_quantity

        price = await ctx.prices.sync_price(ctx.mappings.get_by_sku("X-1"), 0.00075)
        assert price.status == "updated"

        stored = ctx.mappings.get_by_sku("X-1")
        assert stored.last_synced_at == synced_at
        assert stored.last_price_synced_at is not None

        result = await ctx.inventory.reconcile(stored)

        assert result.final_quantity == 17
        assert platform_a.quantities["X-1"] == 17
        assert platform_b.quantities["X-1"] == 17


@pytest.mark.unit
class TestDiscrepancyReport:
    @pytest.mark.asyncio
    async def test_corrected_products_leave_no_open_discrepancy(self, ctx, make_mapping, platform_a, platform_b):
        make_mapping("X-1")
        platform_a.quantities["X-1"] = 30
        platform_b.quantities["X-1"] = 5

        result = await ctx.inventory.reconcile(ctx.mappings.get_by_sku("X-1"))

        assert result.discrepancy == 25
        assert ctx.mappings.get_by_sku("X-1").inventory_discrepancy == 0
        assert (await ctx.inventory.generate_discrepancy_report())["total"] == 0

    @pytest.mark.asyncio
    async def test_report_lists_open_discrepancies_and_is_cached(self, ctx, make_mapping, platform_a, platform_b):
        make_mapping("X-1", product_name="Widget")
        make_mapping("X-2")
        make_mapping("X-3")
        platform_a.quantities.update({"X-1": 30, "X-2": 4, "X-3": 6})
        platform_b.quantities.update({"X-1": 5, "X-2": 4, "X-3": 2})
        await ctx.inventory.reconcile(ctx.mappings.get_by_sku("X-1"), dry_run=True)
        for sku in ("X-2", "X-3"):
            await ctx.inventory.reconcile(ctx.mappings.get_by_sku(sku))

        report = await ctx.inventory.generate_discrepancy_report()

        assert report["total"] == 1
        assert report["critical"] == 1
        assert report["items"][0]["sku"] == "X-1"
        assert report["items"][0]["product_name"] == "Widget"
        assert report["items"][0]["discrepancy"] == 25
        assert await ctx.inventory.generate_discrepancy_report() is report

        await ctx.cache.invalidate_tag("reports")
        assert await ctx.inventory.generate_discrepancy_report() is not report

    @pytest.mark.asyncio
    async def test_failed_correction_stays_in_report(self, ctx, make_mapping, platform_a, platform_b):
        make_mapping("X-1")
        platform_a.quantities["X-1"] = 9
        platform_b.quantities["X-1"] = 4
        platform_b.set_quantity = AsyncMock(side_effect=ValidationError("quantity rejected"))

        with pytest.raises(ValidationError):
            await ctx.inventory.reconcile(ctx.mappings.get_by_sku("X-1"))

        report = await ctx.inventory.generate_discrepancy_report()
        assert [i["sku"] for i in report["items"]] == ["X-1"]
        assert report["items"][0]["sync_status"] == "error"
        assert report["critical"] == 0
