import argparse
import asyncio
import json
import logging
import signal
import sys

from stocksync.context import SyncContext, build_context, load_platforms, register_default_schedule
from stocksync.db import SessionLocal, create_tables, engine
from stocksync.platforms.base import PlatformConnection
from stocksync.platforms.memory import InMemoryPlatform
from stocksync.services.exceptions import SyncError
from stocksync.settings import settings

logger = logging.getLogger("stocksync.cli")


def _setup_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
    )


def _build(needs_platforms: bool) -> SyncContext:
    if settings.platform_adapter_factory:
        platform_a, platform_b = load_platforms(settings.platform_adapter_factory)
    elif needs_platforms:
        raise SyncError("PLATFORM_ADAPTER_FACTORY is not configured", error_code="CONFIGURATION_ERROR")
    else:
        # 플랫폼을 호출하지 않는 조회/관리 명령용
        platform_a = PlatformConnection.from_adapter(settings.platform_a_name, InMemoryPlatform())
        platform_b = PlatformConnection.from_adapter(settings.platform_b_name, InMemoryPlatform())
    return build_context(settings, SessionLocal, platform_a, platform_b)


def _print(data) -> None:
    print(json.dumps(data, ensure_ascii=False, indent=2, default=str))


async def run_sync_command(args) -> int:
    ctx = _build(needs_platforms=True)
    try:
        view = await ctx.orchestrator.run_sync(
            type=args.type,
            skus=args.sku or None,
            dry_run=args.dry_run,
            priority=args.priority,
            triggered_by="cli",
        )
        _print(view.model_dump())
        return 0 if view.status == "completed" else 1
    finally:
        await ctx.aclose()


async def run_status_command(args) -> int:
    ctx = _build(needs_platforms=False)
    try:
        if args.cancel:
            _print({"cancelled": await ctx.admin.cancel_job(args.job_id)})
        _print(ctx.admin.get_job_status(args.job_id).model_dump())
        return 0
    finally:
        await ctx.aclose()


async def run_rate_command(args) -> int:
    ctx = _build(needs_platforms=False)
    try:
        if args.action == "get":
            quote = await ctx.rates.get_quote()
            _print({"rate": quote.rate, "source": quote.source, "provider": quote.provider})
        elif args.action == "set":
            if args.value is None:
                logger.error("[CLI] rate set requires a value")
                return 2
            entry = await ctx.admin.set_manual_exchange_rate(args.value, valid_hours=args.hours, reason=args.reason)
            _print({"rate": entry.rate, "valid_until": entry.valid_until})
        elif args.action == "clear":
            _print({"cleared": await ctx.rates.clear_manual_rate()})
        elif args.action == "update":
            _print(await ctx.rates.update_exchange_rate())
        elif args.action == "history":
            _print([
                {"rate": r.rate, "source": r.source, "provider": r.provider, "created_at": r.created_at}
                for r in ctx.rates.get_rate_history(days=args.days)
            ])
        return 0
    finally:
        await ctx.aclose()


async def run_conflicts_command(args) -> int:
    ctx = _build(needs_platforms=False)
    try:
        if args.action == "list":
            _print([
                {
                    "id": c.id,
                    "type": c.conflict_type,
                    "sku": c.sku,
                    "strategy": c.strategy,
                    "resolved": c.resolved,
                    "conflict": c.conflict,
                    "resolution": c.resolution,
                    "created_at": c.created_at,
                }
                for c in ctx.admin.list_conflicts(args.type, unresolved_only=args.unresolved, limit=args.limit)
            ])
        elif args.action == "stats":
            _print(ctx.admin.get_conflict_stats(days=args.days))
        elif args.action == "replay":
            res = ctx.admin.replay_conflict(args.id)
            _print({"resolution": res.resolution, "strategy": res.strategy, "log_id": res.log_id})
        elif args.action == "resolve":
            entry = ctx.admin.mark_conflict_resolved(args.id, resolved_by=args.by)
            _print({"id": entry.id, "resolved": entry.resolved, "resolved_by": entry.resolved_by})
        return 0
    finally:
        await ctx.aclose()


async def run_report_command(args) -> int:
    ctx = _build(needs_platforms=False)
    try:
        _print(await ctx.admin.get_discrepancy_report())
        return 0
    finally:
        await ctx.aclose()


async def run_inventory_command(args) -> int:
    ctx = _build(needs_platforms=args.action != "history")
    try:
        if args.action == "history":
            _print([
                {
                    "type": t.transaction_type,
                    "platform": t.platform,
                    "previous": t.previous_quantity,
                    "new": t.new_quantity,
                    "order_id": t.order_id,
                    "status": t.status,
                    "created_at": t.created_at,
                }
                for t in ctx.admin.get_inventory_history(args.sku, limit=args.limit)
            ])
        elif args.action == "sale":
            applied = await ctx.inventory.apply_sale(
                args.sku, args.platform, args.quantity, args.order_id, args.line_item_id, performed_by="manual"
            )
            _print({"applied": applied})
        elif args.action == "adjust":
            new_quantity = await ctx.inventory.apply_adjustment(args.sku, args.platform, args.quantity, args.reason or "cli")
            _print({"quantity": new_quantity})
        return 0
    finally:
        await ctx.aclose()


async def run_scheduler_command(args) -> int:
    ctx = _build(needs_platforms=True)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    register_default_schedule(ctx)
    await ctx.orchestrator.start()
    await ctx.scheduler.start()
    logger.info("[CLI] Scheduler running. Ctrl+C to stop")
    try:
        await stop.wait()
    finally:
        await ctx.aclose()
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(description="stocksync operations CLI")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("init-db", help="Create tables directly (development)")

    sync_parser = subparsers.add_parser("sync", help="Submit a sync job and wait for it")
    sync_parser.add_argument("--type", choices=["inventory", "price", "full"], default="inventory")
    sync_parser.add_argument("--sku", action="append", help="Restrict to SKU (repeatable)")
    sync_parser.add_argument("--priority", choices=["low", "normal", "high", "urgent"], default="high")
    sync_parser.add_argument("--dry-run", action="store_true")

    status_parser = subparsers.add_parser("status", help="Show job status")
    status_parser.add_argument("job_id")
    status_parser.add_argument("--cancel", action="store_true")

    rate_parser = subparsers.add_parser("rate", help="Exchange-rate operations")
    rate_parser.add_argument("action", choices=["get", "set", "clear", "update", "history"])
    rate_parser.add_argument("value", nargs="?", type=float)
    rate_parser.add_argument("--hours", type=float, default=None)
    rate_parser.add_argument("--reason", default=None)
    rate_parser.add_argument("--days", type=int, default=30)

    conflicts_parser = subparsers.add_parser("conflicts", help="Conflict log operations")
    conflicts_parser.add_argument("action", choices=["list", "stats", "replay", "resolve"])
    conflicts_parser.add_argument("id", nargs="?", type=int)
    conflicts_parser.add_argument("--type", choices=["inventory", "price", "order"], default=None)
    conflicts_parser.add_argument("--unresolved", action="store_true")
    conflicts_parser.add_argument("--limit", type=int, default=50)
    conflicts_parser.add_argument("--days", type=int, default=7)
    conflicts_parser.add_argument("--by", default="cli")

    subparsers.add_parser("report", help="Inventory discrepancy report")

    inventory_parser = subparsers.add_parser("inventory", help="Inventory ledger operations")
    inventory_parser.add_argument("action", choices=["history", "sale", "adjust"])
    inventory_parser.add_argument("sku")
    inventory_parser.add_argument("--platform", default=settings.platform_a_name)
    inventory_parser.add_argument("--quantity", type=int, default=0)
    inventory_parser.add_argument("--order-id", dest="order_id")
    inventory_parser.add_argument("--line-item-id", dest="line_item_id")
    inventory_parser.add_argument("--reason", default=None)
    inventory_parser.add_argument("--limit", type=int, default=50)

    subparsers.add_parser("scheduler", help="Run the dispatch loop and periodic jobs")

    args = parser.parse_args(argv)
    _setup_logging()

    handlers = {
        "sync": run_sync_command,
        "status": run_status_command,
        "rate": run_rate_command,
        "conflicts": run_conflicts_command,
        "report": run_report_command,
        "inventory": run_inventory_command,
        "scheduler": run_scheduler_command,
    }

    if args.command == "init-db":
        create_tables(engine)
        logger.info("[CLI] Tables created")
        return 0
    if args.command == "conflicts" and args.action in ("replay", "resolve") and args.id is None:
        parser.error("conflicts replay/resolve requires an id")
    handler = handlers.get(args.command)
    if handler is None:
        parser.print_help()
        return 1

    try:
        return asyncio.run(handler(args))
    except SyncError as e:
        logger.error(f"[CLI] {e.error_code}: {e.message}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
