"""CLI entry point for ShelfSync.

Usage:
    # Ensure every base collection exists with the expected schema
    python -m shelfsync setup
    python -m shelfsync setup --collections items,batches --recreate

    # Print product summaries for one shop
    python -m shelfsync summary --shop-id shop-1

    # Run the vector store forwarding proxy
    python -m shelfsync serve-proxy
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from .config import get_settings
from .models import ShopContext
from .runtime import ShelfSync
from .schema import BASE_COLLECTIONS


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _parse_collections(raw: str | None) -> list[str]:
    if not raw:
        return list(BASE_COLLECTIONS)
    names = [name.strip() for name in raw.split(",") if name.strip()]
    unknown = [name for name in names if name not in BASE_COLLECTIONS]
    if unknown:
        raise SystemExit(f"Unknown collection(s): {', '.join(unknown)}")
    return names


async def _setup(args: argparse.Namespace) -> int:
    names = _parse_collections(args.collections)
    async with ShelfSync.from_settings() as app:
        if args.recreate:
            status = {name: await app.schema.recreate(name) for name in names}
        else:
            status = await app.setup(names)

        print("Collections:")
        for name, ready in status.items():
            print(f"  {name:<15} {'ready' if ready else 'NOT READY'}")
        print()
        print("Diagnostics:")
        for entry in app.diagnostics.entries():
            print(f"  {entry.timestamp} [{entry.level.upper():<5}] {entry.message}")
    return 0 if all(status.values()) else 1


async def _summary(args: argparse.Namespace) -> int:
    settings = get_settings().model_copy(update={"seed_on_empty": args.seed})
    async with ShelfSync.from_settings(settings) as app:
        await app.setup()
        cache = await app.select_shop(ShopContext(id=args.shop_id))
        summaries = cache.product_summaries()
        if not summaries:
            print(f"No available stock for shop {args.shop_id}")
            return 0
        print(f"{'Product':<30} {'Qty':>6} {'Earliest':<12} {'Avg cost':>9} {'Avg sell':>9}")
        for s in summaries:
            print(
                f"{s.product_name[:30]:<30} {s.total_quantity:>6} "
                f"{(s.earliest_expiration or '-')[:10]:<12} "
                f"{s.average_cost_per_unit:>9.2f} {s.average_sell_price:>9.2f}"
            )
    return 0


def _cmd_serve_proxy(args: argparse.Namespace) -> int:
    """Start the forwarding proxy."""
    import uvicorn

    from .proxy import create_proxy_app

    settings = get_settings()
    if not settings.proxy_configured:
        print(
            "QDRANT_UPSTREAM_URL and QDRANT_UPSTREAM_API_KEY must be set "
            "before starting the proxy.",
            file=sys.stderr,
        )
        return 1

    uvicorn.run(
        create_proxy_app(settings),
        host=args.host or settings.proxy_host,
        port=args.port or settings.proxy_port,
        log_level="debug" if args.verbose else "info",
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="shelfsync",
        description="ShelfSync: vector-store backed retail inventory",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    setup_parser = subparsers.add_parser("setup", help="Ensure base collections")
    setup_parser.add_argument(
        "--collections",
        help="Comma-separated collection names (default: all base collections)",
    )
    setup_parser.add_argument(
        "--recreate",
        action="store_true",
        help="Delete and recreate the collections",
    )

    summary_parser = subparsers.add_parser("summary", help="Print product summaries")
    summary_parser.add_argument("--shop-id", required=True, help="Shop to summarize")
    summary_parser.add_argument(
        "--seed",
        action="store_true",
        help="Seed starter data when the shop is empty",
    )

    proxy_parser = subparsers.add_parser("serve-proxy", help="Run the forwarding proxy")
    proxy_parser.add_argument("--host", help="Bind host (default: PROXY_HOST)")
    proxy_parser.add_argument("--port", type=int, help="Bind port (default: PROXY_PORT)")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    if args.command == "setup":
        return asyncio.run(_setup(args))
    if args.command == "summary":
        return asyncio.run(_summary(args))
    if args.command == "serve-proxy":
        return _cmd_serve_proxy(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
