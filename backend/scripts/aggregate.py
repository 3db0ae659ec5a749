#!/usr/bin/env python3
"""
CLI tool for running aggregations outside the API.

Usage:
    # Aggregate a profile (add --ai for enrichment, --items to list items)
    python -m scripts.aggregate run --profile backend --items

    # Readiness snapshot
    python -m scripts.aggregate status

    # Fetch one source
    python -m scripts.aggregate test-source hn-front-page

    # Enrich pending stored items
    python -m scripts.aggregate sync --batch-size 10 --until-done

    # Show loaded configuration
    python -m scripts.aggregate config
"""

import argparse
import asyncio
import json
import logging
import sys

# Add parent directory to path for imports
sys.path.insert(0, str(__file__).rsplit("/", 2)[0])

from devfeed.config import get_settings
from devfeed.core.config_loader import ConfigLoader
from devfeed.errors import AggregationError, ConfigError, NoProviderAvailable
from devfeed.main import create_services
from devfeed.models.database import Database

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


async def open_services():
    settings = get_settings()
    database = Database(settings.database_url)
    await database.create_tables()
    return database, create_services(settings, database)


async def cmd_run(args):
    """Aggregate one profile."""
    database, services = await open_services()
    try:
        profile = services.config_loader.get_profile(args.profile)
        if profile is None or not services.config_loader.is_active(profile):
            print(f"Unknown or inactive profile: {args.profile}")
            return 1

        try:
            result = await services.aggregator.run(
                profile,
                ai_enabled=args.ai,
                force_refresh=args.refresh,
                include_items=args.items,
            )
        except AggregationError as e:
            print(f"Aggregation failed: {e}")
            return 1

        print("\n" + "=" * 60)
        print(f"AGGREGATION: {result.profile_name}")
        print("=" * 60)
        for fr in result.fetch_results:
            outcome = f"{fr.item_count} items" if fr.success else f"FAILED ({fr.error})"
            print(f"  {fr.source_id}: {outcome} in {fr.duration_ms}ms")

        print("-" * 60)
        print(f"Total fetched: {result.total_items}")
        print(f"Duplicates removed: {result.duplicates_removed}")
        print(f"Relevant: {result.processed_items} (avg score {result.avg_relevance_score})")
        print(f"AI enabled: {result.ai_enabled}  cached: {result.cached}  stale: {result.stale}")
        for note in result.notes:
            print(f"  note: {note}")

        for item in result.processed_feed_items or []:
            print(f"\n[{item.relevance_score:.2f}] {item.title}")
            print(f"  {item.url}")
            if item.ai_summary:
                print(f"  {item.ai_summary}")
        return 0
    finally:
        await database.close()


async def cmd_status(args):
    """Show readiness snapshot."""
    database, services = await open_services()
    try:
        print(json.dumps(services.aggregator.get_status(), indent=2, default=str))
        return 0
    finally:
        await database.close()


async def cmd_test_source(args):
    """Fetch a single source."""
    database, services = await open_services()
    try:
        try:
            report = await services.aggregator.test_source(args.source_id)
        except KeyError:
            print(f"Unknown source: {args.source_id}")
            return 1

        fr = report["fetch_result"]
        status = f"✓ {fr.item_count} items" if fr.success else f"✗ {fr.error}: {fr.error_detail}"
        print(f"{args.source_id}: {status} ({fr.duration_ms}ms)")
        for sample in report["sample"]:
            print(f"  - {sample['title']}")
            print(f"    {sample['url']}")
        return 0 if fr.success else 1
    finally:
        await database.close()


async def cmd_sync(args):
    """Enrich pending stored items."""
    database, services = await open_services()
    try:
        try:
            if args.until_done:
                result = await services.sync.process_until_done(
                    args.profile,
                    args.batch_size,
                    max_batches=services.settings.sync_max_batches,
                )
            else:
                result = await services.sync.ai_batch_process(args.profile, args.batch_size)
        except NoProviderAvailable as e:
            print(f"Cannot sync: {e}")
            return 1

        print(json.dumps(result, indent=2))
        return 0
    finally:
        await database.close()


async def cmd_config(args):
    """Show loaded sources and profiles."""
    settings = get_settings()
    loader = ConfigLoader(settings.config_dir)
    print(json.dumps(loader.get_config_summary(), indent=2))
    print("\nSources:")
    for source in loader.load_sources():
        state = "enabled" if source.enabled else "disabled"
        print(f"  {source.id} [{source.kind.value}, weight {source.weight}, {state}]")
    print("\nProfiles:")
    for profile in loader.load_profiles():
        print(f"  {profile.id}: {profile.name} -> {', '.join(sorted(profile.source_ids))}")
    return 0


def main():
    parser = argparse.ArgumentParser(description="devfeed - Aggregation CLI")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    run_parser = subparsers.add_parser("run", help="Aggregate a profile")
    run_parser.add_argument("--profile", "-p", required=True, help="Profile id")
    run_parser.add_argument("--ai", action="store_true", help="Request AI enrichment")
    run_parser.add_argument("--refresh", action="store_true", help="Bypass the cache")
    run_parser.add_argument("--items", action="store_true", help="Print processed items")

    subparsers.add_parser("status", help="Show readiness snapshot")

    test_parser = subparsers.add_parser("test-source", help="Fetch a single source")
    test_parser.add_argument("source_id", help="Source id")

    sync_parser = subparsers.add_parser("sync", help="Enrich pending stored items")
    sync_parser.add_argument("--profile", "-p", help="Limit to one profile")
    sync_parser.add_argument(
        "--batch-size", "-b",
        type=int,
        default=10,
        help="Items per batch (default: 10)"
    )
    sync_parser.add_argument(
        "--until-done",
        action="store_true",
        help="Repeat batches until nothing is pending"
    )

    subparsers.add_parser("config", help="Show loaded configuration")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 1

    commands = {
        "run": cmd_run,
        "status": cmd_status,
        "test-source": cmd_test_source,
        "sync": cmd_sync,
        "config": cmd_config,
    }
    try:
        return asyncio.run(commands[args.command](args))
    except ConfigError as e:
        print(f"Configuration error: {e}")
        return 2


if __name__ == "__main__":
    sys.exit(main())
