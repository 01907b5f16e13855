#!/usr/bin/env python
"""
Cache maintenance - warm the rule index, sweep expired cache rows and print
cache statistics. Meant to run from cron.

Usage:
    python scripts/cache_maintenance.py [--flush]
"""
import argparse
import sys
from pathlib import Path

# Add src to path
src_path = Path(__file__).parent.parent / 'src'
sys.path.insert(0, str(src_path))

from vibe_pricing.cache.cache_manager import build_cache_manager
from vibe_pricing.config.logging_config import configure_from_settings
from vibe_pricing.config.settings import get_settings
from vibe_pricing.rules.compile_rules import RuleCompiler
from vibe_pricing.storage.rule_store import SqliteRuleStore


def main():
    parser = argparse.ArgumentParser(description="Pricing cache maintenance")
    parser.add_argument('--flush', action='store_true', help="drop every cached entry first")
    args = parser.parse_args()

    settings = get_settings()
    configure_from_settings(settings)

    cache = build_cache_manager(settings)
    compiler = RuleCompiler(SqliteRuleStore(settings.rules_db_path), cache, settings)

    print("=" * 60)
    print("PRICING CACHE MAINTENANCE")
    print("=" * 60)

    if args.flush:
        cache.clear_namespace()
        print("Flushed all cached entries")

    removed = cache.cleanup_expired_cache()
    print(f"[1/2] Expired entries removed: {removed}")

    stats = compiler.warm_up_index()
    print(f"[2/2] Rule index warm: {stats['total_rules']} rules "
          f"({stats['global_rules']} global, {stats['product_buckets']} product buckets)")

    print()
    print("Cache tiers:")
    for tier, tier_stats in cache.get_cache_stats()['per_tier'].items():
        print(f"  {tier}: {tier_stats}")


if __name__ == "__main__":
    main()
